"""Deployment run data model.

Public API (the "studs"):
    TargetState: Pipeline state of one host
    DeploymentTarget: One host's state machine, owned by the coordinator
    TargetStateChanged: Progress event emitted on every transition
    HostFailure: Why and where a host failed
    DeploymentSummary: Immutable, configuration-ordered run result
    SummaryBuilder: Collects outcomes as targets complete
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from maestro.config_manager import HostDescriptor


class TargetState(Enum):
    """Pipeline state of a single deployment target."""

    PENDING = "pending"
    CONNECTING = "connecting"
    INSTALLING = "installing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TargetState.SUCCEEDED, TargetState.FAILED)


_ORDER = list(TargetState)


@dataclass
class TargetStateChanged:
    """Progress event for one target transition."""

    address: str
    index: int
    previous: TargetState
    state: TargetState
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "index": self.index,
            "previous": self.previous.value,
            "state": self.state.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class HostFailure:
    """Failure record for one host."""

    address: str
    stage: str
    reason: str
    error_type: str
    last_status: str | None = None
    exit_code: int | None = None

    def describe(self) -> str:
        return f"{self.stage}: {self.error_type}: {self.reason}"


@dataclass
class DeploymentTarget:
    """One host's deployment pipeline state.

    Transitions move forward only; FAILED may follow any non-terminal state
    and both SUCCEEDED and FAILED are terminal.
    """

    index: int
    host: HostDescriptor
    state: TargetState = TargetState.PENDING
    failure: HostFailure | None = None

    @property
    def address(self) -> str:
        return self.host.address

    def can_transition(self, new_state: TargetState) -> bool:
        if self.state.is_terminal:
            return False
        if new_state is TargetState.FAILED:
            return True
        return _ORDER.index(new_state) > _ORDER.index(self.state)

    def transition(
        self, new_state: TargetState, failure: HostFailure | None = None
    ) -> TargetStateChanged:
        """Move to new_state and return the resulting event.

        Raises:
            ValueError: If the transition would move backwards or leave a terminal state
        """
        if not self.can_transition(new_state):
            raise ValueError(
                f"Illegal transition for {self.address}: {self.state.value} -> {new_state.value}"
            )
        previous = self.state
        self.state = new_state
        if new_state is TargetState.FAILED:
            self.failure = failure
        return TargetStateChanged(
            address=self.address,
            index=self.index,
            previous=previous,
            state=new_state,
            reason=failure.describe() if failure else None,
        )


@dataclass(frozen=True)
class DeploymentSummary:
    """Aggregated fleet result, ordered by the configured host list."""

    total: int
    succeeded: tuple[str, ...] = ()
    failed: tuple[HostFailure, ...] = ()
    cancelled: bool = False
    addresses: tuple[str, ...] = ()

    @property
    def all_succeeded(self) -> bool:
        return len(self.succeeded) == self.total

    def format_summary(self) -> str:
        """Format summary of results."""
        return f"Total: {self.total}, Succeeded: {len(self.succeeded)}, Failed: {len(self.failed)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": list(self.succeeded),
            "failed": [
                {
                    "address": f.address,
                    "stage": f.stage,
                    "error_type": f.error_type,
                    "reason": f.reason,
                    "last_status": f.last_status,
                    "exit_code": f.exit_code,
                }
                for f in self.failed
            ],
            "cancelled": self.cancelled,
        }


@dataclass
class SummaryBuilder:
    """Append-only outcome collector keyed by configuration index."""

    addresses: list[str]
    _outcomes: dict[int, HostFailure | None] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record_success(self, index: int) -> None:
        with self._lock:
            self._outcomes.setdefault(index, None)

    def record_failure(self, index: int, failure: HostFailure) -> None:
        with self._lock:
            self._outcomes.setdefault(index, failure)

    @property
    def completed(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def build(self, cancelled: bool = False) -> DeploymentSummary:
        """Freeze the collected outcomes into a DeploymentSummary."""
        with self._lock:
            succeeded = []
            failed = []
            for index, address in enumerate(self.addresses):
                if index not in self._outcomes:
                    continue
                failure = self._outcomes[index]
                if failure is None:
                    succeeded.append(address)
                else:
                    failed.append(failure)
        return DeploymentSummary(
            total=len(self.addresses),
            succeeded=tuple(succeeded),
            failed=tuple(failed),
            cancelled=cancelled,
            addresses=tuple(self.addresses),
        )
