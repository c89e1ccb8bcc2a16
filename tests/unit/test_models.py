"""Unit tests for the deployment run data model."""

import threading

import pytest

from maestro.models import (
    DeploymentSummary,
    DeploymentTarget,
    HostFailure,
    SummaryBuilder,
    TargetState,
)


@pytest.fixture
def target(make_host):
    return DeploymentTarget(index=0, host=make_host("10.0.0.1"))


def failure(address="10.0.0.1", stage="installing"):
    return HostFailure(address=address, stage=stage, reason="boom", error_type="InstallError")


class TestDeploymentTarget:
    """Test the per-host state machine."""

    def test_initial_state(self, target):
        assert target.state is TargetState.PENDING
        assert target.failure is None
        assert target.address == "10.0.0.1"

    def test_forward_path(self, target):
        """Test the full happy path is accepted and emits events."""
        path = [
            TargetState.CONNECTING,
            TargetState.INSTALLING,
            TargetState.BUILDING,
            TargetState.DEPLOYING,
            TargetState.SUCCEEDED,
        ]
        events = [target.transition(state) for state in path]
        assert [e.state for e in events] == path
        assert events[0].previous is TargetState.PENDING
        assert events[-1].previous is TargetState.DEPLOYING
        assert target.state.is_terminal

    def test_backwards_rejected(self, target):
        """Test a target never moves backwards."""
        target.transition(TargetState.BUILDING)
        with pytest.raises(ValueError, match="building -> installing"):
            target.transition(TargetState.INSTALLING)

    def test_failed_from_any_non_terminal(self, make_host):
        """Test FAILED may follow every non-terminal state."""
        for state in (TargetState.CONNECTING, TargetState.DEPLOYING):
            target = DeploymentTarget(index=0, host=make_host())
            target.transition(state)
            event = target.transition(TargetState.FAILED, failure())
            assert event.reason == "installing: InstallError: boom"
            assert target.failure == failure()

    def test_failed_from_pending(self, target):
        target.transition(TargetState.FAILED, failure(stage="pending"))
        assert target.state is TargetState.FAILED

    @pytest.mark.parametrize("terminal", [TargetState.SUCCEEDED, TargetState.FAILED])
    def test_terminal_is_final(self, target, terminal):
        """Test nothing follows a terminal state."""
        target.transition(terminal, failure() if terminal is TargetState.FAILED else None)
        for state in TargetState:
            assert not target.can_transition(state)

    def test_event_to_dict(self, target):
        event = target.transition(TargetState.CONNECTING)
        assert event.to_dict() == {
            "address": "10.0.0.1",
            "index": 0,
            "previous": "pending",
            "state": "connecting",
            "reason": None,
        }


class TestSummaryBuilder:
    """Test outcome aggregation."""

    def test_configuration_order(self):
        """Test outcomes are reported in configuration order, not completion order."""
        builder = SummaryBuilder(addresses=["a", "b", "c", "d"])
        builder.record_success(3)
        builder.record_failure(1, failure("b"))
        builder.record_success(0)
        builder.record_success(2)

        summary = builder.build()
        assert summary.succeeded == ("a", "c", "d")
        assert [f.address for f in summary.failed] == ["b"]
        assert summary.total == 4
        assert summary.addresses == ("a", "b", "c", "d")
        assert not summary.all_succeeded

    def test_append_only(self):
        """Test the first recorded outcome for a target wins."""
        builder = SummaryBuilder(addresses=["a"])
        builder.record_success(0)
        builder.record_failure(0, failure("a"))
        assert builder.build().succeeded == ("a",)

    def test_concurrent_recording(self):
        """Test recording from many threads loses nothing."""
        addresses = [f"h{i}" for i in range(50)]
        builder = SummaryBuilder(addresses=addresses)
        threads = [threading.Thread(target=builder.record_success, args=(i,)) for i in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert builder.completed == 50
        assert builder.build().succeeded == tuple(addresses)

    def test_cancelled_flag(self):
        summary = SummaryBuilder(addresses=[]).build(cancelled=True)
        assert summary.cancelled
        assert summary.total == 0


class TestDeploymentSummary:
    """Test summary formatting."""

    def test_format_summary(self):
        summary = DeploymentSummary(total=3, succeeded=("a", "c"), failed=(failure("b"),))
        assert summary.format_summary() == "Total: 3, Succeeded: 2, Failed: 1"

    def test_all_succeeded(self):
        assert DeploymentSummary(total=2, succeeded=("a", "b")).all_succeeded

    def test_to_dict(self):
        summary = DeploymentSummary(total=2, succeeded=("a",), failed=(failure("b"),))
        assert summary.to_dict() == {
            "total": 2,
            "succeeded": ["a"],
            "failed": [
                {
                    "address": "b",
                    "stage": "installing",
                    "error_type": "InstallError",
                    "reason": "boom",
                    "last_status": None,
                    "exit_code": None,
                }
            ],
            "cancelled": False,
        }
