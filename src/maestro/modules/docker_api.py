"""Docker Engine API backend.

Talks to a Docker daemon over its HTTP API (``docker.base_url``) instead of
the docker CLI. Used for the local host when a base URL is configured.

Status code contract:
- POST /containers/create must answer 201; anything else is a create failure
- Stop answers 204 (stopped) or 304 (already stopped)
- Delete answers 204; 404 means the container is already gone
"""

import logging
from typing import Any
from urllib.parse import quote

import requests

from maestro.modules.container_deployer import DeployError

logger = logging.getLogger(__name__)


def split_image(image: str) -> tuple[str, str]:
    """Split "registry:5000/name:tag" into ("registry:5000/name", "tag")."""
    head, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return head, tag


class DockerEngineRuntime:
    """ContainerRuntime implementation backed by the Docker Engine HTTP API."""

    def __init__(
        self, base_url: str, timeout: float = 120.0, session: requests.Session | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, stage: str, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise DeployError(f"Docker API {method} {path} failed: {e}", stage=stage) from e

    @staticmethod
    def _message(response: requests.Response) -> str:
        try:
            return response.json().get("message", response.text)
        except ValueError:
            return response.text or response.reason

    def status(self, name: str) -> str | None:
        response = self._request("inspect", "GET", f"/containers/{quote(name)}/json")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise DeployError(
                f"Cannot inspect container {name}: {self._message(response)}", stage="inspect"
            )
        return response.json().get("State", {}).get("Status")

    def stop(self, name: str) -> bool:
        response = self._request("stop", "POST", f"/containers/{quote(name)}/stop")
        if response.status_code in (204, 304):
            return True
        logger.debug(f"Stop {name} answered {response.status_code}: {self._message(response)}")
        return False

    def remove(self, name: str) -> None:
        response = self._request("remove", "DELETE", f"/containers/{quote(name)}")
        if response.status_code in (204, 404):
            return
        raise DeployError(
            f"Cannot remove container {name}: {self._message(response)}", stage="remove"
        )

    def pull(self, image: str) -> None:
        repository, tag = split_image(image)
        response = self._request(
            "pull", "POST", "/images/create", params={"fromImage": repository, "tag": tag}
        )
        if response.status_code != 200:
            raise DeployError(
                f"Cannot pull image {image}: {self._message(response)}", stage="pull"
            )

    def create(self, image: str, name: str) -> str:
        response = self._request(
            "create",
            "POST",
            "/containers/create",
            params={"name": name},
            json={"Image": image},
        )
        if response.status_code != 201:
            raise DeployError(
                f"Cannot create container {name} from {image}: "
                f"HTTP {response.status_code} {self._message(response)}",
                stage="create",
            )
        return response.json().get("Id", "")

    def start(self, name: str) -> None:
        response = self._request("start", "POST", f"/containers/{quote(name)}/start")
        if response.status_code not in (204, 304):
            raise DeployError(
                f"Container {name} created but failed to start: {self._message(response)}",
                stage="start",
            )


__all__ = ["DockerEngineRuntime"]
