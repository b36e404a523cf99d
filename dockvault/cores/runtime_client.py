################################################################################
# DOCKVAULT
#
# @file:        runtime_client.py
# @module:      dockvault.cores.runtime_client
# @description: Container runtime capability surface and its Docker SDK adapter.
# @author:      DockVault Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# Copyright (c) 2025 DockVault Contributors
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - pause/unpause/stop/start are no-ops when the container is already there
# - Every docker.errors failure surfaces as ContainerRuntimeError
# - copy_out streams the tar produced by the Docker archive endpoint
################################################################################

"""
Runtime client for DockVault.

The job state machine only talks to the ``RuntimeClient`` protocol; the
``DockerRuntimeClient`` implements it on top of the ``docker`` SDK.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Protocol, runtime_checkable

import docker
from docker.errors import APIError, DockerException, NotFound, create_api_error_from_http_exception
from requests.exceptions import HTTPError, RequestException

from ..helpers.constants import (
    CAPTURE_CHUNK_SIZE,
    CONTAINER_STOP_TIMEOUT,
    DOCKER_API_TIMEOUT,
    STATE_PAUSED,
    STATE_RUNNING,
)
from ..helpers.exceptions import ContainerRuntimeError, RuntimeUnavailableError
from ..helpers.logging import get_logger
from ..types import ContainerMount, ContainerRef, ExecResult

logger = get_logger(__name__)


@runtime_checkable
class RuntimeClient(Protocol):
    """Operations DockVault needs from a container runtime."""

    def ping(self) -> None: ...

    def list_containers(self, label_filter: str) -> List[ContainerRef]: ...

    def inspect(self, ref: ContainerRef) -> ContainerRef: ...

    def pause(self, ref: ContainerRef) -> None: ...

    def unpause(self, ref: ContainerRef) -> None: ...

    def stop(self, ref: ContainerRef) -> None: ...

    def start(self, ref: ContainerRef) -> None: ...

    def exec(self, ref: ContainerRef, command: str, user: Optional[str] = None) -> ExecResult: ...

    def copy_out(self, ref: ContainerRef, path: str) -> Iterator[bytes]: ...


def container_ref_from_attrs(attrs: dict) -> ContainerRef:
    """Build a ContainerRef from ``docker inspect`` data."""
    mounts = tuple(
        ContainerMount(
            destination=m.get("Destination", ""),
            name=m.get("Name"),
            type=m.get("Type", "volume"),
        )
        for m in attrs.get("Mounts") or []
        if m.get("Destination")
    )
    name = (attrs.get("Name") or "").lstrip("/")
    return ContainerRef(
        id=attrs.get("Id", ""),
        name=name,
        labels=dict((attrs.get("Config") or {}).get("Labels") or {}),
        state=(attrs.get("State") or {}).get("Status", "unknown"),
        mounts=mounts,
    )


class DockerRuntimeClient:
    """
    Docker Engine adapter.

    Thread safe as far as the underlying ``requests`` session is; each worker
    issues independent API calls.
    """

    def __init__(
        self,
        base_url: str = "unix:///var/run/docker.sock",
        timeout: int = DOCKER_API_TIMEOUT,
        stop_timeout: int = CONTAINER_STOP_TIMEOUT,
        client: Optional[docker.DockerClient] = None,
    ):
        self.base_url = base_url
        self.stop_timeout = stop_timeout
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_config(cls, config) -> DockerRuntimeClient:
        return cls(
            base_url=config.get("docker", "base_url", fallback="unix:///var/run/docker.sock"),
            timeout=config.getint("docker", "api_timeout", fallback=DOCKER_API_TIMEOUT),
            stop_timeout=config.getint("docker", "stop_timeout", fallback=CONTAINER_STOP_TIMEOUT),
        )

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.DockerClient(base_url=self.base_url, timeout=self._timeout)
            except DockerException as e:
                raise RuntimeUnavailableError("connect", e)
        return self._client

    # --------------- Discovery ---------------

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailableError("ping", e)

    def list_containers(self, label_filter: str) -> List[ContainerRef]:
        try:
            containers = self.client.containers.list(filters={"label": label_filter})
        except (DockerException, RequestException) as e:
            raise ContainerRuntimeError("list_containers", e)
        refs = [container_ref_from_attrs(c.attrs) for c in containers]
        logger.debug(f"Found {len(refs)} containers matching {label_filter}",
                     extra={'operation': 'list_containers'})
        return refs

    def inspect(self, ref: ContainerRef) -> ContainerRef:
        container = self._get(ref, "inspect")
        return container_ref_from_attrs(container.attrs)

    # --------------- State changes ---------------

    def pause(self, ref: ContainerRef) -> None:
        container = self._get(ref, "pause")
        if self._status(container) != STATE_RUNNING:
            logger.debug(f"Container {ref.name} not running, pause skipped", extra={'container': ref.name})
            return
        self._call(ref, "pause", container.pause)

    def unpause(self, ref: ContainerRef) -> None:
        container = self._get(ref, "unpause")
        if self._status(container) != STATE_PAUSED:
            logger.debug(f"Container {ref.name} not paused, unpause skipped", extra={'container': ref.name})
            return
        self._call(ref, "unpause", container.unpause)

    def stop(self, ref: ContainerRef) -> None:
        container = self._get(ref, "stop")
        status = self._status(container)
        if status == STATE_PAUSED:
            raise ContainerRuntimeError("stop", "container is paused", target=ref.name)
        if status != STATE_RUNNING:
            logger.debug(f"Container {ref.name} not running, stop skipped", extra={'container': ref.name})
            return
        self._call(ref, "stop", lambda: container.stop(timeout=self.stop_timeout))

    def start(self, ref: ContainerRef) -> None:
        container = self._get(ref, "start")
        if self._status(container) in (STATE_RUNNING, STATE_PAUSED):
            logger.debug(f"Container {ref.name} already running, start skipped", extra={'container': ref.name})
            return
        self._call(ref, "start", container.start)

    # --------------- Exec & copy ---------------

    def exec(self, ref: ContainerRef, command: str, user: Optional[str] = None) -> ExecResult:
        container = self._get(ref, "exec")
        kwargs = {"user": user} if user else {}
        result = self._call(
            ref, "exec",
            lambda: container.exec_run(["/bin/sh", "-c", command], **kwargs),
        )
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return ExecResult(exit_code=result.exit_code if result.exit_code is not None else -1, output=output)

    def copy_out(self, ref: ContainerRef, path: str) -> Iterator[bytes]:
        """
        Yield the tar stream of ``path`` inside the container.

        Closing the generator early (abort, timeout) closes the HTTP response.
        """
        container = self._get(ref, "copy_out")
        response = self._call(ref, "copy_out", lambda: self._open_archive(container.id, path))
        try:
            for chunk in response.iter_content(CAPTURE_CHUNK_SIZE):
                yield chunk
        except (DockerException, RequestException) as e:
            raise ContainerRuntimeError("copy_out", e, target=ref.name)
        finally:
            response.close()

    # --------------- Private Methods ---------------

    def _get(self, ref: ContainerRef, operation: str):
        try:
            return self.client.containers.get(ref.id)
        except NotFound as e:
            raise ContainerRuntimeError(operation, f"container not found: {e}", target=ref.name)
        except (DockerException, RequestException) as e:
            raise ContainerRuntimeError(operation, e, target=ref.name)

    def _open_archive(self, container_id: str, path: str):
        # Container.get_archive hides the response behind a generator, so
        # issue the same GET on the low-level client and keep the response
        api = self.client.api
        response = api.get(
            f"{api.base_url}/v{api.api_version}/containers/{container_id}/archive",
            params={"path": path},
            stream=True,
            timeout=api.timeout,
        )
        try:
            response.raise_for_status()
        except HTTPError as e:
            response.close()
            raise create_api_error_from_http_exception(e) from e
        return response

    @staticmethod
    def _status(container) -> str:
        return (container.attrs.get("State") or {}).get("Status", container.status)

    @staticmethod
    def _call(ref: ContainerRef, operation: str, func):
        try:
            return func()
        except APIError as e:
            raise ContainerRuntimeError(operation, e.explanation or e, target=ref.name)
        except (DockerException, RequestException) as e:
            raise ContainerRuntimeError(operation, e, target=ref.name)
