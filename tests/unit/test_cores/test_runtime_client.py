"""Unit tests for DockerRuntimeClient using a mocked docker SDK client."""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import HTTPError

from dockvault.cores.runtime_client import (
    DockerRuntimeClient,
    RuntimeClient,
    container_ref_from_attrs,
)
from dockvault.helpers.exceptions import ContainerRuntimeError, RuntimeUnavailableError
from dockvault.types import ContainerRef

ATTRS = {
    "Id": "f" * 64,
    "Name": "/postgres",
    "State": {"Status": "running"},
    "Config": {"Labels": {"dockvault.enable": "true"}},
    "Mounts": [
        {"Type": "volume", "Name": "pgdata", "Destination": "/var/lib/postgresql/data"},
        {"Type": "bind", "Source": "/etc/x", "Destination": "/etc/x"},
        {"Type": "tmpfs"},
    ],
}


def make_container(status="running", attrs=None):
    container = MagicMock()
    container.status = status
    container.attrs = dict(attrs or ATTRS, State={"Status": status})
    return container


def make_client(container=None):
    docker_client = MagicMock()
    docker_client.containers.get.return_value = container or make_container()
    return DockerRuntimeClient(client=docker_client), docker_client


REF = ContainerRef(id="f" * 64, name="postgres")


# =============================================================================
# Inspect parsing
# =============================================================================


@pytest.mark.unit
class TestContainerRefFromAttrs:

    def test_parses_name_labels_state(self):
        ref = container_ref_from_attrs(ATTRS)
        assert ref.name == "postgres"
        assert ref.labels == {"dockvault.enable": "true"}
        assert ref.state == "running"

    def test_mounts_without_destination_are_skipped(self):
        ref = container_ref_from_attrs(ATTRS)
        assert [m.destination for m in ref.mounts] == ["/var/lib/postgresql/data", "/etc/x"]
        assert ref.mounts[0].name == "pgdata"
        assert ref.mounts[1].type == "bind"

    def test_missing_sections(self):
        ref = container_ref_from_attrs({"Id": "abc"})
        assert ref.labels == {}
        assert ref.state == "unknown"
        assert ref.mounts == ()

    def test_client_satisfies_protocol(self):
        assert isinstance(DockerRuntimeClient(client=MagicMock()), RuntimeClient)


# =============================================================================
# Operations
# =============================================================================


@pytest.mark.unit
class TestDiscovery:

    def test_ping_failure_is_unavailable(self):
        client, docker_client = make_client()
        docker_client.ping.side_effect = DockerException("socket missing")

        with pytest.raises(RuntimeUnavailableError):
            client.ping()

    def test_list_containers_uses_label_filter(self):
        client, docker_client = make_client()
        docker_client.containers.list.return_value = [make_container()]

        refs = client.list_containers("dockvault.enable=true")

        docker_client.containers.list.assert_called_once_with(filters={"label": "dockvault.enable=true"})
        assert refs[0].name == "postgres"

    def test_inspect_not_found(self):
        client, docker_client = make_client()
        docker_client.containers.get.side_effect = NotFound("gone")

        with pytest.raises(ContainerRuntimeError, match="not found"):
            client.inspect(REF)


@pytest.mark.unit
class TestStateChanges:

    def test_pause_running(self):
        container = make_container("running")
        client, _ = make_client(container)
        client.pause(REF)
        container.pause.assert_called_once()

    def test_pause_skips_non_running(self):
        container = make_container("exited")
        client, _ = make_client(container)
        client.pause(REF)
        container.pause.assert_not_called()

    def test_unpause_only_when_paused(self):
        container = make_container("running")
        client, _ = make_client(container)
        client.unpause(REF)
        container.unpause.assert_not_called()

        paused = make_container("paused")
        client, _ = make_client(paused)
        client.unpause(REF)
        paused.unpause.assert_called_once()

    def test_stop_uses_timeout(self):
        container = make_container("running")
        client, _ = make_client(container)
        client.stop_timeout = 7
        client.stop(REF)
        container.stop.assert_called_once_with(timeout=7)

    def test_stop_paused_container_fails(self):
        client, _ = make_client(make_container("paused"))
        with pytest.raises(ContainerRuntimeError, match="paused"):
            client.stop(REF)

    def test_start_skips_running(self):
        container = make_container("running")
        client, _ = make_client(container)
        client.start(REF)
        container.start.assert_not_called()

    def test_api_error_is_wrapped(self):
        container = make_container("running")
        container.pause.side_effect = APIError("boom", explanation="cannot pause")
        client, _ = make_client(container)

        with pytest.raises(ContainerRuntimeError, match="cannot pause") as exc_info:
            client.pause(REF)
        assert exc_info.value.operation == "pause"
        assert exc_info.value.target == "postgres"


@pytest.mark.unit
class TestExecAndCopy:

    def test_exec_runs_through_shell(self):
        container = make_container()
        container.exec_run.return_value = MagicMock(exit_code=3, output=b"dumped\n")
        client, _ = make_client(container)

        result = client.exec(REF, "pg_dump db > /dump", user="postgres")

        container.exec_run.assert_called_once_with(["/bin/sh", "-c", "pg_dump db > /dump"], user="postgres")
        assert result.exit_code == 3
        assert result.output == "dumped\n"

    def test_exec_without_exit_code(self):
        container = make_container()
        container.exec_run.return_value = MagicMock(exit_code=None, output=None)
        client, _ = make_client(container)

        result = client.exec(REF, "true")
        assert result.exit_code == -1
        assert result.output == ""

    def test_copy_out_streams_chunks(self):
        container = make_container()
        container.id = "f" * 64
        client, docker_client = make_client(container)
        response = MagicMock()
        response.iter_content.return_value = iter([b"ab", b"cd"])
        docker_client.api.get.return_value = response

        assert b"".join(client.copy_out(REF, "/data")) == b"abcd"
        url = docker_client.api.get.call_args.args[0]
        assert url.endswith(f"/containers/{'f' * 64}/archive")
        assert docker_client.api.get.call_args.kwargs["params"] == {"path": "/data"}
        response.close.assert_called_once()

    def test_copy_out_closed_early_closes_response(self):
        client, docker_client = make_client()
        response = MagicMock()
        response.iter_content.return_value = iter([b"ab", b"cd"])
        docker_client.api.get.return_value = response

        stream = client.copy_out(REF, "/data")
        assert next(stream) == b"ab"
        stream.close()

        response.close.assert_called_once()

    def test_copy_out_missing_path(self):
        client, docker_client = make_client()
        response = MagicMock()
        error_response = MagicMock(status_code=404)
        error_response.json.return_value = {"message": "Could not find the file /missing in container"}
        response.raise_for_status.side_effect = HTTPError("404 Client Error", response=error_response)
        docker_client.api.get.return_value = response

        with pytest.raises(ContainerRuntimeError, match="copy_out failed.*Could not find the file"):
            list(client.copy_out(REF, "/missing"))
        response.close.assert_called_once()

    def test_copy_out_stream_error(self):
        def broken():
            yield b"ab"
            raise DockerException("connection reset")

        client, docker_client = make_client()
        response = MagicMock()
        response.iter_content.return_value = broken()
        docker_client.api.get.return_value = response

        with pytest.raises(ContainerRuntimeError, match="copy_out"):
            list(client.copy_out(REF, "/data"))
        response.close.assert_called_once()
