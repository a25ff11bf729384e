from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, BuildError, NotFound

from preview_sandbox.schemas import Framework
from preview_sandbox.sandbox.errors import BuildFailure, RuntimeCrash
from preview_sandbox.sandbox.runtime import MANAGED_LABEL, SESSION_LABEL, DockerRuntime


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def runtime(config, client):
    return DockerRuntime(config, client=client)


def fake_container(name, status="running", exit_code=0, restarts=0, host_port=None):
    container = MagicMock()
    container.id = f"id-{name}"
    container.name = name
    container.status = status
    container.attrs = {
        "State": {"Status": status, "ExitCode": exit_code, "Error": ""},
        "RestartCount": restarts,
        "NetworkSettings": {
            "Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}] if host_port else None}
        },
    }
    return container


class TestBuild:
    def test_build_arguments(self, runtime, client, config, tmp_path):
        tag = runtime.build(tmp_path, Framework.REACT, "sandbox-p1:latest", labels={SESSION_LABEL: "sandbox-p1"})

        assert tag == "sandbox-p1:latest"
        kwargs = client.images.build.call_args.kwargs
        assert kwargs["path"] == str(tmp_path)
        assert kwargs["tag"] == "sandbox-p1:latest"
        assert kwargs["rm"] is True
        assert kwargs["timeout"] == config.build_timeout
        assert kwargs["labels"] == {
            MANAGED_LABEL: "true",
            "preview-sandbox.framework": "react",
            SESSION_LABEL: "sandbox-p1",
        }

    def test_build_error_carries_log_tail(self, runtime, client, tmp_path):
        client.images.build.side_effect = BuildError(
            "The command '/bin/sh -c npm install' returned a non-zero code: 1",
            [{"stream": "Step 4/7 : RUN npm install\n"}, {"error": "npm ERR! 404 Not Found\n"}],
        )

        with pytest.raises(BuildFailure) as excinfo:
            runtime.build(tmp_path, Framework.NEXTJS, "t:latest")

        assert "non-zero code" in excinfo.value.message
        assert excinfo.value.logs == "Step 4/7 : RUN npm install\nnpm ERR! 404 Not Found"

    def test_daemon_error(self, runtime, client, tmp_path):
        client.images.build.side_effect = APIError("daemon hiccup")

        with pytest.raises(BuildFailure):
            runtime.build(tmp_path, Framework.NEXTJS, "t:latest")


class TestRun:
    def test_run_arguments(self, runtime, client, config):
        client.containers.run.return_value = fake_container("sandbox-p1")

        ref = runtime.run("sandbox-p1:latest", 5003, "sandbox-p1", Framework.NEXTJS)

        assert ref == "id-sandbox-p1"
        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["ports"] == {"3000/tcp": 5003}
        assert kwargs["detach"] is True
        assert kwargs["mem_limit"] == config.memory_limit
        assert kwargs["cpu_quota"] == int(100000 * config.cpu_limit)
        assert kwargs["environment"]["PORT"] == "3000"
        assert kwargs["restart_policy"] == {"Name": "on-failure", "MaximumRetryCount": config.max_restarts}
        assert kwargs["labels"][MANAGED_LABEL] == "true"

    def test_no_restart_policy(self, config, client):
        config.restart_policy = "no"
        client.containers.run.return_value = fake_container("x")

        DockerRuntime(config, client=client).run("img", 5000, "x")

        assert "restart_policy" not in client.containers.run.call_args.kwargs

    def test_port_already_allocated(self, runtime, client):
        client.containers.run.side_effect = APIError(
            "Bind for 0.0.0.0:5000 failed: port is already allocated"
        )

        with pytest.raises(RuntimeCrash) as excinfo:
            runtime.run("img", 5000, "x")
        assert excinfo.value.message == "Port 5000 is already in use"

    def test_other_api_error(self, runtime, client):
        client.containers.run.side_effect = APIError("no such image")

        with pytest.raises(RuntimeCrash) as excinfo:
            runtime.run("img", 5000, "x")
        assert excinfo.value.message.startswith("Docker API error")


class TestObservation:
    def test_inspect(self, runtime, client):
        client.containers.get.return_value = fake_container("x", status="restarting", exit_code=1, restarts=4)

        state = runtime.inspect("x")

        assert state.state == "restarting"
        assert state.exit_code == 1
        assert state.restart_count == 4
        assert state.error is None
        client.containers.get.return_value.reload.assert_called_once()

    def test_inspect_missing(self, runtime, client):
        client.containers.get.side_effect = NotFound("gone")
        state = runtime.inspect("x")
        assert state.state == "missing"
        assert state.is_terminal

    def test_logs_are_decoded(self, runtime, client):
        client.containers.get.return_value.logs.return_value = b"ready in 300 ms\n"
        assert runtime.logs("x", tail=20) == "ready in 300 ms\n"
        client.containers.get.return_value.logs.assert_called_once_with(tail=20)

    def test_logs_of_missing_container(self, runtime, client):
        client.containers.get.side_effect = NotFound("gone")
        assert runtime.logs("x") == ""

    def test_managed_ports(self, runtime, client):
        client.containers.list.return_value = [
            fake_container("a", host_port=5000),
            fake_container("b", host_port=5007),
            fake_container("c"),
        ]

        assert runtime.managed_ports() == {5000, 5007}
        assert client.containers.list.call_args.kwargs["filters"] == {"label": f"{MANAGED_LABEL}=true"}

    def test_ping(self, runtime, client):
        client.ping.return_value = True
        assert runtime.ping() is True
        client.ping.side_effect = APIError("down")
        assert runtime.ping() is False


class TestTeardown:
    def test_teardown_ignores_missing(self, runtime, client):
        client.containers.get.side_effect = NotFound("gone")
        client.images.remove.side_effect = NotFound("gone")

        runtime.stop("x")
        runtime.remove("x")
        runtime.remove_image("img")
        runtime.remove_stale("x")

    def test_teardown_logs_api_errors(self, runtime, client, caplog):
        client.containers.get.return_value.remove.side_effect = APIError("busy")

        runtime.remove("x")

        assert "Could not remove container x" in caplog.text

    def test_remove_stale(self, runtime, client):
        stale = fake_container("sandbox-p1")
        client.containers.get.return_value = stale

        runtime.remove_stale("sandbox-p1")

        stale.stop.assert_called_once()
        stale.remove.assert_called_once_with(force=True)

    def test_remove_orphans_keeps_listed(self, runtime, client):
        keep, orphan = fake_container("sandbox-a"), fake_container("sandbox-b", status="exited")
        client.containers.list.return_value = [keep, orphan]

        removed = runtime.remove_orphans(keep=["id-sandbox-a"])

        assert removed == ["sandbox-b"]
        keep.remove.assert_not_called()
        orphan.remove.assert_called_once_with(force=True)
        assert client.containers.list.call_args.kwargs["all"] is True
