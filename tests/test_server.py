import socket
import time

import pytest

from conftest import process_alive, wait_for_file, wait_until_gone, wrapped

from featurespec import BackgroundServer, ExecutionError, ServerScope, StepTimeoutError


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_server_waits_for_banner_and_stops_with_scope(config):
    with ServerScope(config) as servers:
        server = servers.start("rpc_test")
        popen = server.proc.proc
        assert server.running
        assert server.name == "rpc_test"

    assert popen.poll() is not None
    assert servers.server is None


def test_server_waits_for_port(config):
    port = free_port()
    config.server_port = port
    config.server_args = ["server", "start", "--port", str(port)]

    with ServerScope(config) as servers:
        servers.start()
        with socket.create_connection(("127.0.0.1", port), timeout=1):
            pass


def test_server_is_stopped_when_the_scope_fails(config):
    with pytest.raises(RuntimeError):
        with ServerScope(config) as servers:
            popen = servers.start().proc.proc
            raise RuntimeError("step blew up")

    assert popen.poll() is not None


def test_readiness_timeout_kills_the_server(config):
    config.server_args = ["server", "start", "--never-ready"]
    config.ready_timeout = 1
    server = BackgroundServer(config)
    server.start()
    popen = server.proc.proc

    with pytest.raises(StepTimeoutError, match="within 1s"):
        server.wait_ready()

    assert popen.poll() is not None
    assert server.proc is None


def test_port_readiness_timeout(config):
    config.server_args = ["server", "start", "--never-ready"]
    config.server_port = free_port()
    config.ready_timeout = 1

    with ServerScope(config) as servers:
        with pytest.raises(StepTimeoutError, match="not reachable"):
            servers.start()


def test_server_exiting_early_is_an_execution_error(config):
    config.server_args = ["server", "start", "--crash"]

    with ServerScope(config) as servers:
        with pytest.raises(ExecutionError, match="exited before becoming ready"):
            servers.start()


def test_second_server_in_one_scope_is_rejected(config):
    with ServerScope(config) as servers:
        servers.start()
        with pytest.raises(ExecutionError, match="already running"):
            servers.start()


def test_stop_without_server(config):
    with ServerScope(config) as servers:
        assert servers.stop() is False
        servers.start()
        assert servers.stop() is True
        assert servers.stop() is False


def test_stop_kills_processes_the_server_forked(config, tmp_path):
    config.binary = wrapped(config.binary)

    with ServerScope(config) as servers:
        servers.start()
        pid = int(wait_for_file(tmp_path / "server.pid"))
        assert process_alive(pid)

    assert wait_until_gone(pid)


def test_failed_readiness_kills_processes_the_server_forked(config, tmp_path):
    config.binary = wrapped(config.binary)
    config.server_ready = "never printed"
    config.ready_timeout = 1

    with ServerScope(config) as servers:
        with pytest.raises(StepTimeoutError):
            servers.start()

    pid = int(wait_for_file(tmp_path / "server.pid"))
    assert wait_until_gone(pid)


def test_drain_takes_output_printed_after_readiness(config):
    config.server_args = ["server", "start", "--chatty"]

    with ServerScope(config) as servers:
        assert servers.drain() == ""
        servers.start()
        time.sleep(0.5)
        output = servers.drain()

        assert "tick" in output
        assert "listening" not in output

    assert servers.drain() == ""
