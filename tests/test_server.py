import os
import socket
import stat
import sys
import time

import pytest

from clobberd import server as server_mod
from clobberd.protocol import (
    COMMANDS,
    ActiveJobs,
    ActiveJobsResponse,
    Command,
    Error,
    GPUStatus,
    JobSummary,
    Kill,
    MyJobs,
    MyJobsResponse,
    QueueJob,
    SetWatch,
    Status,
    Success,
    decode_response,
    encode,
)
from clobberd.server import ControlServer, bind

from conftest import ALICE, BOB


@pytest.fixture
def sock_path(tmp_path):
    return tmp_path / "clobberd.sock"


@pytest.fixture
def control(sock_path, registry, store):
    srv = ControlServer(bind(sock_path), registry, store)
    yield srv
    srv.close()


def roundtrip(control: ControlServer, path, payload: bytes) -> bytes:
    client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    client.settimeout(2)
    client.connect(str(path))
    client.sendall(payload)
    client.shutdown(socket.SHUT_WR)
    assert control.accept_one() is True
    chunks = []
    while True:
        chunk = client.recv(4096)
        if not chunk:
            break
        chunks.append(chunk)
    client.close()
    return b"".join(chunks)


class TestDispatch:
    def test_status_with_no_jobs(self, control):
        assert control.handle(Status(), uid=1000) == GPUStatus(locks=(None, None, None, None))

    def test_status_shows_owner(self, control, store):
        store.enqueue(ALICE, "img", [1, 3])
        store.activate(store.pop_next_admissible(), "c")
        assert control.handle(Status(), uid=1000) == GPUStatus(locks=(None, ALICE, None, ALICE))

    def test_set_watch_as_root(self, control, registry):
        assert control.handle(SetWatch(device_number=2, watching=False), uid=0) == Success()
        assert registry.list()[2].watching is False

    def test_set_watch_unknown_device(self, control, registry):
        response = control.handle(SetWatch(device_number=99, watching=True), uid=0)
        assert isinstance(response, Error)
        assert "99" in response.message
        assert all(d.watching for d in registry.list())

    @pytest.mark.parametrize("uid", [1000, None])
    def test_privileged_commands_need_root_peer(self, control, registry, uid):
        assert control.handle(SetWatch(device_number=0, watching=False), uid=uid) == Error("Permission denied")
        assert control.handle(Kill(), uid=uid) == Error("Permission denied")
        assert registry.list()[0].watching is True

    def test_kill_exits(self, control):
        with pytest.raises(SystemExit) as excinfo:
            control.handle(Kill(), uid=0)
        assert excinfo.value.code == 0

    def test_queue_job_always_succeeds(self, control, store):
        response = control.handle(QueueJob(user=BOB, image_id="img", gpus=(42,)), uid=1001)
        assert response == Success()
        (job,) = store.queued()
        assert job.owner == BOB and job.gpus == frozenset({42})

    def test_active_jobs(self, control, store):
        job_id = store.enqueue(ALICE, "img", [2, 0])
        store.activate(store.pop_next_admissible(), "c")
        assert control.handle(ActiveJobs(), uid=1) == ActiveJobsResponse(
            jobs=(JobSummary(id=job_id, owner=ALICE, gpus=(0, 2)),)
        )

    def test_my_jobs(self, control, store):
        store.enqueue(BOB, "b", [0])
        mine = store.enqueue(ALICE, "a", [1])
        response = control.handle(MyJobs(uid=ALICE.uid), uid=ALICE.uid)
        assert isinstance(response, MyJobsResponse)
        (entry,) = response.jobs
        assert entry.queue_position == 2
        assert entry.job.id == mine and entry.job.image_id == "a"

    def test_every_command_has_a_handler(self, control):
        assert set(control._handlers) == set(COMMANDS.values())

    def test_unknown_command_type(self, control):
        class Reboot(Command):
            TAG = "Reboot"
        assert control.handle(Reboot(), uid=0) == Error("Unimplemented command")


class TestSocket:
    def test_bind_replaces_stale_file(self, sock_path):
        sock_path.write_text("stale")
        sock = bind(sock_path)
        try:
            assert stat.S_ISSOCK(os.stat(sock_path).st_mode)
            assert stat.S_IMODE(os.stat(sock_path).st_mode) == 0o666
        finally:
            sock.close()

    def test_no_pending_connection_is_a_no_op(self, control):
        assert control.accept_one() is False

    def test_status_round_trip(self, control, sock_path):
        reply = roundtrip(control, sock_path, encode(Status()).encode())
        assert decode_response(reply.decode()) == GPUStatus(locks=(None,) * 4)

    def test_queue_job_round_trip(self, control, sock_path, store):
        reply = roundtrip(control, sock_path, encode(QueueJob(user=ALICE, image_id="img", gpus=(0,))).encode())
        assert decode_response(reply.decode()) == Success()
        assert len(store.queued()) == 1

    def test_malformed_json_gets_error(self, control, sock_path):
        response = decode_response(roundtrip(control, sock_path, b"{oops").decode())
        assert isinstance(response, Error)
        assert response.message.startswith("Error parsing command")

    @pytest.mark.parametrize("payload", [
        b"[" * 5000 + b"]" * 5000,
        pytest.param(
            b'{"MyJobs": {"uid": ' + b"9" * 5000 + b"}}",
            marks=pytest.mark.skipif(not hasattr(sys, "get_int_max_str_digits"),
                                     reason="no integer digit limit before 3.11"),
        ),
    ])
    def test_json_the_parser_cannot_hold_gets_error(self, control, sock_path, payload):
        response = decode_response(roundtrip(control, sock_path, payload).decode())
        assert isinstance(response, Error)
        assert response.message.startswith("Error parsing command")

    def test_client_that_never_finishes_is_dropped(self, control, sock_path, monkeypatch):
        monkeypatch.setattr(server_mod, "IO_TIMEOUT", 0.2)
        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        client.settimeout(2)
        client.connect(str(sock_path))
        try:
            client.sendall(b'"Sta')     # no half-close
            started = time.monotonic()
            assert control.accept_one() is True
            assert time.monotonic() - started < 1.0
            assert client.recv(4096) == b""
        finally:
            client.close()

    def test_oversized_request_gets_error(self, control, sock_path, monkeypatch):
        monkeypatch.setattr(server_mod, "MAX_REQUEST_BYTES", 16)
        response = decode_response(roundtrip(control, sock_path, b'"Status"' * 8).decode())
        assert isinstance(response, Error)

    def test_peer_uid_is_read_from_kernel(self, control, sock_path):
        if not hasattr(socket, "SO_PEERCRED"):
            pytest.skip("SO_PEERCRED is Linux-only")
        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        client.connect(str(sock_path))
        try:
            conn, _ = control.sock.accept()
            with conn:
                assert server_mod.peer_uid(conn) == os.getuid()
        finally:
            client.close()
