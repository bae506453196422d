"""
Control Server
==============

The daemon end of the `clobber` Unix socket.

The listening socket is non-blocking and serviced once per scheduler tick: at
most one connection is accepted, read to EOF, answered and closed. Reads and
writes on the accepted connection time out after one second so a stuck client
cannot stall the loop for longer than that.

Privileged commands (Kill, SetWatch) are only honoured when the peer's uid, as
reported by the kernel via SO_PEERCRED, is root.
"""

from __future__ import annotations
import logging
import os
import socket
import struct
import sys
from pathlib import Path
from typing import Optional

from .devices import DeviceRegistry
from .errors import ProtocolError, UnknownDevice
from .jobs import JobStore
from .protocol import (
    PRIVILEGED_COMMANDS,
    ActiveJobs,
    ActiveJobsResponse,
    Command,
    Error,
    GPUStatus,
    Kill,
    MyJobs,
    MyJobsResponse,
    QueuedJob,
    QueueJob,
    Response,
    SetWatch,
    Status,
    Success,
    decode_command,
    encode,
)

log = logging.getLogger(__name__)

IO_TIMEOUT        = 1.0        # seconds, per read/write on an accepted connection
MAX_REQUEST_BYTES = 64 * 1024
ROOT_UID          = 0


def bind(path: Path) -> socket.socket:
    """Replace any stale socket file and listen, non-blocking, on path."""
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(path))
        os.chmod(path, 0o666)   # Every local user must be able to queue jobs
        sock.listen(16)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def peer_uid(conn: socket.socket) -> Optional[int]:
    """uid of the process on the other end, or None where the kernel won't say."""
    if not hasattr(socket, "SO_PEERCRED"):
        return None
    try:
        creds = conn.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, struct.calcsize("3i"))
    except OSError as e:
        log.debug(f"SO_PEERCRED unavailable: {e}")
        return None
    _pid, uid, _gid = struct.unpack("3i", creds)
    return uid


def _read_request(conn: socket.socket) -> bytes:
    chunks = []
    size = 0
    while True:
        chunk = conn.recv(4096)
        if not chunk:
            return b"".join(chunks)
        size += len(chunk)
        if size > MAX_REQUEST_BYTES:
            raise ProtocolError(f"Request larger than {MAX_REQUEST_BYTES} bytes")
        chunks.append(chunk)


class ControlServer:
    def __init__(self, sock: socket.socket, registry: DeviceRegistry, store: JobStore):
        self.sock = sock
        self.registry = registry
        self.store = store
        self._handlers = {
            Status:     self._status,
            Kill:       self._kill,
            SetWatch:   self._set_watch,
            QueueJob:   self._queue_job,
            ActiveJobs: self._active_jobs,
            MyJobs:     self._my_jobs,
        }

    # ─── Connection handling ──────────────────────────────────────────────────

    def accept_one(self) -> bool:
        """Service at most one pending connection. Returns True if one was handled."""
        try:
            conn, _addr = self.sock.accept()
        except BlockingIOError:
            return False
        except OSError as e:
            log.error(f"Error accepting socket connection: {e}")
            return False

        with conn:
            conn.settimeout(IO_TIMEOUT)
            uid = peer_uid(conn)
            log.debug(f"Accepted connection from uid {uid}")
            try:
                raw = _read_request(conn)
            except socket.timeout:
                log.error("Timeout while reading from socket")
                return True
            except ProtocolError as e:
                log.error(str(e))
                self._reply(conn, Error(str(e)))
                return True
            except OSError as e:
                log.error(f"Error reading from socket: {e}")
                return True

            try:
                command = decode_command(raw.decode("utf-8"))
            except (ProtocolError, UnicodeDecodeError) as e:
                msg = f"Error parsing command: {e}"
                log.error(msg)
                response = Error(msg)
            else:
                response = self.handle(command, uid)
            self._reply(conn, response)
        return True

    def _reply(self, conn: socket.socket, response: Response):
        try:
            conn.sendall(encode(response).encode("utf-8"))
        except socket.timeout:
            log.error("Timeout while sending response")
        except OSError as e:
            log.error(f"Error sending response: {e}")

    # ─── Dispatch ─────────────────────────────────────────────────────────────

    def handle(self, command: Command, uid: Optional[int]) -> Response:
        if isinstance(command, PRIVILEGED_COMMANDS) and uid != ROOT_UID:
            log.warning(f"Refused {command.TAG} from uid {uid}")
            return Error("Permission denied")
        handler = self._handlers.get(type(command))
        if handler is None:
            log.error(f"Unimplemented command {command!r}")
            return Error("Unimplemented command")
        return handler(command)

    def _status(self, command: Status) -> Response:
        return GPUStatus(locks=tuple(self.store.owner_of(n) for n in self.registry.numbers()))

    def _kill(self, command: Kill) -> Response:
        log.info("Received Kill command. Exiting.")
        sys.exit(0)

    def _set_watch(self, command: SetWatch) -> Response:
        try:
            self.registry.set_watching(command.device_number, command.watching)
        except UnknownDevice as e:
            log.warning(str(e))
            return Error(str(e))
        return Success()

    def _queue_job(self, command: QueueJob) -> Response:
        try:
            self.store.enqueue(command.user, command.image_id, command.gpus)
        except OverflowError as e:
            log.error(f"Cannot queue job for uid {command.user.uid}: {e}")
            return Error("Job queue is full")
        return Success()

    def _active_jobs(self, command: ActiveJobs) -> Response:
        return ActiveJobsResponse(jobs=tuple(j.summary() for j in self.store.snapshot_active()))

    def _my_jobs(self, command: MyJobs) -> Response:
        return MyJobsResponse(jobs=tuple(
            QueuedJob(queue_position=position, job=job.detail())
            for position, job in self.store.snapshot_queue_positions(command.uid)
        ))

    def close(self):
        self.sock.close()
