"""
clobber — command-line client for clobberd.

Sends one request over the control socket, prints the answer, exits.
"""

from __future__ import annotations
import argparse
import os
import pwd
import socket
import sys
from typing import Optional

from .config import SOCKET_PATH
from .errors import ContainerRuntimeError, ProtocolError
from .pod import Pod
from .protocol import (
    ActiveJobs,
    ActiveJobsResponse,
    Command,
    Error,
    GPUStatus,
    Kill,
    MyJobs,
    MyJobsResponse,
    QueueJob,
    Response,
    SetWatch,
    Status,
    Success,
    User,
    decode_response,
    encode,
)

CLIENT_TIMEOUT = 10   # seconds


def send_command(command: Command, socket_path=SOCKET_PATH) -> Response:
    """Round-trip one command. Raises ConnectionError if the daemon is unreachable."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(CLIENT_TIMEOUT)
    try:
        try:
            sock.connect(str(socket_path))
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise ConnectionError(f"Error connecting to socket. Is clobberd running?\n{exc}") from exc

        sock.sendall(encode(command).encode("utf-8"))
        sock.shutdown(socket.SHUT_WR)

        chunks = []
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
        if not chunks and isinstance(command, Kill):
            return Success()   # The daemon exits without answering
        return decode_response(b"".join(chunks).decode("utf-8"))
    finally:
        sock.close()


def format_response(response: Response) -> list[str]:
    if isinstance(response, Success):
        return []
    if isinstance(response, Error):
        return [f"Error: {response.message}"]
    if isinstance(response, GPUStatus):
        lines = []
        for index, user in enumerate(response.locks):
            if user is None:
                lines.append(f"GPU {index} is not being used")
            else:
                lines.append(f"GPU {index} is being used by {user.name}")
        return lines
    if isinstance(response, ActiveJobsResponse):
        if not response.jobs:
            return ["No active jobs"]
        return [
            f"Job {j.id}: {j.owner.name} on GPUs {', '.join(map(str, j.gpus)) or '-'}"
            for j in response.jobs
        ]
    if isinstance(response, MyJobsResponse):
        if not response.jobs:
            return ["You have no queued jobs"]
        return [
            f"#{q.queue_position} job {q.job.id}: {q.job.image_id} "
            f"on GPUs {', '.join(map(str, q.job.gpus)) or '-'}"
            for q in response.jobs
        ]
    return [f"Unexpected response: {response!r}"]


def find_image(uid: int, image: str) -> Optional[str]:
    pod = Pod(uid)
    pod.ping()
    return image if pod.image_exists(image) else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clobber", description="Talk to the clobberd GPU scheduler")
    parser.add_argument("--socket", default=os.getenv("CLOBBERD_SOCKET", str(SOCKET_PATH)),
                        help="Control socket path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show who holds each GPU")
    sub.add_parser("kill", help="Stop the daemon (root only)")
    for name, help_text in (("watch", "Enforce ownership on a GPU (root only)"),
                            ("unwatch", "Stop enforcing ownership on a GPU (root only)")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("-d", "--device", type=int, required=True)
    q = sub.add_parser("queue", help="Queue a job from one of your podman images")
    q.add_argument("-i", "--image", required=True)
    q.add_argument("-g", "--gpus", type=int, nargs="*", default=[])
    sub.add_parser("jobs", help="List active jobs")
    sub.add_parser("myjobs", help="List your queued jobs")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    uid = os.getuid()
    is_root = os.geteuid() == 0

    if args.command in ("kill", "watch", "unwatch") and not is_root:
        print("Permission denied.", file=sys.stderr)
        return 1

    if args.command == "status":
        command = Status()
    elif args.command == "kill":
        command = Kill()
    elif args.command in ("watch", "unwatch"):
        command = SetWatch(device_number=args.device, watching=args.command == "watch")
    elif args.command == "jobs":
        command = ActiveJobs()
    elif args.command == "myjobs":
        command = MyJobs(uid=uid)
    else:
        try:
            image = find_image(uid, args.image)
        except ContainerRuntimeError as e:
            print(f"Error connecting to podman: {e}\n\n"
                  f"Maybe try systemctl enable --user --now podman.socket", file=sys.stderr)
            return 1
        if image is None:
            print("Cannot find image", file=sys.stderr)
            return 1
        user = User(uid=uid, name=pwd.getpwuid(uid).pw_name)
        command = QueueJob(user=user, image_id=image, gpus=tuple(args.gpus))

    try:
        response = send_command(command, args.socket)
    except ConnectionError as e:
        print(str(e), file=sys.stderr)
        return 1
    except (OSError, ProtocolError) as e:
        print(f"Error talking to clobberd: {e}", file=sys.stderr)
        return 1

    for line in format_response(response):
        print(line, file=sys.stderr if isinstance(response, Error) else sys.stdout)
    return 1 if isinstance(response, Error) else 0


if __name__ == "__main__":
    sys.exit(main())
