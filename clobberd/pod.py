"""
Pod
===

Talks to a user's rootless podman through the podman CLI in remote mode.

Every user runs their own podman service (`systemctl --user enable --now
podman.socket`), so images and containers live in that user's storage and a
job's container runs with that user's privileges, never root's.
"""

from __future__ import annotations
import logging
import random
import string
import subprocess
from dataclasses import dataclass

from .errors import ContainerRuntimeError

log = logging.getLogger(__name__)

PODMAN_TIMEOUT = 30   # seconds per podman call


def gen_container_name() -> str:
    suffix = "".join(random.choices(string.ascii_letters + string.digits, k=8))
    return f"clobber_{suffix}"


@dataclass
class Pod:
    uid: int

    @property
    def socket_url(self) -> str:
        return f"unix:///run/user/{self.uid}/podman/podman.sock"

    def _podman(self, *args: str) -> subprocess.CompletedProcess:
        cmd = ["podman", "--url", self.socket_url, *args]
        log.debug(f"[pod] {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, errors="replace",
                                  timeout=PODMAN_TIMEOUT)
        except subprocess.TimeoutExpired as e:
            raise ContainerRuntimeError(f"podman {args[0]} timed out after {PODMAN_TIMEOUT}s") from e
        except UnicodeDecodeError as e:
            raise ContainerRuntimeError(f"podman {args[0]} produced undecodable output: {e}") from e
        except OSError as e:
            raise ContainerRuntimeError(f"Could not run podman: {e}") from e

    def ping(self) -> None:
        result = self._podman("version")
        if result.returncode != 0:
            raise ContainerRuntimeError(f"podman unreachable: {result.stderr.strip()[:300]}")

    def image_exists(self, image_id: str) -> bool:
        result = self._podman("image", "exists", image_id)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise ContainerRuntimeError(
            f"Error checking image {image_id}: {result.stderr.strip()[:300]}"
        )

    def create_and_start(self, image_id: str) -> str:
        """Create a container from image_id, start it and return its id."""
        result = self._podman("create", "--name", gen_container_name(), image_id)
        if result.returncode != 0:
            raise ContainerRuntimeError(f"Error creating container: {result.stderr.strip()[:300]}")
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise ContainerRuntimeError("podman create did not report a container id")
        container_id = lines[-1]

        result = self._podman("start", container_id)
        if result.returncode != 0:
            raise ContainerRuntimeError(f"Error starting container: {result.stderr.strip()[:300]}")
        return container_id

    def is_finished(self, container_id: str) -> bool:
        result = self._podman("inspect", "--format", "{{.State.Running}}", container_id)
        if result.returncode != 0:
            raise ContainerRuntimeError(
                f"Error inspecting container {container_id}: {result.stderr.strip()[:300]}"
            )
        state = result.stdout.strip().lower()
        if state not in ("true", "false"):
            raise ContainerRuntimeError(f"Could not determine state of container {container_id}")
        return state == "false"
