"""
clobberd
========

The daemon that arbitrates GPUs on a shared multi-user machine.

What it does:
  1. Discover local GPUs via NVML
  2. Accept job requests from the `clobber` client over a Unix socket
  3. Admit queued jobs onto free GPUs, first-fit by arrival
  4. Run each job inside the owner's rootless podman
  5. Kill any process that shows up on a claimed GPU under a foreign uid
  6. Ping the owner when a job starts, finishes or is cancelled

Security model:
  - Only root (peer uid 0, checked with SO_PEERCRED) may stop the daemon or
    change which GPUs are watched
  - Containers run under the submitting user's own podman socket, never as root
  - Processes owned by root are never killed

Requirements:
  pip install requests psutil nvidia-ml-py

Usage:
  clobberd --config /etc/clobberd/config.json
  clobber status
"""

__version__ = "0.3.0"
