"""
Pings
=====

Best-effort webhook notifications to a job's owner.

Each ping is POSTed from its own daemon thread. Nothing reports back to the
scheduler loop: a failed ping is logged and dropped, never retried.
"""

from __future__ import annotations
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Optional

import requests

from .protocol import User

log = logging.getLogger(__name__)

PING_TIMEOUT = 10   # seconds


@dataclass(frozen=True)
class JobStarted:
    id: int


@dataclass(frozen=True)
class JobFinished:
    id: int


@dataclass(frozen=True)
class JobCancelled:
    id:     int
    reason: str


def ping_payload(user: User, ping) -> dict:
    return {
        "event": type(ping).__name__,
        "user":  user.to_json(),
        **asdict(ping),
    }


def _deliver(api_key: str, url: str, payload: dict):
    try:
        resp = requests.post(
            url,
            json    = payload,
            headers = {
                "Authorization": f"Bearer {api_key}",
                "Content-Type":  "application/json",
            },
            timeout = PING_TIMEOUT,
        )
        if not resp.ok:
            log.warning(f"Ping {payload['event']} rejected: {resp.status_code} {resp.text[:200]}")
    except requests.RequestException as e:
        log.error(f"Ping {payload['event']} for uid {payload['user']['uid']} failed: {e}")


def send_ping(api_key: str, user: User, ping, url: Optional[str] = None) -> Optional[threading.Thread]:
    """Fire and forget. Returns the delivery thread, or None when no webhook is configured."""
    log.info(f"Sending ping to {user.name}: {ping}")
    if not url:
        return None
    t = threading.Thread(
        target = _deliver,
        args   = (api_key, url, ping_payload(user, ping)),
        name   = f"ping-{ping.id}",
        daemon = True,
    )
    t.start()
    return t
