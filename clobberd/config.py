from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError

log = logging.getLogger(__name__)

CONFIG_PATH   = Path("/etc/clobberd/config.json")
SOCKET_PATH   = Path("/run/clobberd.sock")
TICK_INTERVAL = 0.25   # seconds


@dataclass
class ClobberConfig:
    notification_api_key: str
    notification_url:     Optional[str] = None   # no webhook: pings are only logged
    socket_path:          Path          = SOCKET_PATH
    tick_interval:        float         = TICK_INTERVAL


def load_config(path: Path) -> ClobberConfig:
    """Read the daemon config. Any problem here is fatal to startup."""
    try:
        raw = json.loads(Path(path).read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"Config file {path} does not exist") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    api_key = raw.get("notificationApiKey")
    if not isinstance(api_key, str):
        raise ConfigError(f"Config file {path} is missing `notificationApiKey` (string)")

    url = raw.get("notificationUrl")
    if url is not None and not isinstance(url, str):
        raise ConfigError("`notificationUrl` must be a string")

    socket_path = raw.get("socketPath", str(SOCKET_PATH))
    if not isinstance(socket_path, str):
        raise ConfigError("`socketPath` must be a string")

    interval = raw.get("tickInterval", TICK_INTERVAL)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError("`tickInterval` must be a positive number of seconds")

    log.debug(f"Loaded config from {path}")
    return ClobberConfig(
        notification_api_key = api_key,
        notification_url     = url,
        socket_path          = Path(socket_path),
        tick_interval        = float(interval),
    )
