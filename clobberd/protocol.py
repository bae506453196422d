"""
Control Protocol
================

Messages exchanged between `clobber` and `clobberd` over the Unix socket.

One JSON document per direction. Variants are externally tagged:
  - variants without fields are bare strings      "Status"
  - variants with fields are single-key objects   {"SetWatch": {"device_number": 1, "watching": false}}
  - Error carries its message directly            {"Error": "Invalid device number"}

Field names are snake_case throughout (device_number, image_id, gpus,
queue_position), the names the `clobber` client has always put on the wire.
Only the daemon config file uses camelCase keys.

The client writes its request and half-closes the socket; the daemon answers
with exactly one response and closes.
"""

from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ProtocolError


# ─── Field helpers ────────────────────────────────────────────────────────────

def _field(raw: dict, name: str) -> Any:
    if not isinstance(raw, dict):
        raise ProtocolError(f"expected an object, got {type(raw).__name__}")
    if name not in raw:
        raise ProtocolError(f"missing field `{name}`")
    return raw[name]


def _uint(raw: dict, name: str) -> int:
    value = _field(raw, name)
    # bool is an int subclass; true/false are not device numbers
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProtocolError(f"field `{name}` must be a non-negative integer, got {value!r}")
    return value


def _bool(raw: dict, name: str) -> bool:
    value = _field(raw, name)
    if not isinstance(value, bool):
        raise ProtocolError(f"field `{name}` must be a boolean, got {value!r}")
    return value


def _str(raw: dict, name: str) -> str:
    value = _field(raw, name)
    if not isinstance(value, str):
        raise ProtocolError(f"field `{name}` must be a string, got {value!r}")
    return value


def _uint_list(raw: dict, name: str) -> tuple[int, ...]:
    value = _field(raw, name)
    if not isinstance(value, list):
        raise ProtocolError(f"field `{name}` must be a list, got {value!r}")
    return tuple(_uint({name: v}, name) for v in value)


def _list(raw: dict, name: str) -> list:
    value = _field(raw, name)
    if not isinstance(value, list):
        raise ProtocolError(f"field `{name}` must be a list, got {value!r}")
    return value


# ─── User ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class User:
    """A local account. Two records with the same uid are the same user."""
    uid:  int
    name: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, User):
            return NotImplemented
        return self.uid == other.uid

    def __hash__(self) -> int:
        return hash(self.uid)

    def to_json(self) -> dict:
        return {"uid": self.uid, "name": self.name}

    @classmethod
    def from_json(cls, raw: Any) -> "User":
        return cls(uid=_uint(raw, "uid"), name=_str(raw, "name"))


def _optional_user(raw: Any) -> Optional[User]:
    return None if raw is None else User.from_json(raw)


# ─── Commands ─────────────────────────────────────────────────────────────────

class Command:
    TAG = ""

    def fields(self) -> Optional[dict]:
        return None

    @classmethod
    def from_fields(cls, raw: Any) -> "Command":
        return cls()


@dataclass(frozen=True)
class Status(Command):
    TAG = "Status"


@dataclass(frozen=True)
class Kill(Command):
    TAG = "Kill"


@dataclass(frozen=True)
class SetWatch(Command):
    TAG = "SetWatch"

    device_number: int
    watching:      bool

    def fields(self) -> dict:
        return {"device_number": self.device_number, "watching": self.watching}

    @classmethod
    def from_fields(cls, raw: Any) -> "SetWatch":
        return cls(device_number=_uint(raw, "device_number"), watching=_bool(raw, "watching"))


@dataclass(frozen=True)
class QueueJob(Command):
    TAG = "QueueJob"

    user:     User
    image_id: str
    gpus:     tuple[int, ...] = ()

    def fields(self) -> dict:
        return {
            "user":     self.user.to_json(),
            "image_id": self.image_id,
            "gpus":     list(self.gpus),
        }

    @classmethod
    def from_fields(cls, raw: Any) -> "QueueJob":
        return cls(
            user     = User.from_json(_field(raw, "user")),
            image_id = _str(raw, "image_id"),
            gpus     = _uint_list(raw, "gpus"),
        )


@dataclass(frozen=True)
class ActiveJobs(Command):
    TAG = "ActiveJobs"


@dataclass(frozen=True)
class MyJobs(Command):
    TAG = "MyJobs"

    uid: int

    def fields(self) -> dict:
        return {"uid": self.uid}

    @classmethod
    def from_fields(cls, raw: Any) -> "MyJobs":
        return cls(uid=_uint(raw, "uid"))


COMMANDS: dict[str, type[Command]] = {
    cls.TAG: cls for cls in (Status, Kill, SetWatch, QueueJob, ActiveJobs, MyJobs)
}

PRIVILEGED_COMMANDS = (Kill, SetWatch)


# ─── Responses ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class JobSummary:
    id:    int
    owner: User
    gpus:  tuple[int, ...]

    def to_json(self) -> dict:
        return {"id": self.id, "owner": self.owner.to_json(), "gpus": list(self.gpus)}

    @classmethod
    def from_json(cls, raw: Any) -> "JobSummary":
        return cls(
            id    = _uint(raw, "id"),
            owner = User.from_json(_field(raw, "owner")),
            gpus  = _uint_list(raw, "gpus"),
        )


@dataclass(frozen=True)
class JobDetail:
    id:       int
    owner:    User
    image_id: str
    gpus:     tuple[int, ...]

    def to_json(self) -> dict:
        return {
            "id":       self.id,
            "owner":    self.owner.to_json(),
            "image_id": self.image_id,
            "gpus":     list(self.gpus),
        }

    @classmethod
    def from_json(cls, raw: Any) -> "JobDetail":
        return cls(
            id       = _uint(raw, "id"),
            owner    = User.from_json(_field(raw, "owner")),
            image_id = _str(raw, "image_id"),
            gpus     = _uint_list(raw, "gpus"),
        )


@dataclass(frozen=True)
class QueuedJob:
    queue_position: int
    job:            JobDetail

    def to_json(self) -> dict:
        return {"queue_position": self.queue_position, "job": self.job.to_json()}

    @classmethod
    def from_json(cls, raw: Any) -> "QueuedJob":
        return cls(
            queue_position = _uint(raw, "queue_position"),
            job            = JobDetail.from_json(_field(raw, "job")),
        )


class Response:
    TAG = ""

    def fields(self) -> Any:
        return None

    @classmethod
    def from_fields(cls, raw: Any) -> "Response":
        return cls()


@dataclass(frozen=True)
class Success(Response):
    TAG = "Success"


@dataclass(frozen=True)
class Error(Response):
    TAG = "Error"

    message: str

    def fields(self) -> str:
        return self.message

    @classmethod
    def from_fields(cls, raw: Any) -> "Error":
        if not isinstance(raw, str):
            raise ProtocolError(f"Error payload must be a string, got {raw!r}")
        return cls(raw)


@dataclass(frozen=True)
class GPUStatus(Response):
    TAG = "GPUStatus"

    locks: tuple[Optional[User], ...]

    def fields(self) -> dict:
        return {"locks": [None if u is None else u.to_json() for u in self.locks]}

    @classmethod
    def from_fields(cls, raw: Any) -> "GPUStatus":
        return cls(locks=tuple(_optional_user(u) for u in _list(raw, "locks")))


@dataclass(frozen=True)
class ActiveJobsResponse(Response):
    TAG = "ActiveJobs"

    jobs: tuple[JobSummary, ...]

    def fields(self) -> dict:
        return {"jobs": [j.to_json() for j in self.jobs]}

    @classmethod
    def from_fields(cls, raw: Any) -> "ActiveJobsResponse":
        return cls(jobs=tuple(JobSummary.from_json(j) for j in _list(raw, "jobs")))


@dataclass(frozen=True)
class MyJobsResponse(Response):
    TAG = "MyJobs"

    jobs: tuple[QueuedJob, ...]

    def fields(self) -> dict:
        return {"jobs": [j.to_json() for j in self.jobs]}

    @classmethod
    def from_fields(cls, raw: Any) -> "MyJobsResponse":
        return cls(jobs=tuple(QueuedJob.from_json(j) for j in _list(raw, "jobs")))


RESPONSES: dict[str, type[Response]] = {
    cls.TAG: cls
    for cls in (Success, Error, GPUStatus, ActiveJobsResponse, MyJobsResponse)
}


# ─── Encoding ─────────────────────────────────────────────────────────────────

def encode(message) -> str:
    """Serialize a Command or Response to its wire form."""
    payload = message.fields()
    if payload is None:
        return json.dumps(message.TAG)
    return json.dumps({message.TAG: payload})


def _decode(text: str, variants: dict) -> Any:
    try:
        raw = json.loads(text)
    except (ValueError, RecursionError) as e:   # JSONDecodeError is a ValueError
        raise ProtocolError(f"invalid JSON: {e}") from e

    if isinstance(raw, str):
        tag, payload = raw, None
    elif isinstance(raw, dict) and len(raw) == 1:
        tag, payload = next(iter(raw.items()))
    else:
        raise ProtocolError(f"expected a variant name or a single-key object, got {raw!r:.80}")

    cls = variants.get(tag)
    if cls is None:
        raise ProtocolError(f"unknown variant `{tag}`")
    if payload is None and cls.fields is not Command.fields and cls.fields is not Response.fields:
        raise ProtocolError(f"variant `{tag}` requires fields")
    return cls.from_fields(payload)


def decode_command(text: str) -> Command:
    return _decode(text, COMMANDS)


def decode_response(text: str) -> Response:
    return _decode(text, RESPONSES)
