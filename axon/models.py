from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from .errors import ProtocolError


MIB = 1024 * 1024
UNLIMITED = -1

R = TypeVar("R", "Torrent", "Tracker", "ServerStats")


class Status(str, enum.Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    LEECHING = "leeching"
    ERROR = "error"
    PAUSED = "paused"
    PENDING = "pending"
    HASHING = "hashing"
    MAGNET = "magnet"


class ResourceKind(str, enum.Enum):
    TORRENT = "torrent"
    TRACKER = "tracker"
    SERVER = "server"


class Operation(str, enum.Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


@dataclass(frozen=True)
class Update:
    """A single change pushed by the daemon for one resource."""

    kind: ResourceKind
    id: str
    operation: Operation
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def upsert(cls, kind: ResourceKind, resource_id: str, **fields: Any) -> "Update":
        return cls(kind, resource_id, Operation.UPSERT, MappingProxyType(dict(fields)))

    @classmethod
    def remove(cls, kind: ResourceKind, resource_id: str) -> "Update":
        return cls(kind, resource_id, Operation.REMOVE)


def describe(exc: ValidationError) -> str:
    """One line per failing field, e.g. ``progress: Input should be a valid number``."""
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'value'}: {error['msg']}" for error in exc.errors()
    )


class WireFields(BaseModel):
    """Partial field set of one resource as the daemon sends it.

    Only the keys present on the wire are marked as set, so
    ``model_dump(exclude_unset=True)`` yields exactly the fields to overwrite.
    Unknown keys are ignored.
    """

    model_config = ConfigDict(strict=True, extra="ignore")


class TorrentFields(WireFields):
    name: str = Field("", description="Display name")
    size: int | None = Field(None, ge=0, description="Total bytes, unknown until metadata arrives")
    transferred_down: int = Field(0, ge=0)
    transferred_up: int = Field(0, ge=0)
    progress: float = Field(0.0, description="Percent done")
    status: Status = Status.PENDING
    error: str | None = None
    trackers: list[str] = Field(default_factory=list, description="Tracker ids")
    throttle_up: int | None = Field(None, ge=UNLIMITED, description="Bytes/s, -1 unlimited, None global")
    throttle_down: int | None = Field(None, ge=UNLIMITED, description="Bytes/s, -1 unlimited, None global")
    path: str = ""
    rate_up: int = Field(0, ge=0)
    rate_down: int = Field(0, ge=0)
    peers: int = Field(0, ge=0)
    private: bool = False

    @field_validator("name", "path", "trackers", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "trackers" else ""
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _status_code(cls, value: Any) -> Any:
        return Status(value) if isinstance(value, str) else value

    @field_validator("progress")
    @classmethod
    def _clamp_progress(cls, value: float) -> float:
        return max(0.0, min(100.0, value))


class TrackerFields(WireFields):
    host: str = ""
    url: str = ""
    torrent_ids: list[str] = Field(default_factory=list)
    error: str | None = None
    last_report: float | None = Field(None, description="Unix time of the last announce")

    @field_validator("host", "url", "torrent_ids", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "torrent_ids" else ""
        return value


class ServerFields(WireFields):
    rate_up: int = Field(0, ge=0)
    rate_down: int = Field(0, ge=0)
    throttle_up: int | None = Field(None, ge=UNLIMITED)
    throttle_down: int | None = Field(None, ge=UNLIMITED)
    transferred_up: int = Field(0, ge=0)
    transferred_down: int = Field(0, ge=0)
    ses_transferred_up: int = Field(0, ge=0)
    ses_transferred_down: int = Field(0, ge=0)
    free_space: int = Field(0, ge=0)
    started: float | None = None


def _merge(resource: R, fields: Mapping[str, Any], schema: type[WireFields], kind: str) -> R:
    try:
        patch = schema.model_validate(dict(fields))
    except ValidationError as exc:
        raise ProtocolError(f"{kind} {resource.id}: {describe(exc)}") from exc
    changes = patch.model_dump(exclude_unset=True)
    if not changes:
        return resource
    # id lists are stored as sets
    for key, value in changes.items():
        if isinstance(value, list):
            changes[key] = frozenset(value)
    return replace(resource, **changes)


@dataclass(frozen=True)
class Torrent:
    id: str
    name: str = ""
    size: int | None = None
    transferred_down: int = 0
    transferred_up: int = 0
    progress: float = 0.0
    status: Status = Status.PENDING
    # last value written; see error_message
    error: str | None = None
    trackers: frozenset[str] = frozenset()
    throttle_up: int | None = None
    throttle_down: int | None = None
    path: str = ""
    rate_up: int = 0
    rate_down: int = 0
    peers: int = 0
    private: bool = False

    def merge(self, fields: Mapping[str, Any]) -> "Torrent":
        return _merge(self, fields, TorrentFields, "torrent")

    @property
    def error_message(self) -> str | None:
        """The error text, present only while the torrent is in the error state."""
        return self.error if self.status is Status.ERROR else None

    @property
    def size_mb(self) -> float | None:
        if self.size is None:
            return None
        return self.size / MIB

    @property
    def ratio(self) -> float:
        if self.transferred_down == 0:
            return 1.0
        return self.transferred_up / self.transferred_down

    @property
    def display_name(self) -> str:
        return self.name or self.path or self.id


@dataclass(frozen=True)
class Tracker:
    id: str
    host: str = ""
    url: str = ""
    torrent_ids: frozenset[str] = frozenset()
    error: str | None = None
    last_report: float | None = None

    def merge(self, fields: Mapping[str, Any]) -> "Tracker":
        return _merge(self, fields, TrackerFields, "tracker")

    @property
    def display_host(self) -> str:
        return self.host or self.id


@dataclass(frozen=True)
class ServerStats:
    id: str = ""
    rate_up: int = 0
    rate_down: int = 0
    throttle_up: int | None = None
    throttle_down: int | None = None
    transferred_up: int = 0
    transferred_down: int = 0
    ses_transferred_up: int = 0
    ses_transferred_down: int = 0
    free_space: int = 0
    started: float | None = None

    def merge(self, fields: Mapping[str, Any]) -> "ServerStats":
        return _merge(self, fields, ServerFields, "server")

    @property
    def session_ratio(self) -> float:
        if self.ses_transferred_down == 0:
            return 1.0
        return self.ses_transferred_up / self.ses_transferred_down

