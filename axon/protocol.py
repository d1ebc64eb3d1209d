"""JSON framing of the daemon contract: requests, responses and pushed updates."""

from __future__ import annotations

import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ProtocolError
from .models import Operation, ResourceKind, Update, describe


@dataclass(frozen=True)
class Request:
    id: int
    method: str
    params: dict[str, Any]


@dataclass(frozen=True)
class Response:
    id: int
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def encode_request(request: Request) -> str:
    return json.dumps(
        {"type": "request", "id": request.id, "method": request.method, "params": request.params},
        separators=(",", ":"),
    )


def decode_message(frame: str | bytes) -> Response | Update:
    try:
        data = json.loads(frame)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"undecodable frame: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"expected an object, got {type(data).__name__}")

    kind = data.get("type")
    if kind == "response":
        return _decode_response(data)
    if kind == "update":
        return decode_update(data)
    raise ProtocolError(f"unknown message type {kind!r}")


class _Frame(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


class ResponseFrame(_Frame):
    id: int
    result: Any = None
    error: str | dict[str, Any] | None = None


class UpdateFrame(_Frame):
    kind: ResourceKind
    id: str | int
    operation: Operation = Operation.UPSERT
    fields: dict[str, Any] | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> Any:
        return ResourceKind(value) if isinstance(value, str) else value

    @field_validator("operation", mode="before")
    @classmethod
    def _operation(cls, value: Any) -> Any:
        return Operation(value) if isinstance(value, str) else value

    @field_validator("id")
    @classmethod
    def _resource_id(cls, value: str | int) -> str:
        if value == "":
            raise ValueError("empty id")
        return str(value)


class SnapshotResult(_Frame):
    resources: list[dict[str, Any]]


def _validate(schema: type[_Frame], data: Any, what: str) -> Any:
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"{what}: {describe(exc)}") from exc


def _decode_response(data: dict[str, Any]) -> Response:
    frame = _validate(ResponseFrame, data, "response")
    if frame.error is not None:
        error = frame.error
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return Response(id=frame.id, error=str(error))
    return Response(id=frame.id, result=frame.result)


def decode_update(data: dict[str, Any]) -> Update:
    frame = _validate(UpdateFrame, data, f"{data.get('kind')} update")
    return Update(frame.kind, frame.id, frame.operation, MappingProxyType(frame.fields or {}))


def decode_snapshot(result: Any) -> list[Update]:
    """Turn a ``snapshot`` result into upserts, in the daemon's order."""
    snapshot = _validate(SnapshotResult, result, "snapshot result")
    return [decode_update({**entry, "operation": Operation.UPSERT.value}) for entry in snapshot.resources]
