"""Inbound envelope decoding.

Every text frame on the wire is one JSON object tagged by ``command``.
Known commands are validated strictly into :class:`RegisterEnvelope` or
:class:`MessageEnvelope`; anything with an unrecognised command decodes to
``None`` so newer clients can talk to older servers.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from chatrelay.config import settings
from chatrelay.errors import MalformedEnvelope
from .types import (
    CMD_ERROR,
    CMD_MESSAGE,
    CMD_REGISTER,
    CMD_REGISTERED,
    ERR_BAD_JSON,
    ERR_INVALID_ENVELOPE,
    KNOWN_COMMANDS,
)


def _coerce_id(value: Any) -> Any:
    # browsers send numeric ids as JSON numbers; bool is an int subclass
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


UserId = Annotated[str, BeforeValidator(_coerce_id), Field(min_length=1)]


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RegisterEnvelope(_Envelope):
    command: Literal["register"] = CMD_REGISTER
    user_id: UserId = Field(alias="userId")


class MessageEnvelope(_Envelope):
    command: Literal["message"] = CMD_MESSAGE
    sender: UserId = Field(alias="from")
    to: UserId
    body: str = Field(alias="message")

    @field_validator("body")
    @classmethod
    def _check_length(cls, v: str) -> str:
        if len(v) > settings.MAX_MESSAGE_LENGTH:
            raise ValueError(f"message longer than {settings.MAX_MESSAGE_LENGTH} characters")
        return v


Envelope = Annotated[Union[RegisterEnvelope, MessageEnvelope], Field(discriminator="command")]

_adapter: TypeAdapter = TypeAdapter(Envelope)


def parse_envelope(raw: Union[str, bytes]) -> Optional[Union[RegisterEnvelope, MessageEnvelope]]:
    """Decode one frame. Returns None for unknown commands, raises MalformedEnvelope otherwise."""
    try:
        obj = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedEnvelope(ERR_BAD_JSON, str(e)) from e

    if not isinstance(obj, dict):
        raise MalformedEnvelope(ERR_INVALID_ENVELOPE, "envelope must be a JSON object")

    command = obj.get("command")
    if not isinstance(command, str):
        raise MalformedEnvelope(ERR_INVALID_ENVELOPE, "missing:command")
    if command not in KNOWN_COMMANDS:
        return None

    try:
        return _adapter.validate_python(obj)
    except ValidationError as e:
        fields = ",".join(".".join(str(p) for p in err["loc"][1:]) or "?" for err in e.errors())
        raise MalformedEnvelope(ERR_INVALID_ENVELOPE, f"{command}:{fields}") from e


# server side frame builders

def registered_frame(user_id: str) -> str:
    return json.dumps({"command": CMD_REGISTERED, "userId": user_id})


def error_frame(code: str, detail: str) -> str:
    return json.dumps({"command": CMD_ERROR, "code": code, "detail": detail})
