"""Wire format of the daemon control socket.

Each request and each response is one UTF-8 JSON object terminated by a
newline. A connection carries exactly one request and one response, after
which the daemon closes it.

Request:
    {"command": "open", "args": {"projectRoot": "/abs/path"}}

Response:
    command-specific JSON, or {"error": "message"}. Failure is signaled only
    by the presence of the "error" key.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from flow_daemon.core.exceptions import ProtocolError

ENCODING = "utf-8"
MAX_LINE_BYTES = 64 * 1024

INVALID_JSON = "Invalid JSON"
INVALID_RESPONSE = "Invalid response from daemon"


class Request(BaseModel):
    """One control command."""

    model_config = ConfigDict(frozen=True)

    command: str
    args: dict[str, Any] = Field(default_factory=dict)


def encode_message(message: Any) -> bytes:
    """Serialize a request or response to one newline-terminated line."""
    if isinstance(message, BaseModel):
        message = message.model_dump()
    return (json.dumps(message, separators=(",", ":")) + "\n").encode(ENCODING)


def decode_request(line: bytes) -> Request:
    """Parse a request line.

    Raises:
        ProtocolError: If the line is not a JSON object with a string command.

    """
    try:
        payload = json.loads(line.decode(ENCODING))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(INVALID_JSON) from e

    if not isinstance(payload, dict):
        raise ProtocolError(INVALID_JSON)
    if not isinstance(payload.get("args"), dict):
        # Non-object args are dropped rather than rejected.
        payload.pop("args", None)

    try:
        return Request.model_validate(payload)
    except PydanticValidationError as e:
        raise ProtocolError(INVALID_JSON) from e


def decode_response(data: bytes) -> Any:
    """Parse the daemon's single response line.

    Raises:
        ProtocolError: If the data is empty or not JSON.

    """
    text = data.decode(ENCODING, errors="replace").strip()
    if not text:
        raise ProtocolError(INVALID_RESPONSE)
    try:
        return json.loads(text)
    except ValueError as e:
        raise ProtocolError(INVALID_RESPONSE) from e


def error_response(message: str) -> dict[str, str]:
    return {"error": message}


def is_error(response: Any) -> bool:
    return isinstance(response, dict) and "error" in response
