"""JSON-RPC envelope shapes exchanged with a child process.

A line is decoded once into one of four frozen message kinds; the kind is a
pure function of which fields are present. The original text is kept so the
gateway can forward it byte-for-byte.
"""

import json
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

RpcId = Union[int, str]


class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str


class RpcRequest(_Envelope):
    """Has a method and a non-null id."""

    method: str
    id: RpcId
    params: Optional[Any] = None


class RpcNotification(_Envelope):
    """Has a method and no id (absent or null)."""

    method: str
    params: Optional[Any] = None


class RpcResponse(_Envelope):
    """Has a result or error and a non-null id."""

    id: RpcId
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None


class RpcNotificationResponse(_Envelope):
    """Has a result or error but the id is null or absent."""

    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None


Message = Union[RpcRequest, RpcNotification, RpcResponse, RpcNotificationResponse]


def is_client_response(payload: Dict[str, Any]) -> bool:
    """A client-originated response: no method but a result or error."""
    return "method" not in payload and ("result" in payload or "error" in payload)


def classify(payload: Any, raw: str) -> Optional[Message]:
    if not isinstance(payload, dict):
        return None
    msg_id = payload.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, (int, str, type(None))):
        return None
    method = payload.get("method")
    if isinstance(method, str):
        if msg_id is not None:
            return RpcRequest(raw=raw, method=method, id=msg_id, params=payload.get("params"))
        return RpcNotification(raw=raw, method=method, params=payload.get("params"))
    if "result" in payload or "error" in payload:
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        if msg_id is not None:
            return RpcResponse(raw=raw, id=msg_id, result=payload.get("result"), error=error)
        return RpcNotificationResponse(raw=raw, result=payload.get("result"), error=error)
    return None


def is_json_line(line: str) -> bool:
    try:
        json.loads(line)
    except ValueError:
        return False
    return True


def decode_line(line: Union[str, bytes]) -> Optional[Message]:
    """Decode one output line; None for malformed or unclassifiable lines."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    return classify(payload, line)
