from typing import Any, Dict, Optional

RETRIABLE_SIGNATURES = (
    "broken pipe",
    "eof",
    "process exited",
    "connection reset",
    "i/o timeout",
)


class BridgeError(Exception):
    status_code = 500


class SpawnError(BridgeError):
    """The child command could not be started."""


class ProtocolValidationError(BridgeError):
    status_code = 400


class TransportIOError(BridgeError):
    """A pipe or socket read/write failed."""


class RetriableTransportError(TransportIOError):
    """A transport failure whose message looks like a dead child process."""


class ResponseTimeoutError(BridgeError, TimeoutError):
    status_code = 504


class SessionNotFoundError(BridgeError):
    status_code = 404


class ChildRpcError(BridgeError):
    """The child answered a request with a JSON-RPC error object."""

    def __init__(self, error: Dict[str, Any]) -> None:
        self.error = error
        super().__init__(str(error.get("message") or error))


class SessionRestartedError(BridgeError):
    status_code = 503

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "MCP session restarted. Some context may be lost. "
            "Please retry with the same parameters."
        )


class TemporaryFailureError(BridgeError):
    status_code = 503

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Temporary connection issue. "
            "Please retry immediately with the same parameters."
        )


def is_retriable(exc: BaseException) -> bool:
    if isinstance(exc, RetriableTransportError):
        return True
    text = str(exc).lower()
    return any(signature in text for signature in RETRIABLE_SIGNATURES)


def transport_error(message: str) -> TransportIOError:
    """Build the transport error class matching the failure message."""
    text = message.lower()
    if any(signature in text for signature in RETRIABLE_SIGNATURES):
        return RetriableTransportError(message)
    return TransportIOError(message)
