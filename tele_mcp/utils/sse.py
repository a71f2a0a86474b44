from typing import Optional

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_event(data: str, event: Optional[str] = None) -> bytes:
    """
    Frame one Server-Sent Event.

    ``data`` must be a single line (child output lines are newline-delimited,
    so this always holds for relayed messages).
    """

    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n".encode("utf-8")
