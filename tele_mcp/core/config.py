import os
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_POOL_SIZE = 10

Transport = Literal["websocket", "http", "session"]


class BridgeSettings(BaseModel):
    """Immutable inputs consumed by the gateway at startup."""

    model_config = ConfigDict(frozen=True)

    mcp_command: str = ""
    boot_command: Optional[str] = None
    pool_size: int = 0
    transport: Transport = "session"
    durable_mode: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    terminate_grace_sec: float = Field(default=2.0, ge=0)
    terminate_secondary_sec: float = Field(default=1.0, ge=0)
    pool_maintenance_interval_sec: float = Field(default=5.0, gt=0)
    response_timeout_sec: float = Field(default=30.0, gt=0)
    strict_accept: bool = False
    stream_limit_bytes: int = Field(default=16 * 1024 * 1024, gt=0)

    @field_validator("pool_size", mode="before")
    @classmethod
    def clamp_pool_size(cls, value: object) -> int:
        return min(max(int(value), 0), MAX_POOL_SIZE)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return default if raw in (None, "") else float(raw)


def load_settings() -> BridgeSettings:
    return BridgeSettings(
        mcp_command=os.environ.get("MCP_COMMAND", ""),
        boot_command=os.environ.get("BOOT_COMMAND") or None,
        pool_size=int(os.environ.get("POOL_SIZE", "0")),
        transport=os.environ.get("TRANSPORT", "session"),
        # Anything but the literal "false" keeps durable sessions on.
        durable_mode=os.environ.get("DURABLE_MODE") != "false",
        host=os.environ.get("BRIDGE_HOST", "0.0.0.0"),
        port=int(os.environ.get("BRIDGE_PORT", "8080")),
        terminate_grace_sec=_env_float("TERMINATE_GRACE_SEC", 2.0),
        terminate_secondary_sec=_env_float("TERMINATE_SECONDARY_SEC", 1.0),
        pool_maintenance_interval_sec=_env_float("POOL_MAINTENANCE_INTERVAL_SEC", 5.0),
        response_timeout_sec=_env_float("RESPONSE_TIMEOUT_SEC", 30.0),
        strict_accept=os.environ.get("STRICT_ACCEPT", "false").lower() == "true",
        stream_limit_bytes=int(os.environ.get("STREAM_LIMIT_BYTES", str(16 * 1024 * 1024))),
    )
