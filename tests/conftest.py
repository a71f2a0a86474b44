import shlex
import sys
from pathlib import Path

import pytest

from tele_mcp.core.config import BridgeSettings

FAKE_SERVER = Path(__file__).resolve().parent / "fake_mcp_server.py"


def python_command(*args: str) -> str:
    return shlex.join([sys.executable, "-u", *args])


FAKE_COMMAND = python_command(str(FAKE_SERVER))


@pytest.fixture
def fake_command() -> str:
    return FAKE_COMMAND


@pytest.fixture
def make_settings():
    def _make(**overrides) -> BridgeSettings:
        values = {
            "mcp_command": FAKE_COMMAND,
            "pool_size": 0,
            "terminate_grace_sec": 0.5,
            "terminate_secondary_sec": 0.5,
            "pool_maintenance_interval_sec": 60,
            "response_timeout_sec": 5,
        }
        values.update(overrides)
        return BridgeSettings(**values)

    return _make
