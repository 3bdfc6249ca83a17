from __future__ import annotations

import sys
from typing import Any
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

_CONFIG_ENV_VARS = (
    "PORTAL_URL",
    "PORTAL_EMAIL",
    "PORTAL_PASSWORD",
    "CLICKSEND_USERNAME",
    "CLICKSEND_API_KEY",
    "TEMPLATE_PATH",
    "LOG_LEVEL",
    "LOG_FILE",
)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that require real portal + ClickSend credentials",
    )


@pytest.fixture(autouse=True)
def _isolated_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Config loading falls back to these; keep a developer's .env out of unit tests.
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
