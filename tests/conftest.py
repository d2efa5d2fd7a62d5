import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import pytest

from core.config import RunnerSettings

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"


@pytest.fixture
def settings(tmp_path) -> RunnerSettings:
    """Settings with short timeouts, isolated from any local .env file."""
    return RunnerSettings(
        _env_file=None,
        log_level="DEBUG",
        scripts_dir=str(tmp_path),
        compile_timeout_seconds=5.0,
        execution_timeout_seconds=10.0,
        stop_grace_seconds=0.3,
        stop_kill_margin_seconds=1.0,
        capsolver_api_key=None,
        captcha_poll_interval_seconds=0.0,
    )


@pytest.fixture
def write_script(tmp_path) -> Callable[[str, str], Path]:
    """Write a dedented script into the temporary scripts directory."""

    def _write(name: str, source: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    return _write


class EventLog:
    """Collects ``(event_type, data)`` pairs emitted by a runner."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, event_type: str, data: Dict[str, Any]) -> None:
        self.events.append((event_type, data))

    @property
    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]

    @property
    def terminal(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(t, d) for t, d in self.events if t in ("completed", "failed")]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [d for t, d in self.events if t == event_type]


@pytest.fixture
def events() -> EventLog:
    return EventLog()


@pytest.fixture
def wallet() -> Dict[str, str]:
    return {"address": TEST_ADDRESS, "privateKey": TEST_PRIVATE_KEY, "name": "main"}
