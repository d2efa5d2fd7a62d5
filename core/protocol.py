"""Host <-> runner message protocol.

Messages are JSON objects, one per line.  The host writes control
requests to the runner's stdin; the runner writes events to its stdout.

Host -> runner::

    {"type": "execute", "scriptPath": ..., "params": {...}, "wallets": [...], "proxy": {...}}
    {"type": "describe", "scriptPath": ...}
    {"type": "stop"}

Runner -> host::

    {"type": "log" | "progress" | "result" | "error" | "completed" | "failed" | "descriptor",
     "data": {...}}

Exactly one ``completed`` or ``failed`` event ends an execution.
"""

import asyncio
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from core.config import BASE_DIR, ProxyRef, RunnerSettings, WalletRef

logger = logging.getLogger(__name__)

RUNNER_MODULE = "core.script_runner"
# Max size of a single protocol line
STREAM_LIMIT = 16 * 1024 * 1024


class MessageType(str, Enum):
    EXECUTE = "execute"
    DESCRIBE = "describe"
    STOP = "stop"


class EventType(str, Enum):
    LOG = "log"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    COMPLETED = "completed"
    FAILED = "failed"
    DESCRIPTOR = "descriptor"


TERMINAL_EVENTS = frozenset({EventType.COMPLETED, EventType.FAILED})


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class ExecuteRequest(BaseModel):
    """Run a script once with the given inputs."""

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = MessageType.EXECUTE
    script_path: str = Field(alias="scriptPath")
    params: Dict[str, Any] = Field(default_factory=dict)
    wallets: List[WalletRef] = Field(default_factory=list)
    proxy: Optional[ProxyRef] = None


class DescribeRequest(BaseModel):
    """Load a script and report its descriptor without running it."""

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = MessageType.DESCRIBE
    script_path: str = Field(alias="scriptPath")


class StopRequest(BaseModel):
    type: MessageType = MessageType.STOP


Request = Union[ExecuteRequest, DescribeRequest, StopRequest]


class RunEvent(BaseModel):
    """One event emitted by a runner."""

    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


def to_jsonable(value: Any) -> Any:
    """Convert *value* into plain JSON types.

    Pydantic models, enums, decimals, dates, bytes and sets are converted;
    anything else unknown falls back to ``str``.
    """
    return json.loads(json.dumps(value, default=_json_default))


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def encode_message(message: Union[BaseModel, Mapping[str, Any]]) -> str:
    """Serialise a request or event to a single JSON line (no newline)."""
    if isinstance(message, BaseModel):
        payload: Any = message.model_dump(mode="json", by_alias=True, exclude_none=True)
    else:
        payload = dict(message)
    return json.dumps(payload, default=_json_default, ensure_ascii=False)


def decode_message(line: Union[str, bytes]) -> Dict[str, Any]:
    """Parse one protocol line.

    Raises:
        ValueError: If the line is not a JSON object with a ``type``.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    message = json.loads(line)
    if not isinstance(message, dict) or "type" not in message:
        raise ValueError(f"Protocol message must be an object with a 'type': {line[:200]!r}")
    return message


def parse_request(message: Mapping[str, Any]) -> Request:
    """Validate a decoded host request.

    Raises:
        ValueError: On an unknown type or invalid fields.
    """
    kind = message.get("type")
    if kind == MessageType.EXECUTE.value:
        return ExecuteRequest.model_validate(message)
    if kind == MessageType.DESCRIBE.value:
        return DescribeRequest.model_validate(message)
    if kind == MessageType.STOP.value:
        return StopRequest()
    raise ValueError(f"Unknown request type: {kind!r}")


def parse_event(message: Mapping[str, Any]) -> RunEvent:
    """Validate a decoded runner event.

    Raises:
        ValueError: On an unknown event type.
    """
    return RunEvent.model_validate(message)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

async def spawn_runner(settings: RunnerSettings) -> asyncio.subprocess.Process:
    """Start a runner child process with piped stdio.

    The child inherits the host environment plus the settings it must
    honour (timeouts, CapSolver credentials).
    """
    env = dict(os.environ)
    env.update(settings.runner_overrides())
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONIOENCODING"] = "utf-8"
    return await asyncio.create_subprocess_exec(
        settings.python_executable, "-m", RUNNER_MODULE,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(BASE_DIR),
        env=env,
        limit=STREAM_LIMIT,
    )


async def send_message(
    process: asyncio.subprocess.Process,
    message: Union[BaseModel, Mapping[str, Any]],
) -> None:
    """Write one request line to the runner's stdin.

    Raises:
        ConnectionError: If the runner has already closed its stdin.
    """
    if process.stdin is None or process.stdin.is_closing():
        raise ConnectionResetError("Runner stdin is closed")
    process.stdin.write((encode_message(message) + "\n").encode("utf-8"))
    await process.stdin.drain()


async def drain_stderr(
    stream: asyncio.StreamReader, label: str, tail: Optional[List[str]] = None,
) -> None:
    """Relay a runner's stderr to the debug log until EOF.

    The last line seen is kept in *tail* (if given) for error messages.
    """
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        logger.debug("[%s] %s", label, line)
        if tail is not None:
            tail[:] = [line]


async def read_events(stream: asyncio.StreamReader, label: str = "runner") -> AsyncIterator[RunEvent]:
    """Yield :class:`RunEvent` objects from a runner's stdout until EOF.

    Malformed lines are logged and skipped.
    """
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            event = parse_event(decode_message(line))
        except ValueError as e:
            logger.warning("[%s] Ignoring malformed runner output: %s", label, e)
            continue
        yield event
