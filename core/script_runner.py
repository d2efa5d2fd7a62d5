"""Script runner: executes one user script and streams its events.

The runner is started by the host as a child process
(``python -m core.script_runner``).  It reads a single ``execute`` or
``describe`` request from stdin, runs it, and writes JSON-line events to
stdout.  A later ``stop`` request (or SIGTERM/SIGINT) sets the
cooperative stop flag; if the script has not finished after the grace
period the process reports ``failed`` and exits.

Lifecycle of an execution::

    IDLE -> LOADING -> RUNNING -> COMPLETED | FAILED | ABORTED

:class:`ScriptRunner` itself does no process management and can be used
in-process with any ``emit(event_type, data)`` callable.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
import traceback
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TextIO, Union

from core.config import ProxyRef, RunnerSettings, WalletRef
from core.contract import ScriptDescriptor, ScriptModule, check_requirements, resolve_params, resolve_script_module
from core.errors import (
    ErrorType,
    ScriptError,
    ScriptIOError,
    ScriptRuntimeError,
    ScriptStoppedError,
    ScriptTimeoutError,
    classify_error,
)
from core.logging_setup import get_redaction_filter, setup_logging
from core.protocol import (
    TERMINAL_EVENTS,
    DescribeRequest,
    EventType,
    ExecuteRequest,
    StopRequest,
    decode_message,
    encode_message,
    parse_request,
    to_jsonable,
)
from core.sandbox import ScriptLogger, build_context, load_script

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, Dict[str, Any]], None]


class RunnerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class ScriptRunner:
    """Load, validate and execute a single script.

    Single-use: one :meth:`execute` or :meth:`describe` per instance.

    Args:
        emit: Receives ``(event_type, data)`` for every event.
        settings: Timeouts and CapSolver settings.
        hard_exit: Called with an exit code when the stop grace period
            expires.  ``None`` (in-process use) only reports the stop.
    """

    def __init__(
        self,
        emit: EmitFn,
        settings: Optional[RunnerSettings] = None,
        hard_exit: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.settings = settings or RunnerSettings()
        self.state = RunnerState.IDLE
        self._emit = emit
        self._hard_exit = hard_exit
        self._terminal_sent = False
        self._stop_requested = False
        self._grace_handle: Optional[asyncio.TimerHandle] = None
        self.console = ScriptLogger(self.emit)

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def emit(self, event_type: Union[str, EventType], data: Dict[str, Any]) -> None:
        """Forward an event unless the terminal event was already sent."""
        event_type = EventType(event_type)
        if self._terminal_sent:
            logger.debug("Dropping %s event emitted after the terminal event", event_type.value)
            return
        if event_type in TERMINAL_EVENTS:
            self._terminal_sent = True
            if self._grace_handle is not None:
                self._grace_handle.cancel()
        self._emit(event_type.value, data)

    def should_stop(self) -> bool:
        return self._stop_requested

    def fail(self, error: BaseException, error_type: Optional[ErrorType] = None) -> None:
        """Report *error* as an ``error`` event followed by ``failed``."""
        error_type = error_type or classify_error(error)
        redact = get_redaction_filter().redact
        message = redact(str(error)) or type(error).__name__
        stack = redact("".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ))
        logger.error("Script failed (%s): %s", error_type.value, message)
        self.emit(EventType.ERROR, {
            "type": error_type.value,
            "message": message,
            "stack": stack,
        })
        self.emit(EventType.FAILED, {"error": message, "type": error_type.value})
        if self.state not in (RunnerState.COMPLETED, RunnerState.ABORTED):
            self.state = RunnerState.ABORTED if error_type is ErrorType.STOPPED else RunnerState.FAILED

    # ---- Loading -----------------------------------------------------------

    async def _bounded(self, aw: Awaitable[Any], seconds: float, phase: str) -> Any:
        """Await *aw* for at most *seconds*; the task is abandoned on timeout."""
        task = asyncio.ensure_future(aw)
        done, _ = await asyncio.wait({task}, timeout=seconds)
        if not done:
            task.cancel()
            raise ScriptTimeoutError(phase, seconds)
        return task.result()

    async def load(self, script_path: Union[str, Path]) -> ScriptModule:
        """Read, compile and execute the script module body.

        Raises:
            ScriptIOError: The file cannot be read.
            ScriptTimeoutError: The module body or ``get_config()`` exceeds
                the compile timeout.
            ScriptContractError: No usable entry point.
        """
        path = Path(script_path)
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ScriptIOError(f"Cannot read script {path}: {e.strerror or e}") from e

        return await self._bounded(
            asyncio.to_thread(self._load_module, source, path),
            self.settings.compile_timeout_seconds,
            "compilation",
        )

    def _load_module(self, source: str, path: Path) -> ScriptModule:
        # get_config() is script code too; it shares the compile budget
        namespace = load_script(source, str(path), self.console)
        return resolve_script_module(namespace, path.name)

    def _execution_timeout(self, descriptor: ScriptDescriptor) -> float:
        timeout = self.settings.execution_timeout_seconds
        if descriptor.timeout_seconds:
            timeout = min(timeout, descriptor.timeout_seconds)
        return timeout

    # ---- Operations --------------------------------------------------------

    async def execute(
        self,
        script_path: Union[str, Path],
        params: Optional[Dict[str, Any]] = None,
        wallets: Optional[Iterable[Union[WalletRef, Dict[str, Any]]]] = None,
        proxy: Optional[Union[ProxyRef, Dict[str, Any]]] = None,
    ) -> bool:
        """Run the script to completion.

        Never raises for script-level problems: every outcome ends in
        exactly one ``completed`` or ``failed`` event.

        Returns:
            ``True`` if the run completed.
        """
        if self.state is not RunnerState.IDLE:
            raise RuntimeError("ScriptRunner instances are single-use")
        self.state = RunnerState.LOADING
        context = None
        try:
            wallet_refs = [
                w if isinstance(w, WalletRef) else WalletRef.model_validate(w)
                for w in (wallets or [])
            ]
            proxy_ref = proxy if proxy is None or isinstance(proxy, ProxyRef) else ProxyRef.model_validate(proxy)
            get_redaction_filter().add_secrets(
                w.private_key for w in wallet_refs if w.private_key
            )

            module = await self.load(script_path)
            descriptor = module.descriptor
            check_requirements(descriptor, wallet_refs, proxy_ref)
            resolved = resolve_params(descriptor.config, params)

            self.state = RunnerState.RUNNING
            context = build_context(
                console=self.console,
                emit=self.emit,
                params=resolved,
                wallets=wallet_refs,
                proxy=proxy_ref,
                settings=self.settings,
                stop_check=self.should_stop,
            )
            logger.info(
                "Running %s v%s with %d wallet(s)",
                descriptor.id, descriptor.version, len(wallet_refs),
            )
            result = await self._bounded(
                self._call_main(module, context),
                self._execution_timeout(descriptor),
                "execution",
            )
            payload = {"result": to_jsonable(result)}
        except Exception as e:
            self.fail(e)
            return False
        finally:
            if context is not None:
                await context.close()

        if self._terminal_sent:
            # Grace period expired while main() was still finishing
            return False
        self.state = RunnerState.COMPLETED
        self.emit(EventType.COMPLETED, payload)
        return True

    async def _call_main(self, module: ScriptModule, context: Any) -> Any:
        try:
            return await module.main(context)
        except ScriptError:
            raise
        except Exception as e:
            raise ScriptRuntimeError(str(e) or type(e).__name__, original=e) from e

    async def describe(self, script_path: Union[str, Path]) -> Optional[ScriptDescriptor]:
        """Load the script and emit its descriptor, without running ``main``."""
        if self.state is not RunnerState.IDLE:
            raise RuntimeError("ScriptRunner instances are single-use")
        self.state = RunnerState.LOADING
        try:
            module = await self.load(script_path)
        except Exception as e:
            self.fail(e)
            return None
        self.state = RunnerState.COMPLETED
        self.emit(EventType.DESCRIPTOR, module.descriptor.model_dump(mode="json"))
        return module.descriptor

    def stop(self) -> None:
        """Request a cooperative stop and arm the grace-period deadline."""
        if self._stop_requested:
            return
        self._stop_requested = True
        grace = self.settings.stop_grace_seconds
        logger.info("Stop requested; allowing %.1fs for the script to finish", grace)
        if self._terminal_sent:
            return
        self.console.warn("Stop requested")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("stop() called outside the event loop; no grace deadline armed")
            return
        self._grace_handle = loop.call_later(grace, self._grace_expired)

    def _grace_expired(self) -> None:
        if not self._terminal_sent:
            self.fail(ScriptStoppedError(
                f"Script stopped: did not finish within the "
                f"{self.settings.stop_grace_seconds:g}s grace period"
            ))
        if self._hard_exit is not None:
            self._hard_exit(0 if self.state is RunnerState.COMPLETED else 1)


# ---------------------------------------------------------------------------
# Child process entry point
# ---------------------------------------------------------------------------

class EventWriter:
    """Thread-safe JSON-line writer for the protocol stream."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def __call__(self, event_type: str, data: Dict[str, Any]) -> None:
        line = encode_message({"type": event_type, "data": data})
        with self._lock:
            try:
                self._stream.write(line + "\n")
                self._stream.flush()
            except (BrokenPipeError, ValueError) as e:
                logger.warning("Host channel closed; %s event lost: %s", event_type, e)

    def flush(self) -> None:
        with self._lock:
            try:
                self._stream.flush()
            except (BrokenPipeError, ValueError) as e:
                logger.debug("Flush of protocol stream failed: %s", e)


def _hard_exit(writer: EventWriter, code: int) -> None:
    writer.flush()
    for handler in logging.getLogger().handlers:
        handler.flush()
    os._exit(code)


def _stdin_reader(loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[Optional[Dict[str, Any]]]",
                  stream: TextIO) -> None:
    """Forward decoded control messages from *stream* into *queue*."""
    for line in stream:
        line = line.strip()
        if not line:
            continue
        try:
            message = decode_message(line)
        except ValueError as e:
            logger.warning("Ignoring malformed control message: %s", e)
            continue
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, message)
    if not loop.is_closed():
        loop.call_soon_threadsafe(queue.put_nowait, None)


def _install_hooks(loop: asyncio.AbstractEventLoop, runner: ScriptRunner, writer: EventWriter) -> None:
    """Report crashes outside the script's own call stack, then exit."""

    def report(error: BaseException, error_type: ErrorType) -> None:
        if runner.terminal_sent:
            logger.error("Unhandled %s after the run ended: %s", error_type.value, error)
        else:
            runner.fail(error, error_type)
        _hard_exit(writer, 1)

    def loop_handler(_loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None:
            # Diagnostics such as "Unclosed client session"
            _loop.default_exception_handler(context)
            return
        report(error, ErrorType.UNHANDLED_REJECTION)

    def thread_hook(args: threading.ExceptHookArgs) -> None:
        report(args.exc_value or RuntimeError("Thread crashed"), ErrorType.UNCAUGHT_EXCEPTION)

    def sys_hook(exc_type: type, exc: BaseException, tb: Any) -> None:
        report(exc, ErrorType.UNCAUGHT_EXCEPTION)

    loop.set_exception_handler(loop_handler)
    threading.excepthook = thread_hook
    sys.excepthook = sys_hook

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except (NotImplementedError, RuntimeError):
            # Windows: no loop signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(runner.stop))


async def run_child(settings: RunnerSettings, writer: EventWriter, stdin: TextIO) -> int:
    """Serve one request read from *stdin*; return the process exit code."""
    loop = asyncio.get_running_loop()
    runner = ScriptRunner(writer, settings, hard_exit=lambda code: _hard_exit(writer, code))
    _install_hooks(loop, runner, writer)

    queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
    reader = threading.Thread(
        target=_stdin_reader, args=(loop, queue, stdin),
        name="runner-stdin", daemon=True,
    )
    reader.start()

    first = await queue.get()
    try:
        if first is None:
            raise ValueError("Control channel closed before a request arrived")
        request = parse_request(first)
    except ValueError as e:
        runner.fail(e, ErrorType.PROCESS_ERROR)
        return 1
    if isinstance(request, StopRequest):
        runner.fail(ScriptStoppedError("Stopped before start"))
        return 1

    async def control_loop() -> None:
        while True:
            message = await queue.get()
            if message is None:
                logger.warning("Host closed the control channel; stopping")
                runner.stop()
                return
            if message.get("type") == "stop":
                runner.stop()
            else:
                logger.warning("Ignoring unexpected %r message", message.get("type"))

    control = asyncio.create_task(control_loop())
    try:
        if isinstance(request, ExecuteRequest):
            ok = await runner.execute(
                request.script_path, request.params, request.wallets, request.proxy,
            )
        elif isinstance(request, DescribeRequest):
            ok = await runner.describe(request.script_path) is not None
        else:
            ok = False
    finally:
        control.cancel()
    return 0 if ok else 1


def main() -> None:
    # Keep stray writes off the protocol channel
    protocol_stream = sys.stdout
    sys.stdout = sys.stderr

    settings = RunnerSettings()
    setup_logging(settings.log_level, log_file=None, stream=sys.stderr)
    writer = EventWriter(protocol_stream)

    # No asyncio.run(): its shutdown would wait on abandoned script tasks
    # and on threads still running a timed-out module body.
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    code = loop.run_until_complete(run_child(settings, writer, sys.stdin))
    _hard_exit(writer, code)


if __name__ == "__main__":
    main()
