"""Sandbox for user scripts.

A user script is compiled and executed in a fresh namespace whose
builtins, imports and attribute access are restricted:

* **Imports** -- ``import x`` and ``context.require("x")`` both go through
  the :class:`Capability` allow-list.  Allowed modules are handed out as
  read-only :class:`ModuleView` wrappers that hide private attributes and
  nested modules which are not themselves allow-listed.
* **Builtins** -- only the names in :data:`SAFE_BUILTINS` are available;
  ``print`` is rebound to the script logger.
* **Source guard** -- the AST is rejected if it reaches for underscore
  attributes/names, frame and code introspection attributes, or
  event-loop and transport handles.

The runner process is the real isolation boundary (it is killed on
timeout); these restrictions keep well-behaved scripts on the supported
surface and make escapes deliberate rather than accidental.

Key exports:
    Capability / CAPABILITY_REGISTRY: The import allow-list.
    require_module: Resolve an allow-listed module by name.
    compile_script / load_script: Guarded compile and module execution.
    ExecutionContext / build_context: Per-run object passed to ``main``.
"""

import ast
import asyncio
import builtins
import importlib
import json
import logging
import random
import re
import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from core.config import ProxyRef, RunnerSettings, WalletRef
from core.errors import ModuleNotAllowedError, SandboxViolationError
from core.http import HttpClient, create_client
from core.logging_setup import get_redaction_filter
from solvers.capsolver import CapSolverClient

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, Dict[str, Any]], None]

SCRIPT_MODULE_NAME = "user_script"


# ---------------------------------------------------------------------------
# Capability registry
# ---------------------------------------------------------------------------

class Capability(str, Enum):
    """Modules a script may import, keyed by the name the script uses."""

    ETH_ACCOUNT = "eth_account"
    ETH_ACCOUNT_MESSAGES = "eth_account.messages"
    HTTP_CLIENT = "http_client"
    HASHLIB = "hashlib"
    HMAC = "hmac"
    SECRETS = "secrets"
    BASE64 = "base64"
    JSON = "json"
    RE = "re"
    MATH = "math"
    RANDOM = "random"
    DATETIME = "datetime"
    DECIMAL = "decimal"
    URLLIB_PARSE = "urllib.parse"
    POSIXPATH = "posixpath"


CAPABILITY_REGISTRY: Dict[str, str] = {cap.value: cap.value for cap in Capability}
CAPABILITY_REGISTRY[Capability.HTTP_CLIENT.value] = "core.http"

# Capabilities limited to the listed names; the rest of the module
# reaches the filesystem, the environment or process-wide state
CAPABILITY_EXPORTS: Dict[str, FrozenSet[str]] = {
    Capability.HTTP_CLIENT.value: frozenset({
        "create_client", "get", "post", "put", "delete",
        "format_proxy_url", "HttpClient", "HttpResponse",
    }),
    Capability.POSIXPATH.value: frozenset({
        "join", "basename", "dirname", "split", "splitext", "normpath",
        "isabs", "commonpath", "sep", "extsep",
    }),
}

# Real module names reachable through a view's attributes
_ALLOWED_MODULES: Dict[str, str] = {
    real: alias for alias, real in CAPABILITY_REGISTRY.items()
}


class ModuleView:
    """Read-only proxy over an allow-listed module.

    Private names are hidden and nested modules are only exposed when
    they are on the allow-list themselves.  Loggers are never exposed.
    With *exports* set, only those names are reachable.  A view created
    with ``module=None`` is a bare package holding only its ``children``
    (``import urllib.parse`` binds such a view to ``urllib``).
    """

    __slots__ = ("_module", "_name", "_children", "_exports")

    def __init__(
        self,
        module: Optional[types.ModuleType],
        name: str,
        children: Optional[Dict[str, "ModuleView"]] = None,
        exports: Optional[FrozenSet[str]] = None,
    ) -> None:
        object.__setattr__(self, "_module", module)
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_children", dict(children or {}))
        object.__setattr__(self, "_exports", exports)

    def _exposes(self, attr: str, value: Any) -> bool:
        exports = object.__getattribute__(self, "_exports")
        if exports is not None and attr not in exports:
            return False
        if isinstance(value, logging.Logger):
            return False
        if isinstance(value, types.ModuleType):
            return value.__name__ in _ALLOWED_MODULES
        return True

    def __getattr__(self, attr: str) -> Any:
        name = object.__getattribute__(self, "_name")
        if attr.startswith("_"):
            raise AttributeError(f"module {name!r} has no attribute {attr!r}")
        children = object.__getattribute__(self, "_children")
        if attr in children:
            return children[attr]
        module = object.__getattribute__(self, "_module")
        if module is None:
            raise AttributeError(f"module {name!r} has no attribute {attr!r}")
        value = getattr(module, attr)
        if not self._exposes(attr, value):
            raise AttributeError(f"module {name!r} has no attribute {attr!r}")
        if isinstance(value, types.ModuleType):
            return require_module(_ALLOWED_MODULES[value.__name__])
        return value

    def __setattr__(self, attr: str, value: Any) -> None:
        raise AttributeError(f"module {self._name!r} is read-only")

    def __delattr__(self, attr: str) -> None:
        raise AttributeError(f"module {self._name!r} is read-only")

    def __dir__(self) -> List[str]:
        names = set(self._children)
        if self._module is not None:
            for attr in dir(self._module):
                if attr.startswith("_"):
                    continue
                if self._exposes(attr, getattr(self._module, attr, None)):
                    names.add(attr)
        return sorted(names)

    def __repr__(self) -> str:
        return f"<sandboxed module {self._name!r}>"


def require_module(name: str) -> ModuleView:
    """Return a read-only view of the allow-listed module *name*.

    Raises:
        ModuleNotAllowedError: If *name* is not a :class:`Capability`.
    """
    target = CAPABILITY_REGISTRY.get(name)
    if target is None:
        raise ModuleNotAllowedError(name)
    return ModuleView(importlib.import_module(target), name, exports=CAPABILITY_EXPORTS.get(name))


def sandbox_import(
    name: str,
    globals: Optional[Dict[str, Any]] = None,
    locals: Optional[Dict[str, Any]] = None,
    fromlist: Sequence[str] = (),
    level: int = 0,
) -> ModuleView:
    """``__import__`` replacement installed in the sandbox builtins."""
    if level:
        raise ModuleNotAllowedError("." * level + (name or ""))
    view = require_module(name)
    if fromlist or "." not in name:
        return view
    # ``import a.b`` binds ``a``; parents that are not allow-listed
    # themselves become bare package views
    parts = name.split(".")
    node = view
    for depth in range(len(parts) - 1, 0, -1):
        parent = ".".join(parts[:depth])
        target = CAPABILITY_REGISTRY.get(parent)
        base = importlib.import_module(target) if target else None
        node = ModuleView(base, parent, {parts[depth]: node}, CAPABILITY_EXPORTS.get(parent))
    return node


# ---------------------------------------------------------------------------
# Source guard
# ---------------------------------------------------------------------------

FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next",
    "co_code", "co_consts",
    "mro", "format_map",
    # event loop and transport handles
    "loop", "get_loop", "connector", "connection", "transport",
    "get_coro", "get_stack",
})

# "{0.__class__}".format(x) style traversal
_FORMAT_TRAVERSAL = re.compile(r"\{[^{}]*[.\[]_")


class _SourceGuard(ast.NodeVisitor):
    def __init__(self, filename: str) -> None:
        self.filename = filename

    def _reject(self, node: ast.AST, what: str) -> None:
        line = getattr(node, "lineno", "?")
        raise SandboxViolationError(f"{self.filename}:{line}: {what} is not allowed")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._reject(node, f"access to attribute '{node.attr}'")
        if node.attr in FORBIDDEN_ATTRIBUTES:
            self._reject(node, f"access to attribute '{node.attr}'")
        if (
            node.attr == "format"
            and isinstance(node.value, ast.Constant)
            and isinstance(node.value.value, str)
            and _FORMAT_TRAVERSAL.search(node.value.value)
        ):
            self._reject(node, "attribute lookup inside a format string")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_") and node.id != "_":
            self._reject(node, f"use of name '{node.id}'")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name.startswith("_"):
                self._reject(node, f"import of '{alias.name}'")
        self.generic_visit(node)


def compile_script(source: str, filename: str) -> types.CodeType:
    """Parse, guard and compile a script.

    Raises:
        SyntaxError: If the source does not parse.
        SandboxViolationError: If the source uses a forbidden construct.
    """
    tree = ast.parse(source, filename=filename, mode="exec")
    _SourceGuard(filename).visit(tree)
    return compile(tree, filename, "exec")


# ---------------------------------------------------------------------------
# Builtins
# ---------------------------------------------------------------------------

SAFE_BUILTINS = (
    "abs", "aiter", "all", "anext", "any", "ascii", "bin", "bool",
    "bytearray", "bytes", "callable", "chr", "classmethod", "complex",
    "dict", "divmod", "enumerate", "filter", "float", "format",
    "frozenset", "hasattr", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next",
    "object", "oct", "ord", "pow", "property", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "staticmethod", "str",
    "sum", "super", "tuple", "type", "zip",
    "NotImplemented", "Ellipsis",
    # Exceptions scripts commonly raise or catch
    "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "ConnectionError", "IndexError", "KeyError", "LookupError",
    "NameError", "NotImplementedError", "OverflowError", "RuntimeError",
    "StopAsyncIteration", "StopIteration", "TimeoutError", "TypeError",
    "UnicodeError", "ValueError", "ZeroDivisionError",
)


def make_builtins(print_fn: Callable[..., None]) -> Dict[str, Any]:
    """Build the ``__builtins__`` mapping for a script namespace."""
    safe = {
        name: getattr(builtins, name)
        for name in SAFE_BUILTINS
        if hasattr(builtins, name)
    }
    safe["__build_class__"] = builtins.__build_class__
    safe["__import__"] = sandbox_import
    safe["print"] = print_fn
    return safe


# ---------------------------------------------------------------------------
# Context helpers exposed to scripts
# ---------------------------------------------------------------------------

def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return repr(value)
    return str(value)


class ScriptLogger:
    """Console for scripts; every call becomes a ``log`` event.

    Messages are redacted before they leave the runner and mirrored to
    the runner's own logger.
    """

    _LEVELS = {
        "info": logging.INFO,
        "success": logging.INFO,
        "warn": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, emit: EmitFn) -> None:
        self._emit = emit

    def _write(self, level: str, args: Iterable[Any]) -> None:
        message = get_redaction_filter().redact(" ".join(_stringify(a) for a in args))
        logger.log(self._LEVELS[level], "[script] %s", message)
        self._emit("log", {
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def log(self, *args: Any) -> None:
        self._write("info", args)

    def info(self, *args: Any) -> None:
        self._write("info", args)

    def success(self, *args: Any) -> None:
        self._write("success", args)

    def warn(self, *args: Any) -> None:
        self._write("warn", args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._write("error", args)

    def print(self, *args: Any, sep: str = " ", end: str = "\n", **_kwargs: Any) -> None:
        """``print`` replacement bound into the sandbox builtins."""
        self._write("info", [sep.join(_stringify(a) for a in args)])


class ScriptUtils:
    """Timing and randomness helpers (``context.utils``)."""

    async def delay(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000.0)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def random(self, minimum: float, maximum: float) -> float:
        """Random number in ``[minimum, maximum]``; integers when both bounds are."""
        if isinstance(minimum, int) and isinstance(maximum, int):
            return random.randint(minimum, maximum)
        return random.uniform(minimum, maximum)

    def shuffle(self, items: Iterable[Any]) -> List[Any]:
        """Return a shuffled copy of *items*."""
        copy = list(items)
        random.shuffle(copy)
        return copy

    async def gather(self, *aws: Awaitable[Any], return_exceptions: bool = False) -> List[Any]:
        return await asyncio.gather(*aws, return_exceptions=return_exceptions)

    async def timeout(self, aw: Awaitable[Any], seconds: float) -> Any:
        """Await *aw*, raising ``TimeoutError`` after *seconds*."""
        return await asyncio.wait_for(aw, timeout=seconds)


class ProgressReporter:
    """``context.progress``: emits ``progress`` events."""

    def __init__(self, emit: EmitFn) -> None:
        self._emit = emit
        self._total = 1

    def update(self, current: float, total: float, message: str = "") -> None:
        self._total = total or self._total
        percent = round(current / total * 100) if total else 0
        self._emit("progress", {
            "current": current,
            "total": total,
            "percent": max(0, min(100, percent)),
            "message": message,
        })

    def complete(self, message: str = "Completed") -> None:
        self.update(self._total, self._total, message)


class ResultReporter:
    """``context.result``: emits intermediate ``result`` events.

    Mapping payloads are merged into the event data, anything else is
    carried under ``data``.
    """

    def __init__(self, emit: EmitFn) -> None:
        self._emit = emit

    def _send(self, status: str, data: Any) -> None:
        payload: Dict[str, Any] = {"status": status}
        if isinstance(data, dict):
            payload.update(data)
        elif data is not None:
            payload["data"] = data
        self._emit("result", payload)

    def success(self, data: Any = None) -> None:
        self._send("success", data)

    def error(self, error: Any) -> None:
        self._emit("result", {"status": "error", "error": str(error)})

    def info(self, data: Any = None) -> None:
        self._send("info", data)


class ExecutionContext:
    """The single object a script's ``main`` receives.

    Attributes:
        console: Script logger (``log``/``info``/``success``/``warn``/``error``).
        logger: Alias of ``console``.
        params: Resolved parameters.
        wallets: Copies of the selected wallets.
        proxy: The run's proxy, or ``None``.
        utils: :class:`ScriptUtils`.
        progress: :class:`ProgressReporter`.
        result: :class:`ResultReporter`.
        http: :class:`HttpClient` bound to ``proxy``; closed with the run.
        captcha: :class:`CapSolverClient` using the configured key.
    """

    def __init__(
        self,
        console: ScriptLogger,
        emit: EmitFn,
        params: Dict[str, Any],
        wallets: List[WalletRef],
        proxy: Optional[ProxyRef],
        settings: RunnerSettings,
        stop_check: Callable[[], bool],
    ) -> None:
        self.console = console
        self.logger = console
        self.params = params
        self.wallets = wallets
        self.proxy = proxy
        self.utils = ScriptUtils()
        self.progress = ProgressReporter(emit)
        self.result = ResultReporter(emit)
        self._settings = settings
        self._stop_check = stop_check
        self._clients: List[HttpClient] = []
        self.http = self.create_http_client()
        self.captcha = CapSolverClient(
            settings.capsolver_api_key,
            base_url=settings.capsolver_api_base,
            polling_interval=settings.captcha_poll_interval_seconds,
            max_attempts=settings.captcha_max_attempts,
        )

    def should_stop(self) -> bool:
        """``True`` once the host asked the run to stop."""
        return self._stop_check()

    def require(self, name: str) -> ModuleView:
        return require_module(name)

    def create_http_client(self, **options: Any) -> HttpClient:
        """Create an extra HTTP client bound to the run's proxy.

        The client is closed automatically when the run ends.
        """
        options.setdefault("timeout", self._settings.http_timeout_seconds)
        client = create_client(self.proxy, **options)
        self._clients.append(client)
        return client

    async def close(self) -> None:
        """Release network resources held by the context."""
        for client in self._clients:
            await client.close()
        self._clients.clear()
        await self.captcha.close()


def build_context(
    console: ScriptLogger,
    emit: EmitFn,
    params: Dict[str, Any],
    wallets: Sequence[WalletRef],
    proxy: Optional[ProxyRef],
    settings: RunnerSettings,
    stop_check: Callable[[], bool],
) -> ExecutionContext:
    """Create the per-run context; wallets and proxy are deep-copied."""
    return ExecutionContext(
        console=console,
        emit=emit,
        params=dict(params),
        wallets=[wallet.model_copy(deep=True) for wallet in wallets],
        proxy=proxy.model_copy() if proxy else None,
        settings=settings,
        stop_check=stop_check,
    )


def load_script(source: str, filename: str, console: ScriptLogger) -> Dict[str, Any]:
    """Compile *source* and execute its module body in a fresh namespace.

    Returns:
        The populated module namespace.
    """
    code = compile_script(source, filename)
    namespace: Dict[str, Any] = {
        "__builtins__": make_builtins(console.print),
        "__name__": SCRIPT_MODULE_NAME,
    }
    exec(code, namespace)
    return namespace
