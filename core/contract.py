"""Script contract: descriptor model, parameter validation, entry points.

Every user script is a Python source file exposing::

    def get_config():          # pure, synchronous, no side effects
        return {"id": "...", "name": "...", "requires": {...}, "config": {...}}

    async def main(context):   # -> {"success": bool, "data"?: ..., "error"?: str}
        ...

Older scripts written against the ``METADATA`` / ``execute(wallets,
config, utils)`` convention are accepted through :func:`adapt_legacy`,
which turns them into a ``main(context)`` coroutine.
"""

import copy
import inspect
import logging
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.errors import ScriptContractError, ScriptValidationError

logger = logging.getLogger(__name__)

NUMBER_TYPES = {"number", "integer"}
BOOLEAN_TYPES = {"boolean", "checkbox"}
TEXT_TYPES = {"string", "text", "textarea", "password"}
CHOICE_TYPES = {"select", "multiselect"}


class ScriptRequirements(BaseModel):
    """Resources a script needs before it may run."""

    wallets: bool = False
    proxy: bool = False


class SelectOption(BaseModel):
    """One choice of a ``select`` / ``multiselect`` field."""

    model_config = ConfigDict(extra="allow")

    value: Any
    label: Optional[str] = None


class ConfigField(BaseModel):
    """Declaration of a single configurable script parameter.

    Attributes:
        type: One of ``number``, ``integer``, ``string``, ``text``,
            ``textarea``, ``password``, ``boolean``, ``checkbox``,
            ``select``, ``multiselect``.  Unknown types pass through
            unvalidated.
        label: UI label.
        default: Value used when the run request omits the parameter.
        min: Lower bound for numeric fields.
        max: Upper bound for numeric fields.
        options: Allowed choices for ``select`` / ``multiselect``.
        depends: ``{other_field: value | [values]}``; the field is only
            validated when the condition holds.
        required: Reject the run if no value is supplied.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "string"
    label: Optional[str] = None
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: List[SelectOption] = Field(default_factory=list)
    depends: Optional[Dict[str, Any]] = None
    required: bool = False
    description: Optional[str] = None
    placeholder: Optional[str] = None

    @field_validator("options", mode="before")
    @classmethod
    def _wrap_plain_options(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [
                item if isinstance(item, (Mapping, SelectOption))
                else {"value": item, "label": str(item)}
                for item in value
            ]
        return value

    def option_values(self) -> List[Any]:
        return [option.value for option in self.options]


class ScriptDescriptor(BaseModel):
    """Metadata returned by a script's ``get_config()``.

    Frozen once read.  JS-style camelCase keys (``imageUrl``,
    ``requiredModules``, ``timeoutMs``) are accepted.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    category: str = ""
    icon: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    requires: ScriptRequirements = Field(default_factory=ScriptRequirements)
    required_modules: List[str] = Field(default_factory=list, alias="requiredModules")
    platforms: List[str] = Field(default_factory=list)
    config: Dict[str, ConfigField] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            timeout_ms = data.pop("timeoutMs", None)
            if timeout_ms is not None and data.get("timeout_seconds") is None:
                data["timeout_seconds"] = float(timeout_ms) / 1000.0
            if not data.get("name") and data.get("id"):
                data["name"] = str(data["id"])
        return data


def load_descriptor(raw: Any) -> ScriptDescriptor:
    """Validate a raw ``get_config()`` result.

    Raises:
        ScriptContractError: If the value is not a valid descriptor.
    """
    if isinstance(raw, ScriptDescriptor):
        return raw
    if not isinstance(raw, Mapping):
        raise ScriptContractError(
            f"get_config() must return a dict, got {type(raw).__name__}"
        )
    try:
        return ScriptDescriptor.model_validate(raw)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ScriptContractError(
            "Invalid script descriptor: " + "; ".join(problems), problems,
        ) from e


def check_requirements(
    descriptor: ScriptDescriptor,
    wallets: Optional[Sequence[Any]],
    proxy: Optional[Any],
) -> None:
    """Fail fast when a run lacks the wallets or proxy the script requires.

    Raises:
        ScriptValidationError: With a descriptive, user-facing message.
    """
    if descriptor.requires.wallets and not wallets:
        raise ScriptValidationError(
            f"Script '{descriptor.id}' requires at least one wallet, "
            "but none were selected"
        )
    if descriptor.requires.proxy and not proxy:
        raise ScriptValidationError(
            f"Script '{descriptor.id}' requires a proxy, but none was selected"
        )


def _dependency_met(depends: Optional[Dict[str, Any]], values: Mapping[str, Any]) -> bool:
    if not depends:
        return True
    for other, expected in depends.items():
        actual = values.get(other)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _coerce_number(field: ConfigField, value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                raise ValueError(f"expected a number, got {value!r}") from None
    if not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if field.type == "integer":
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        value = int(value)
    if field.min is not None and value < field.min:
        raise ValueError(f"must be >= {field.min:g}")
    if field.max is not None and value > field.max:
        raise ValueError(f"must be <= {field.max:g}")
    return value


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off", ""):
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _coerce_choice(field: ConfigField, value: Any) -> Any:
    allowed = field.option_values()
    if field.type == "multiselect":
        items = [value] if isinstance(value, str) else list(value)
        if allowed:
            invalid = [item for item in items if item not in allowed]
            if invalid:
                raise ValueError(f"invalid choice(s) {invalid!r}; allowed: {allowed!r}")
        return items
    if allowed and value not in allowed:
        raise ValueError(f"invalid choice {value!r}; allowed: {allowed!r}")
    return value


def coerce_value(field: ConfigField, value: Any) -> Any:
    """Coerce and check one parameter value against its declaration.

    Raises:
        ValueError: With a short, field-level description.
    """
    if field.type in NUMBER_TYPES:
        return _coerce_number(field, value)
    if field.type in BOOLEAN_TYPES:
        return _coerce_boolean(value)
    if field.type in CHOICE_TYPES:
        return _coerce_choice(field, value)
    if field.type in TEXT_TYPES:
        if isinstance(value, (dict, list, tuple, set)):
            raise ValueError(f"expected text, got {type(value).__name__}")
        return str(value)
    return value


def resolve_params(
    schema: Mapping[str, ConfigField],
    params: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Merge run parameters with schema defaults and validate them.

    Omitted (or ``None``) parameters take their declared default.  Fields
    whose ``depends`` condition does not hold are left unvalidated.
    Keys not present in the schema pass through untouched.

    Args:
        schema: The descriptor's ``config`` mapping.
        params: Parameters from the run request.

    Returns:
        The resolved parameter dictionary.

    Raises:
        ScriptValidationError: Listing every invalid field.
    """
    resolved: Dict[str, Any] = dict(params or {})
    for name, field in schema.items():
        if resolved.get(name) is None and field.default is not None:
            resolved[name] = copy.deepcopy(field.default)

    problems: List[str] = []
    for name, field in schema.items():
        if not _dependency_met(field.depends, resolved):
            continue
        value = resolved.get(name)
        if value is None or (value == "" and field.type in TEXT_TYPES):
            if field.required:
                problems.append(f"{name}: is required")
            continue
        try:
            resolved[name] = coerce_value(field, value)
        except (ValueError, TypeError) as e:
            problems.append(f"{name}: {e}")

    if problems:
        raise ScriptValidationError(
            "Invalid script parameters: " + "; ".join(problems), problems,
        )
    return resolved


@dataclass
class ScriptModule:
    """A loaded script reduced to the canonical contract."""

    descriptor: ScriptDescriptor
    main: Callable[[Any], Awaitable[Any]]
    legacy: bool = False


def adapt_legacy(execute: Callable[..., Awaitable[Any]]) -> Callable[[Any], Awaitable[Any]]:
    """Wrap a legacy ``execute(wallets, config, utils)`` as ``main(context)``.

    The legacy ``utils`` object carries ``logger``, ``http``, ``proxy``
    and the ``delay``/``sleep`` helpers, taken from the execution context.
    """

    async def main(context: Any) -> Any:
        utils = SimpleNamespace(
            logger=context.logger,
            http=context.http,
            proxy=context.proxy,
            delay=context.utils.delay,
            sleep=context.utils.sleep,
        )
        return await execute(context.wallets, context.params, utils)

    return main


def resolve_script_module(namespace: Mapping[str, Any], source_name: str) -> ScriptModule:
    """Find the script's entry point in its executed module namespace.

    Raises:
        ScriptContractError: If neither convention is implemented, the
            descriptor is invalid, or ``main`` is not a coroutine
            function.
    """
    get_config = namespace.get("get_config")
    main = namespace.get("main")
    if callable(get_config) and callable(main):
        if not inspect.iscoroutinefunction(main):
            raise ScriptContractError(f"{source_name}: main(context) must be 'async def'")
        try:
            raw = get_config()
        except Exception as e:
            raise ScriptContractError(f"{source_name}: get_config() raised {e!r}") from e
        return ScriptModule(load_descriptor(raw), main)

    metadata = namespace.get("METADATA")
    execute = namespace.get("execute")
    if isinstance(metadata, Mapping) and callable(execute):
        if not inspect.iscoroutinefunction(execute):
            raise ScriptContractError(f"{source_name}: execute() must be 'async def'")
        logger.debug("%s uses the legacy METADATA/execute contract", source_name)
        return ScriptModule(load_descriptor(metadata), adapt_legacy(execute), legacy=True)

    raise ScriptContractError(
        f"{source_name} defines neither get_config()/main(context) "
        "nor METADATA/execute(wallets, config, utils)"
    )
