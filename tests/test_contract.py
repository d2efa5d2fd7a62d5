"""Tests for the script contract: descriptors, parameters and entry points."""

import pytest

from core.contract import (
    ConfigField,
    ScriptDescriptor,
    check_requirements,
    coerce_value,
    load_descriptor,
    resolve_params,
    resolve_script_module,
)
from core.errors import ScriptContractError, ScriptValidationError


class TestLoadDescriptor:
    """Tests for descriptor validation."""

    def test_minimal_descriptor_defaults(self):
        """Only ``id`` is required; name falls back to the id."""
        descriptor = load_descriptor({"id": "demo"})

        assert descriptor.name == "demo"
        assert descriptor.version == "1.0.0"
        assert descriptor.requires.wallets is False
        assert descriptor.requires.proxy is False
        assert descriptor.config == {}
        assert descriptor.timeout_seconds is None

    def test_camel_case_keys_accepted(self):
        descriptor = load_descriptor({
            "id": "demo",
            "imageUrl": "https://example.com/x.png",
            "requiredModules": ["http_client"],
            "timeoutMs": 300000,
        })

        assert descriptor.image_url == "https://example.com/x.png"
        assert descriptor.required_modules == ["http_client"]
        assert descriptor.timeout_seconds == 300.0

    def test_descriptor_is_frozen(self):
        descriptor = load_descriptor({"id": "demo"})
        with pytest.raises(Exception):
            descriptor.id = "other"

    def test_plain_options_are_wrapped(self):
        descriptor = load_descriptor({
            "id": "demo",
            "config": {"mode": {"type": "select", "options": ["a", "b"]}},
        })

        field = descriptor.config["mode"]
        assert field.option_values() == ["a", "b"]
        assert field.options[0].label == "a"

    def test_non_mapping_rejected(self):
        with pytest.raises(ScriptContractError, match="must return a dict"):
            load_descriptor(["not", "a", "dict"])

    def test_missing_id_lists_problem(self):
        with pytest.raises(ScriptContractError) as exc_info:
            load_descriptor({"name": "No id"})

        assert any(p.startswith("id:") for p in exc_info.value.problems)

    def test_existing_descriptor_passes_through(self):
        descriptor = ScriptDescriptor(id="demo")
        assert load_descriptor(descriptor) is descriptor


class TestCheckRequirements:
    """Tests for wallet / proxy requirement checks."""

    def test_missing_wallets_rejected(self):
        descriptor = load_descriptor({"id": "needs_wallets", "requires": {"wallets": True}})

        with pytest.raises(ScriptValidationError, match="requires at least one wallet"):
            check_requirements(descriptor, [], None)

    def test_missing_proxy_rejected(self):
        descriptor = load_descriptor({"id": "needs_proxy", "requires": {"proxy": True}})

        with pytest.raises(ScriptValidationError, match="requires a proxy"):
            check_requirements(descriptor, [{"address": "0x1"}], None)

    def test_satisfied_requirements_pass(self):
        descriptor = load_descriptor({"id": "x", "requires": {"wallets": True, "proxy": True}})
        check_requirements(descriptor, [{"address": "0x1"}], {"host": "h", "port": 1})


class TestCoerceValue:
    """Tests for single-field coercion."""

    def test_number_from_string(self):
        assert coerce_value(ConfigField(type="number"), "2.5") == 2.5
        assert coerce_value(ConfigField(type="number"), "3") == 3

    def test_integer_rejects_fraction(self):
        with pytest.raises(ValueError, match="expected an integer"):
            coerce_value(ConfigField(type="integer"), 2.5)

    def test_integer_accepts_whole_float(self):
        assert coerce_value(ConfigField(type="integer"), 4.0) == 4

    def test_number_rejects_boolean(self):
        with pytest.raises(ValueError, match="boolean"):
            coerce_value(ConfigField(type="number"), True)

    def test_number_bounds(self):
        field = ConfigField(type="number", min=1, max=10)
        with pytest.raises(ValueError, match=">= 1"):
            coerce_value(field, 0)
        with pytest.raises(ValueError, match="<= 10"):
            coerce_value(field, 11)
        assert coerce_value(field, 10) == 10

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("yes", True), ("1", True), (1, True),
        ("false", False), ("off", False), ("", False), (0, False),
    ])
    def test_boolean_coercion(self, raw, expected):
        assert coerce_value(ConfigField(type="checkbox"), raw) is expected

    def test_boolean_rejects_garbage(self):
        with pytest.raises(ValueError, match="expected a boolean"):
            coerce_value(ConfigField(type="boolean"), "maybe")

    def test_select_membership(self):
        field = ConfigField(type="select", options=["fast", "slow"])
        assert coerce_value(field, "fast") == "fast"
        with pytest.raises(ValueError, match="invalid choice"):
            coerce_value(field, "medium")

    def test_multiselect_returns_list(self):
        field = ConfigField(type="multiselect", options=["a", "b", "c"])
        assert coerce_value(field, "a") == ["a"]
        assert coerce_value(field, ("a", "c")) == ["a", "c"]
        with pytest.raises(ValueError, match="invalid choice"):
            coerce_value(field, ["a", "z"])

    def test_text_rejects_containers(self):
        with pytest.raises(ValueError, match="expected text"):
            coerce_value(ConfigField(type="textarea"), {"a": 1})
        assert coerce_value(ConfigField(type="string"), 42) == "42"

    def test_unknown_type_passes_through(self):
        value = {"anything": [1, 2]}
        assert coerce_value(ConfigField(type="color"), value) is value


class TestResolveParams:
    """Tests for merging run parameters with the schema."""

    SCHEMA = {
        "amount": ConfigField(type="number", default=1, min=0.1, max=100),
        "mode": ConfigField(type="select", default="fast", options=["fast", "slow"]),
        "delay": ConfigField(type="integer", depends={"mode": "slow"}, required=True),
        "note": ConfigField(type="string"),
        "tags": ConfigField(type="multiselect", default=["x"], options=["x", "y"]),
    }

    def test_defaults_applied(self):
        resolved = resolve_params(self.SCHEMA, {})

        assert resolved == {"amount": 1, "mode": "fast", "tags": ["x"]}

    def test_default_is_copied(self):
        resolved = resolve_params(self.SCHEMA, {})
        resolved["tags"].append("y")

        assert self.SCHEMA["tags"].default == ["x"]

    def test_none_takes_default(self):
        assert resolve_params(self.SCHEMA, {"amount": None})["amount"] == 1

    def test_values_coerced(self):
        resolved = resolve_params(self.SCHEMA, {"amount": "2.5", "note": 7})

        assert resolved["amount"] == 2.5
        assert resolved["note"] == "7"

    def test_dependent_field_skipped_when_condition_false(self):
        resolved = resolve_params(self.SCHEMA, {"mode": "fast", "delay": "not-a-number"})

        assert resolved["delay"] == "not-a-number"

    def test_dependent_field_required_when_condition_true(self):
        with pytest.raises(ScriptValidationError, match="delay: is required"):
            resolve_params(self.SCHEMA, {"mode": "slow"})

    def test_dependency_on_list_of_values(self):
        schema = {
            "mode": ConfigField(type="string"),
            "limit": ConfigField(type="integer", depends={"mode": ["a", "b"]}, required=True),
        }
        assert resolve_params(schema, {"mode": "c"}) == {"mode": "c"}
        with pytest.raises(ScriptValidationError):
            resolve_params(schema, {"mode": "b"})

    def test_empty_required_text_is_missing(self):
        schema = {"url": ConfigField(type="string", required=True)}
        with pytest.raises(ScriptValidationError, match="url: is required"):
            resolve_params(schema, {"url": ""})

    def test_all_problems_reported(self):
        with pytest.raises(ScriptValidationError) as exc_info:
            resolve_params(self.SCHEMA, {"amount": 500, "mode": "medium"})

        problems = exc_info.value.problems
        assert len(problems) == 2
        assert problems[0].startswith("amount:")
        assert problems[1].startswith("mode:")

    def test_unknown_keys_pass_through(self):
        assert resolve_params({}, {"extra": [1]}) == {"extra": [1]}


class TestResolveScriptModule:
    """Tests for entry point discovery."""

    def test_canonical_module(self):
        async def main(context):
            return {"success": True}

        module = resolve_script_module(
            {"get_config": lambda: {"id": "canonical"}, "main": main}, "canonical.py",
        )

        assert module.descriptor.id == "canonical"
        assert module.main is main
        assert module.legacy is False

    def test_sync_main_rejected(self):
        with pytest.raises(ScriptContractError, match="async def"):
            resolve_script_module(
                {"get_config": lambda: {"id": "x"}, "main": lambda context: None}, "x.py",
            )

    def test_get_config_exception_wrapped(self):
        def get_config():
            raise RuntimeError("boom")

        async def main(context):
            return None

        with pytest.raises(ScriptContractError, match="get_config\\(\\) raised"):
            resolve_script_module({"get_config": get_config, "main": main}, "x.py")

    def test_no_entry_point(self):
        with pytest.raises(ScriptContractError, match="defines neither"):
            resolve_script_module({"helper": print}, "empty.py")

    @pytest.mark.asyncio
    async def test_legacy_module_adapted(self):
        """``execute(wallets, config, utils)`` is called through the shim."""
        calls = {}

        async def execute(wallets, config, utils):
            calls["args"] = (wallets, config, utils)
            return {"success": True}

        module = resolve_script_module(
            {"METADATA": {"id": "legacy"}, "execute": execute}, "legacy.py",
        )
        assert module.legacy is True

        class Utils:
            async def delay(self, ms):
                return None

            async def sleep(self, seconds):
                return None

        class Context:
            logger = object()
            http = object()
            proxy = None
            wallets = [{"address": "0x1"}]
            params = {"a": 1}
            utils = Utils()

        context = Context()
        assert await module.main(context) == {"success": True}

        wallets, config, utils = calls["args"]
        assert wallets == [{"address": "0x1"}]
        assert config == {"a": 1}
        assert utils.logger is context.logger
        assert utils.http is context.http
        assert utils.sleep == context.utils.sleep
