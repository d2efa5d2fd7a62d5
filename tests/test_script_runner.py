"""Tests for ScriptRunner, run in-process with a collecting emitter."""

import asyncio
import io
import json
import signal
import sys
import threading
from unittest.mock import MagicMock

import pytest

from core.script_runner import EventWriter, RunnerState, ScriptRunner, _install_hooks, run_child

CANONICAL = """
    def get_config():
        return {
            "id": "canonical",
            "name": "Canonical",
            "requires": {"wallets": True},
            "config": {
                "rounds": {"type": "integer", "default": 2, "min": 1, "max": 5},
            },
        }

    async def main(context):
        context.logger.info("Starting with", len(context.wallets), "wallet(s)")
        for i in range(context.params["rounds"]):
            context.progress.update(i + 1, context.params["rounds"], "round")
        context.result.success({"wallet": context.wallets[0].address})
        return {"success": True, "data": context.params}
"""


class TestExecute:
    """Tests for ScriptRunner.execute outcomes."""

    @pytest.mark.asyncio
    async def test_successful_run(self, settings, write_script, events, wallet):
        path = write_script("canonical.py", CANONICAL)
        runner = ScriptRunner(events, settings)

        ok = await runner.execute(path, {}, [wallet])

        assert ok is True
        assert runner.state is RunnerState.COMPLETED
        assert events.types == ["log", "progress", "progress", "result", "completed"]
        assert events.of_type("progress")[-1]["percent"] == 100
        assert events.of_type("result")[0] == {"status": "success", "wallet": wallet["address"]}
        assert events.of_type("completed")[0] == {
            "result": {"success": True, "data": {"rounds": 2}},
        }

    @pytest.mark.asyncio
    async def test_missing_wallets_fail_validation(self, settings, write_script, events):
        path = write_script("canonical.py", CANONICAL)
        runner = ScriptRunner(events, settings)

        ok = await runner.execute(path, {}, [])

        assert ok is False
        assert runner.state is RunnerState.FAILED
        assert events.types == ["error", "failed"]
        failed = events.of_type("failed")[0]
        assert failed["type"] == "validation_error"
        assert "requires at least one wallet" in failed["error"]

    @pytest.mark.asyncio
    async def test_invalid_params_fail_validation(self, settings, write_script, events, wallet):
        path = write_script("canonical.py", CANONICAL)

        await ScriptRunner(events, settings).execute(path, {"rounds": 9}, [wallet])

        failed = events.of_type("failed")[0]
        assert failed["type"] == "validation_error"
        assert "rounds: must be <= 5" in failed["error"]

    @pytest.mark.asyncio
    async def test_missing_file_is_io_error(self, settings, tmp_path, events):
        await ScriptRunner(events, settings).execute(tmp_path / "missing.py")

        assert events.types == ["error", "failed"]
        assert events.of_type("failed")[0]["type"] == "io_error"

    @pytest.mark.asyncio
    async def test_script_exception_is_execution_error(self, settings, write_script, events):
        path = write_script("boom.py", """
            def get_config():
                return {"id": "boom"}

            async def main(context):
                raise ValueError("kaboom")
        """)

        await ScriptRunner(events, settings).execute(path)

        error = events.of_type("error")[0]
        assert error["type"] == "execution_error"
        assert error["message"] == "kaboom"
        assert "ValueError" in error["stack"]
        assert events.types[-1] == "failed"

    @pytest.mark.asyncio
    async def test_disallowed_import_reported(self, settings, write_script, events):
        path = write_script("sneaky.py", """
            def get_config():
                return {"id": "sneaky"}

            async def main(context):
                context.require("os")
        """)

        await ScriptRunner(events, settings).execute(path)

        assert events.of_type("failed")[0]["type"] == "module_not_allowed"

    @pytest.mark.asyncio
    async def test_sandbox_violation_reported(self, settings, write_script, events):
        path = write_script("escape.py", """
            def get_config():
                return {"id": "escape"}

            async def main(context):
                return ().__class__
        """)

        await ScriptRunner(events, settings).execute(path)

        assert events.of_type("failed")[0]["type"] == "sandbox_violation"

    @pytest.mark.asyncio
    async def test_event_loop_out_of_reach(self, settings, write_script, events):
        path = write_script("spawner.py", """
            def get_config():
                return {"id": "spawner"}

            async def main(context):
                loop = context.http.session.loop
                await loop.subprocess_shell(None, "true")
        """)

        await ScriptRunner(events, settings).execute(path)

        failed = events.of_type("failed")[0]
        assert failed["type"] == "sandbox_violation"
        assert "'loop'" in failed["error"]

    @pytest.mark.asyncio
    async def test_raw_aiohttp_import_rejected(self, settings, write_script, events):
        path = write_script("raw_http.py", """
            import aiohttp

            def get_config():
                return {"id": "raw_http"}

            async def main(context):
                return aiohttp.ClientSession()
        """)

        await ScriptRunner(events, settings).execute(path)

        assert events.of_type("failed")[0]["type"] == "module_not_allowed"

    @pytest.mark.asyncio
    async def test_path_helpers_cannot_touch_filesystem(self, settings, write_script, events):
        path = write_script("peek.py", """
            import posixpath

            def get_config():
                return {"id": "peek"}

            async def main(context):
                name = posixpath.basename("/etc/passwd")
                return {"name": name, "exists": posixpath.exists("/etc/passwd")}
        """)

        await ScriptRunner(events, settings).execute(path)

        failed = events.of_type("failed")[0]
        assert failed["type"] == "execution_error"
        assert "exists" in failed["error"]
        assert events.of_type("completed") == []

    @pytest.mark.asyncio
    async def test_contract_error_reported(self, settings, write_script, events):
        path = write_script("nothing.py", "value = 1\n")

        await ScriptRunner(events, settings).execute(path)

        failed = events.of_type("failed")[0]
        assert failed["type"] == "validation_error"
        assert "defines neither" in failed["error"]

    @pytest.mark.asyncio
    async def test_execution_timeout(self, settings, write_script, events):
        path = write_script("slow.py", """
            def get_config():
                return {"id": "slow"}

            async def main(context):
                await context.utils.sleep(30)
        """)
        settings = settings.model_copy(update={"execution_timeout_seconds": 0.2})

        ok = await ScriptRunner(events, settings).execute(path)

        assert ok is False
        failed = events.of_type("failed")[0]
        assert failed["type"] == "timeout"
        assert "execution timed out after 0.2s" in failed["error"]

    @pytest.mark.asyncio
    async def test_descriptor_timeout_shortens_limit(self, settings, write_script, events):
        path = write_script("slow.py", """
            def get_config():
                return {"id": "slow", "timeoutMs": 200}

            async def main(context):
                await context.utils.sleep(30)
        """)

        await ScriptRunner(events, settings).execute(path)

        assert events.of_type("failed")[0]["type"] == "timeout"

    @pytest.mark.asyncio
    async def test_private_key_redacted_from_logs(self, settings, write_script, events, wallet):
        path = write_script("leak.py", """
            def get_config():
                return {"id": "leak"}

            async def main(context):
                context.logger.info("key is", context.wallets[0].private_key)
                raise RuntimeError("failed with " + context.wallets[0].private_key)
        """)

        await ScriptRunner(events, settings).execute(path, wallets=[wallet])

        dumped = json.dumps(events.events)
        assert wallet["privateKey"] not in dumped
        assert wallet["privateKey"][2:] not in dumped
        assert "REDACTED" in events.of_type("log")[0]["message"]

    @pytest.mark.asyncio
    async def test_legacy_script(self, settings, write_script, events, wallet):
        path = write_script("legacy.py", """
            METADATA = {"id": "legacy", "config": {"times": {"type": "number", "default": 3}}}

            async def execute(wallets, config, utils):
                await utils.delay(1)
                utils.logger.info("legacy run")
                return {"success": True, "count": config["times"], "wallets": len(wallets)}
        """)

        ok = await ScriptRunner(events, settings).execute(path, wallets=[wallet])

        assert ok is True
        assert events.of_type("completed")[0]["result"] == {
            "success": True, "count": 3, "wallets": 1,
        }

    @pytest.mark.asyncio
    async def test_unsuccessful_result_still_completes(self, settings, write_script, events):
        path = write_script("soft.py", """
            def get_config():
                return {"id": "soft"}

            async def main(context):
                return {"success": False, "error": "nothing to do"}
        """)

        ok = await ScriptRunner(events, settings).execute(path)

        assert ok is True
        assert events.of_type("completed")[0]["result"]["success"] is False

    @pytest.mark.asyncio
    async def test_result_made_json_safe(self, settings, write_script, events):
        path = write_script("amounts.py", """
            from decimal import Decimal

            def get_config():
                return {"id": "amounts"}

            async def main(context):
                return {"success": True, "balance": Decimal("1.25"), "raw": b"\\x01\\x02"}
        """)

        await ScriptRunner(events, settings).execute(path)

        assert events.of_type("completed")[0]["result"] == {
            "success": True, "balance": "1.25", "raw": "0x0102",
        }

    @pytest.mark.asyncio
    async def test_runner_is_single_use(self, settings, write_script, events):
        path = write_script("soft.py", """
            def get_config():
                return {"id": "soft"}

            async def main(context):
                return None
        """)
        runner = ScriptRunner(events, settings)
        await runner.execute(path)

        with pytest.raises(RuntimeError, match="single-use"):
            await runner.execute(path)


class TestStop:
    """Tests for cooperative stop and the grace period."""

    @pytest.mark.asyncio
    async def test_cooperative_stop(self, settings, write_script, events):
        path = write_script("loop.py", """
            def get_config():
                return {"id": "loop"}

            async def main(context):
                rounds = 0
                while not context.should_stop():
                    rounds += 1
                    await context.utils.sleep(0.01)
                return {"success": True, "stopped": True}
        """)
        runner = ScriptRunner(events, settings)
        run = asyncio.create_task(runner.execute(path))
        await asyncio.sleep(0.2)
        runner.stop()

        ok = await run

        assert ok is True
        assert runner.should_stop() is True
        assert events.of_type("completed")[0]["result"]["stopped"] is True
        assert any(log["message"] == "Stop requested" for log in events.of_type("log"))

    @pytest.mark.asyncio
    async def test_grace_period_expiry(self, settings, write_script, events):
        path = write_script("stubborn.py", """
            def get_config():
                return {"id": "stubborn"}

            async def main(context):
                await context.utils.sleep(30)
        """)
        settings = settings.model_copy(update={"execution_timeout_seconds": 1.0})
        hard_exit = MagicMock()
        runner = ScriptRunner(events, settings, hard_exit=hard_exit)
        run = asyncio.create_task(runner.execute(path))
        await asyncio.sleep(0.1)
        runner.stop()
        await asyncio.sleep(settings.stop_grace_seconds + 0.2)

        assert runner.state is RunnerState.ABORTED
        assert events.terminal[0][0] == "failed"
        assert events.terminal[0][1]["type"] == "stopped"
        hard_exit.assert_called_once_with(1)

        # The execution timeout firing later must not add a second terminal event
        assert await run is False
        assert len(events.terminal) == 1

    @pytest.mark.asyncio
    async def test_stop_after_completion_is_harmless(self, settings, write_script, events):
        path = write_script("quick.py", """
            def get_config():
                return {"id": "quick"}

            async def main(context):
                return None
        """)
        hard_exit = MagicMock()
        runner = ScriptRunner(events, settings, hard_exit=hard_exit)
        await runner.execute(path)

        runner.stop()
        await asyncio.sleep(settings.stop_grace_seconds + 0.1)

        assert events.types == ["completed"]
        hard_exit.assert_not_called()


class TestDescribe:
    """Tests for describe mode."""

    @pytest.mark.asyncio
    async def test_describe_emits_descriptor(self, settings, write_script, events):
        path = write_script("canonical.py", CANONICAL)

        descriptor = await ScriptRunner(events, settings).describe(path)

        assert descriptor.id == "canonical"
        assert events.types == ["descriptor"]
        data = events.of_type("descriptor")[0]
        assert data["requires"] == {"wallets": True, "proxy": False}
        assert data["config"]["rounds"]["default"] == 2

    @pytest.mark.asyncio
    async def test_describe_broken_script(self, settings, write_script, events):
        path = write_script("broken.py", "def get_config(:\n")

        assert await ScriptRunner(events, settings).describe(path) is None
        assert events.types == ["error", "failed"]


class TestRunChild:
    """Tests for the child-process request loop, driven through strings."""

    @pytest.mark.asyncio
    async def test_execute_request_round_trip(self, settings, write_script, monkeypatch):
        path = write_script("quick.py", """
            def get_config():
                return {"id": "quick"}

            async def main(context):
                context.logger.info("hi")
                return {"success": True}
        """)
        monkeypatch.setattr("core.script_runner._install_hooks", MagicMock())
        out = io.StringIO()
        stdin = io.StringIO(json.dumps({"type": "execute", "scriptPath": str(path)}) + "\n")

        code = await run_child(settings, EventWriter(out), stdin)

        assert code == 0
        lines = [json.loads(line) for line in out.getvalue().splitlines()]
        # stdin hits EOF right away, which also requests a stop
        assert any(line["data"].get("message") == "hi" for line in lines if line["type"] == "log")
        assert lines[-1] == {"type": "completed", "data": {"result": {"success": True}}}

    @pytest.mark.asyncio
    async def test_malformed_request_fails(self, settings, monkeypatch):
        monkeypatch.setattr("core.script_runner._install_hooks", MagicMock())
        out = io.StringIO()
        stdin = io.StringIO('{"type": "launch"}\n')

        code = await run_child(settings, EventWriter(out), stdin)

        assert code == 1
        lines = [json.loads(line) for line in out.getvalue().splitlines()]
        assert lines[-1]["type"] == "failed"
        assert lines[-1]["data"]["type"] == "process_error"


class TestProcessHooks:
    """Tests for the crash hooks installed in the runner process."""

    @pytest.fixture
    def hooked(self, settings, monkeypatch):
        """Install the hooks on the running loop with process exit captured."""
        exits = []
        out = io.StringIO()
        monkeypatch.setattr("core.script_runner._hard_exit", lambda writer, code: exits.append(code))
        monkeypatch.setattr(threading, "excepthook", threading.excepthook)
        monkeypatch.setattr(sys, "excepthook", sys.excepthook)

        installed = []

        def install():
            loop = asyncio.get_running_loop()
            writer = EventWriter(out)
            _install_hooks(loop, ScriptRunner(writer, settings), writer)
            installed.append(loop)
            return loop

        yield install, out, exits

        for loop in installed:
            loop.set_exception_handler(None)
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    @staticmethod
    def _lines(out):
        return [json.loads(line) for line in out.getvalue().splitlines()]

    @pytest.mark.asyncio
    async def test_unretrieved_task_exception_fails_run(self, hooked):
        install, out, exits = hooked
        loop = install()

        loop.call_exception_handler({
            "message": "Task exception was never retrieved",
            "exception": RuntimeError("lost task"),
        })

        lines = self._lines(out)
        assert [line["type"] for line in lines] == ["error", "failed"]
        assert lines[0]["data"]["message"] == "lost task"
        assert lines[1]["data"]["type"] == "unhandled_rejection"
        assert exits == [1]

    @pytest.mark.asyncio
    async def test_thread_crash_fails_run(self, hooked):
        install, out, exits = hooked
        install()

        def crash():
            raise ValueError("worker died")

        worker = threading.Thread(target=crash)
        worker.start()
        worker.join()

        lines = self._lines(out)
        assert lines[-1]["type"] == "failed"
        assert lines[-1]["data"] == {"error": "worker died", "type": "uncaught_exception"}
        assert exits == [1]

    @pytest.mark.asyncio
    async def test_diagnostics_without_exception_pass_through(self, hooked):
        install, out, exits = hooked
        loop = install()

        loop.call_exception_handler({"message": "Unclosed client session"})

        assert out.getvalue() == ""
        assert exits == []


class TestBundledScripts:
    """Runs the scripts shipped in user_scripts/ that need no network."""

    @pytest.mark.asyncio
    async def test_print123(self, settings, events):
        from core.config import SCRIPTS_DIR

        ok = await ScriptRunner(events, settings).execute(
            SCRIPTS_DIR / "print123.py", {"delay": 0, "count": 2},
        )

        assert ok is True
        messages = [log["message"] for log in events.of_type("log")]
        assert messages[1:3] == ["Print #1: 123", "Print #2: 123"]
        assert events.of_type("completed")[0]["result"] == {"success": True, "data": {"count": 2}}

    @pytest.mark.asyncio
    async def test_sign_message(self, settings, events, wallet):
        from eth_account import Account
        from eth_account.messages import encode_defunct

        from core.config import SCRIPTS_DIR

        ok = await ScriptRunner(events, settings).execute(
            SCRIPTS_DIR / "sign_message.py", {"message": "hello"}, [wallet],
        )

        assert ok is True
        signature = events.of_type("completed")[0]["result"]["data"]["signatures"][0]
        assert signature["address"] == wallet["address"]
        recovered = Account.recover_message(encode_defunct(text="hello"), signature=signature["signature"])
        assert recovered == wallet["address"]
