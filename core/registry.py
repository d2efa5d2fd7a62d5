"""Script catalog for the script runner.

Scans the scripts directory for ``*.py`` files and asks a runner process
to ``describe`` each one, so untrusted module code never executes in the
host.  Scripts that fail to load are logged and left out of the catalog.

Usage::

    from core.registry import ScriptRegistry

    registry = ScriptRegistry(settings.scripts_dir, settings)
    info = await registry.get_script("balance_check")
    if info:
        print(info.path, info.descriptor.name)
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.config import RunnerSettings
from core.contract import ScriptDescriptor, load_descriptor
from core.errors import RunnerProcessError, ScriptError, ScriptTimeoutError
from core.protocol import DescribeRequest, EventType, drain_stderr, read_events, send_message, spawn_runner

logger = logging.getLogger(__name__)

# Concurrent describe subprocesses
DEFAULT_DESCRIBE_PARALLELISM = 4


@dataclass
class ScriptInfo:
    """A catalog entry: where a script lives and what it declares."""

    id: str
    path: Path
    descriptor: ScriptDescriptor

    def to_dict(self) -> Dict[str, Any]:
        data = self.descriptor.model_dump(mode="json")
        data["path"] = str(self.path)
        return data


class ScriptRegistry:
    """Catalog of runnable scripts keyed by descriptor ``id``."""

    def __init__(
        self,
        scripts_dir: Optional[Union[str, Path]] = None,
        settings: Optional[RunnerSettings] = None,
        parallelism: int = DEFAULT_DESCRIBE_PARALLELISM,
    ) -> None:
        self.settings = settings or RunnerSettings()
        self.scripts_dir = Path(scripts_dir or self.settings.scripts_dir)
        self.parallelism = max(1, parallelism)
        self._scripts: Dict[str, ScriptInfo] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def describe(self, script_path: Union[str, Path]) -> ScriptDescriptor:
        """Load *script_path* in a runner process and return its descriptor.

        Raises:
            ScriptError: The runner reported ``failed`` (with its message).
            ScriptTimeoutError: The runner did not answer in time.
            RunnerProcessError: The runner exited without a descriptor.
        """
        deadline = self.settings.compile_timeout_seconds + self.settings.stop_grace_seconds
        label = f"describe:{Path(script_path).name}"
        process = await spawn_runner(self.settings)
        tail: List[str] = []
        stderr_task = asyncio.create_task(drain_stderr(process.stderr, label, tail))
        try:
            await send_message(process, DescribeRequest(script_path=str(Path(script_path).resolve())))
            return await asyncio.wait_for(
                self._await_descriptor(process, label, tail), timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise ScriptTimeoutError("describe", deadline) from None
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    logger.debug("Describe runner already exited")
            await process.wait()
            await stderr_task

    async def _await_descriptor(
        self, process: asyncio.subprocess.Process, label: str, tail: List[str],
    ) -> ScriptDescriptor:
        async for event in read_events(process.stdout, label=label):
            if event.type is EventType.DESCRIPTOR:
                return load_descriptor(event.data)
            if event.type is EventType.FAILED:
                raise ScriptError(event.data.get("error", "Script failed to load"))
        code = await process.wait()
        raise RunnerProcessError(
            f"Runner exited with code {code} without a descriptor"
            + (f": {tail[-1]}" if tail else "")
        )

    async def _describe_entry(self, semaphore: asyncio.Semaphore, path: Path) -> Optional[ScriptInfo]:
        async with semaphore:
            try:
                descriptor = await self.describe(path)
            except (ScriptError, OSError) as e:
                logger.warning("Skipping script %s: %s", path.name, e)
                return None
        return ScriptInfo(id=descriptor.id, path=path, descriptor=descriptor)

    async def load(self, force: bool = False) -> List[ScriptInfo]:
        """Scan the scripts directory (once, unless *force*)."""
        async with self._lock:
            if self._loaded and not force:
                return list(self._scripts.values())
            if not self.scripts_dir.is_dir():
                logger.warning("Scripts directory %s does not exist", self.scripts_dir)
                self._scripts = {}
                self._loaded = True
                return []

            paths = sorted(
                p for p in self.scripts_dir.glob("*.py")
                if p.is_file() and not p.name.startswith("_")
            )
            semaphore = asyncio.Semaphore(self.parallelism)
            entries = await asyncio.gather(
                *(self._describe_entry(semaphore, p) for p in paths)
            )

            scripts: Dict[str, ScriptInfo] = {}
            for entry in entries:
                if entry is None:
                    continue
                if entry.id in scripts:
                    logger.warning(
                        "Duplicate script id %r in %s (already defined by %s)",
                        entry.id, entry.path.name, scripts[entry.id].path.name,
                    )
                    continue
                scripts[entry.id] = entry

            self._scripts = scripts
            self._loaded = True
            logger.info("Loaded %d script(s) from %s", len(scripts), self.scripts_dir)
            return list(scripts.values())

    async def get_script(self, script_id: str) -> Optional[ScriptInfo]:
        """Resolve a script by descriptor id, falling back to its file stem."""
        await self.load()
        info = self._scripts.get(script_id)
        if info is None:
            for candidate in self._scripts.values():
                if candidate.path.stem == script_id:
                    return candidate
        return info

    async def list_scripts(self) -> List[ScriptInfo]:
        return await self.load()
