"""
Core module for the wallet script runner.

This package holds the host-side task service, the child-process runner that
executes user scripts, and the configuration and logging they share.

Submodules:
    config: Runtime settings (``RunnerSettings``) and wallet/proxy models via Pydantic.
    contract: Script descriptor model, parameter validation and entry-point resolution.
    sandbox: Module allow-list, source guard and the ``ExecutionContext`` handed to scripts.
    script_runner: ``ScriptRunner`` child process with timeouts, stop handling and crash hooks.
    script_service: ``ScriptService`` task queue supervising one runner process per task.
    registry: Catalog of scripts found in ``user_scripts/``.
    protocol: JSON-line messages exchanged between the host and a runner.
    http: aiohttp client with HTTP/SOCKS5 proxy support.
    errors: Error taxonomy and ``classify_error``.
    logging_setup: Compressed rotating file + safe console logging with key redaction.
"""
