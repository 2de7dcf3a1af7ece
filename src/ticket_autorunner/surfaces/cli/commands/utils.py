from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, Optional, TypeVar

import typer

from ....agents.registry import RegistryError
from ....core.config import AutorunnerConfig, ConfigError, load_config
from ....core.logging_utils import setup_logging
from ....integrations.wiring import Runtime, build_runtime

logger = logging.getLogger("ticket_autorunner.cli")

T = TypeVar("T")


def get_version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("ticket-autorunner")
    except Exception:
        return "unknown"


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def require_config(
    config_path: Optional[Path], *, verbose: bool = False
) -> AutorunnerConfig:
    """Load the config (or exit) and install the log handlers."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise_exit(str(exc), cause=exc)
    try:
        setup_logging(config.logs_dir, verbose=verbose)
    except OSError as exc:
        setup_logging(None, verbose=verbose)
        logger.warning("File logging disabled: %s", exc)
    return config


def require_runtime(config: AutorunnerConfig) -> Runtime:
    try:
        return build_runtime(config)
    except (ConfigError, RegistryError) as exc:
        raise_exit(str(exc), cause=exc)


def run_with_runtime(
    runtime: Runtime, fn: Callable[[Runtime], Awaitable[T]]
) -> T:
    """Run ``fn`` on a fresh event loop and close the runtime's clients."""

    async def _run() -> T:
        try:
            return await fn(runtime)
        finally:
            await runtime.aclose()

    return asyncio.run(_run())


def echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


__all__ = [
    "echo_json",
    "get_version",
    "raise_exit",
    "require_config",
    "require_runtime",
    "run_with_runtime",
]
