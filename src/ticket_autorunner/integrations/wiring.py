"""Assemble the concrete adapters behind the pipeline ports."""

from __future__ import annotations

from dataclasses import dataclass

from ..agents.executor import ClaudeCliExecutor
from ..agents.proposals import ProposalService, ProposalStore
from ..agents.registry import RoleRegistry
from ..core.config import AutorunnerConfig, resolve_api_key
from ..core.locks import BatchLock
from ..tickets.attempt_log import JsonAttemptLog
from ..tickets.drain import BatchDriver
from ..tickets.runner import PipelineRunner
from ..tickets.validation import CommandValidator
from ..workspace.worktrees import GitWorktreeManager
from .github.service import GitHubService
from .linear.client import LinearClient


@dataclass
class Runtime:
    config: AutorunnerConfig
    registry: RoleRegistry
    tracker: LinearClient
    executor: ClaudeCliExecutor
    proposals: ProposalService
    runner: PipelineRunner
    driver: BatchDriver

    async def aclose(self) -> None:
        await self.tracker.close()


def build_registry(config: AutorunnerConfig) -> RoleRegistry:
    registry = RoleRegistry(config.roles_path)
    registry.load()
    return registry


def build_runtime(config: AutorunnerConfig) -> Runtime:
    """Build every adapter from ``config``.

    Raises ``ConfigError`` when the tracker API key is missing and
    ``RegistryError`` when the role set is invalid.
    """
    registry = build_registry(config)
    tracker = LinearClient(
        resolve_api_key(config),
        api_url=config.tracker.api_url,
        timeout_seconds=config.tracker.request_timeout_seconds,
    )
    workspace = GitWorktreeManager()
    executor = ClaudeCliExecutor(config.agent)
    proposals = ProposalService(
        ProposalStore(config.proposals_dir), registry, tracker, config.tracker
    )
    runner = PipelineRunner(
        config=config,
        registry=registry,
        tracker=tracker,
        workspace=workspace,
        executor=executor,
        code_host=GitHubService(),
        validator=CommandValidator(config.validation, workspace),
        attempt_log=JsonAttemptLog(config.logs_dir),
        proposals=proposals,
    )
    driver = BatchDriver(
        config=config,
        tracker=tracker,
        runner=runner,
        lock=BatchLock(config.lock_path, ttl_seconds=config.defaults.lock_ttl_seconds),
    )
    return Runtime(
        config=config,
        registry=registry,
        tracker=tracker,
        executor=executor,
        proposals=proposals,
        runner=runner,
        driver=driver,
    )


__all__ = ["Runtime", "build_registry", "build_runtime"]
