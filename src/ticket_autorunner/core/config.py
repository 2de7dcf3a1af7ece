import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, cast

import yaml
from dotenv import load_dotenv

logger = logging.getLogger("ticket_autorunner.core.config")

CONFIG_FILENAME = "ticket-autorunner.yml"
CONFIG_ENV_VAR = "TICKET_AUTORUNNER_CONFIG"
DEFAULT_STATE_DIR = ".ticket-autorunner"


class ConfigError(Exception):
    """Raised when the config file is missing or invalid."""


DEFAULT_CONFIG: Dict[str, Any] = {
    "state_dir": DEFAULT_STATE_DIR,
    "projects": {},
    "tracker": {
        "api_url": "https://api.linear.app/graphql",
        "api_key_env": "LINEAR_API_KEY",
        "request_timeout_seconds": 30,
        "ready_label": "agent-ready",
        "needs_approval_label": "needs-human-approval",
        "follow_up_labels": ["agent-ready"],
        "ready_states": ["Todo", "Backlog"],
        "todo_state": "Todo",
        "in_progress_state": "In Progress",
        "in_review_state": "In Review",
    },
    "defaults": {
        "model": "opus",
        "max_turns": 50,
        "max_budget_usd": 10.0,
        "review_model": "opus",
        "review_max_turns": 15,
        "review_max_budget_usd": 2.0,
        "max_attempts": 2,
        "agent_timeout_seconds": 900,
        "batch_concurrency": 1,
        "batch_limit": 50,
        "default_role": "worker",
        "review_role": "reviewer",
        "pr_link_attempts": 2,
        "pr_link_retry_delay_seconds": 1.0,
        "lock_ttl_seconds": 6 * 60 * 60,
    },
    "github": {
        "pr_labels": ["agent-generated"],
        "review_approved_label": None,
    },
    "agents": {
        "claude": {"binary": "claude", "extra_args": []},
    },
    "validation": {
        "test_timeout_seconds": 120,
        "lint_timeout_seconds": 60,
        "build_timeout_seconds": 120,
    },
}


@dataclasses.dataclass(frozen=True)
class ProjectConfig:
    name: str
    repo_path: Path
    default_branch: str
    test_command: str
    lint_command: str
    build_command: Optional[str] = None
    team: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class TrackerConfig:
    api_url: str
    api_key_env: str
    request_timeout_seconds: float
    ready_label: str
    needs_approval_label: str
    follow_up_labels: List[str]
    ready_states: List[str]
    todo_state: str
    in_progress_state: str
    in_review_state: str


@dataclasses.dataclass(frozen=True)
class DefaultsConfig:
    model: str
    max_turns: int
    max_budget_usd: float
    review_model: str
    review_max_turns: int
    review_max_budget_usd: float
    max_attempts: int
    agent_timeout_seconds: float
    batch_concurrency: int
    batch_limit: int
    default_role: str
    review_role: str
    pr_link_attempts: int
    pr_link_retry_delay_seconds: float
    lock_ttl_seconds: float


@dataclasses.dataclass(frozen=True)
class GithubConfig:
    pr_labels: List[str]
    review_approved_label: Optional[str]


@dataclasses.dataclass(frozen=True)
class AgentConfig:
    binary: str
    extra_args: List[str]


@dataclasses.dataclass(frozen=True)
class ValidationConfig:
    test_timeout_seconds: float
    lint_timeout_seconds: float
    build_timeout_seconds: float


@dataclasses.dataclass(frozen=True)
class AutorunnerConfig:
    root: Path
    config_path: Optional[Path]
    state_dir: Path
    projects: Dict[str, ProjectConfig]
    tracker: TrackerConfig
    defaults: DefaultsConfig
    github: GithubConfig
    agent: AgentConfig
    validation: ValidationConfig
    raw: Dict[str, Any]

    @property
    def roles_path(self) -> Path:
        return self.state_dir / "roles.json"

    @property
    def proposals_dir(self) -> Path:
        return self.state_dir / "proposals"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "batch.lock"

    def project(self, name: str) -> ProjectConfig:
        project = self.projects.get(name)
        if project is None:
            available = ", ".join(sorted(self.projects)) or "none"
            raise ConfigError(
                f'No project config for "{name}". Available projects: {available}'
            )
        return project


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = cast(Dict[str, Any], json.loads(json.dumps(base)))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _require_str(cfg: Mapping[str, Any], key: str, where: str) -> str:
    value = cfg.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} must be a non-empty string")
    return value.strip()


def _optional_str(cfg: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = cfg.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{where}.{key} must be a string when set")
    return value.strip() or None


def _require_int(cfg: Mapping[str, Any], key: str, where: str, *, minimum: int = 1) -> int:
    value = cfg.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}.{key} must be an integer")
    if value < minimum:
        raise ConfigError(f"{where}.{key} must be >= {minimum}")
    return value


def _require_number(cfg: Mapping[str, Any], key: str, where: str) -> float:
    value = cfg.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}.{key} must be a number")
    if value < 0:
        raise ConfigError(f"{where}.{key} must be >= 0")
    return float(value)


def _str_list(cfg: Mapping[str, Any], key: str, where: str) -> List[str]:
    value = cfg.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}.{key} must be a list of strings")
    return [v.strip() for v in value if v.strip()]


def _parse_projects(raw: Dict[str, Any], root: Path) -> Dict[str, ProjectConfig]:
    projects: Dict[str, ProjectConfig] = {}
    for name, cfg in raw.items():
        where = f"projects.{name}"
        if not isinstance(cfg, dict):
            raise ConfigError(f"{where} must be a mapping")
        repo_path = Path(_require_str(cfg, "repo_path", where)).expanduser()
        if not repo_path.is_absolute():
            repo_path = root / repo_path
        projects[str(name)] = ProjectConfig(
            name=str(name),
            repo_path=repo_path,
            default_branch=str(cfg.get("default_branch") or "main"),
            test_command=_require_str(cfg, "test_command", where),
            lint_command=_require_str(cfg, "lint_command", where),
            build_command=_optional_str(cfg, "build_command", where),
            team=_optional_str(cfg, "team", where),
        )
    return projects


def _parse_tracker(cfg: Dict[str, Any]) -> TrackerConfig:
    where = "tracker"
    ready_states = _str_list(cfg, "ready_states", where)
    if not ready_states:
        raise ConfigError("tracker.ready_states must list at least one state")
    return TrackerConfig(
        api_url=_require_str(cfg, "api_url", where),
        api_key_env=_require_str(cfg, "api_key_env", where),
        request_timeout_seconds=_require_number(cfg, "request_timeout_seconds", where),
        ready_label=_require_str(cfg, "ready_label", where),
        needs_approval_label=_require_str(cfg, "needs_approval_label", where),
        follow_up_labels=_str_list(cfg, "follow_up_labels", where),
        ready_states=ready_states,
        todo_state=_require_str(cfg, "todo_state", where),
        in_progress_state=_require_str(cfg, "in_progress_state", where),
        in_review_state=_require_str(cfg, "in_review_state", where),
    )


def _parse_defaults(cfg: Dict[str, Any]) -> DefaultsConfig:
    where = "defaults"
    return DefaultsConfig(
        model=_require_str(cfg, "model", where),
        max_turns=_require_int(cfg, "max_turns", where),
        max_budget_usd=_require_number(cfg, "max_budget_usd", where),
        review_model=_require_str(cfg, "review_model", where),
        review_max_turns=_require_int(cfg, "review_max_turns", where),
        review_max_budget_usd=_require_number(cfg, "review_max_budget_usd", where),
        max_attempts=_require_int(cfg, "max_attempts", where),
        agent_timeout_seconds=_require_number(cfg, "agent_timeout_seconds", where),
        batch_concurrency=_require_int(cfg, "batch_concurrency", where),
        batch_limit=_require_int(cfg, "batch_limit", where),
        default_role=_require_str(cfg, "default_role", where),
        review_role=_require_str(cfg, "review_role", where),
        pr_link_attempts=_require_int(cfg, "pr_link_attempts", where),
        pr_link_retry_delay_seconds=_require_number(
            cfg, "pr_link_retry_delay_seconds", where
        ),
        lock_ttl_seconds=_require_number(cfg, "lock_ttl_seconds", where),
    )


def _parse_agent(cfg: Dict[str, Any]) -> AgentConfig:
    claude = _section(cfg, "claude")
    return AgentConfig(
        binary=_require_str(claude, "binary", "agents.claude"),
        extra_args=_str_list(claude, "extra_args", "agents.claude"),
    )


def _parse_validation(cfg: Dict[str, Any]) -> ValidationConfig:
    where = "validation"
    return ValidationConfig(
        test_timeout_seconds=_require_number(cfg, "test_timeout_seconds", where),
        lint_timeout_seconds=_require_number(cfg, "lint_timeout_seconds", where),
        build_timeout_seconds=_require_number(cfg, "build_timeout_seconds", where),
    )


def parse_config(
    data: Dict[str, Any], *, root: Path, config_path: Optional[Path] = None
) -> AutorunnerConfig:
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    state_dir = Path(str(merged.get("state_dir") or DEFAULT_STATE_DIR)).expanduser()
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    return AutorunnerConfig(
        root=root,
        config_path=config_path,
        state_dir=state_dir,
        projects=_parse_projects(_section(merged, "projects"), root),
        tracker=_parse_tracker(_section(merged, "tracker")),
        defaults=_parse_defaults(_section(merged, "defaults")),
        github=GithubConfig(
            pr_labels=_str_list(_section(merged, "github"), "pr_labels", "github"),
            review_approved_label=_optional_str(
                _section(merged, "github"), "review_approved_label", "github"
            ),
        ),
        agent=_parse_agent(_section(merged, "agents")),
        validation=_parse_validation(_section(merged, "validation")),
        raw=merged,
    )


def find_config_path(start: Optional[Path] = None) -> Optional[Path]:
    env_value = os.environ.get(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    current = (start or Path.cwd()).resolve()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of ``.env`` beside the config file.

    Variables already present in the process environment win.
    """
    try:
        candidate = root.resolve() / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def load_config(path: Optional[Path] = None) -> AutorunnerConfig:
    config_path = path or find_config_path()
    if config_path is None:
        raise ConfigError(
            f"Config file not found. Create {CONFIG_FILENAME} in the project root "
            f"or set ${CONFIG_ENV_VAR}."
        )
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    root = config_path.resolve().parent
    load_dotenv_for_root(root)
    return parse_config(_load_yaml_dict(config_path), root=root, config_path=config_path)


def resolve_api_key(config: AutorunnerConfig) -> str:
    env_name = config.tracker.api_key_env
    value = (os.environ.get(env_name) or "").strip()
    if not value:
        raise ConfigError(f"{env_name} environment variable is not set")
    return value


def detect_project_for_path(
    config: AutorunnerConfig, path: Optional[Path] = None
) -> Optional[ProjectConfig]:
    """Return the project whose repo_path contains ``path`` (longest match)."""
    target = (path or Path.cwd()).resolve()
    best: Optional[ProjectConfig] = None
    best_len = -1
    for project in config.projects.values():
        repo_path = project.repo_path.resolve()
        if target == repo_path or repo_path in target.parents:
            length = len(str(repo_path))
            if length > best_len:
                best, best_len = project, length
    return best


__all__ = [
    "AgentConfig",
    "AutorunnerConfig",
    "CONFIG_ENV_VAR",
    "CONFIG_FILENAME",
    "ConfigError",
    "DEFAULT_CONFIG",
    "DefaultsConfig",
    "GithubConfig",
    "ProjectConfig",
    "TrackerConfig",
    "ValidationConfig",
    "detect_project_for_path",
    "find_config_path",
    "load_config",
    "load_dotenv_for_root",
    "parse_config",
    "resolve_api_key",
]
