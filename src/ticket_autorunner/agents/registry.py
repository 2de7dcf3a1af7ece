"""Tool-access registry: named roles an agent run is sandboxed to.

A role is a capability list plus step/spend caps. Roles may extend one
parentless role. The whole set is validated on every load and every add;
any violation is fatal so an invalid registry is never used.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Optional, Union, cast

from ..core.logging_utils import log_event
from ..core.utils import atomic_write

logger = logging.getLogger("ticket_autorunner.agents.registry")

DEFAULT_ROLES_RESOURCE = "default_roles.json"

# Capability strings are matched by the executor as prefixes/globs
# (``Bash(git push:*)`` allows any ``git push ...``), so a shell capability is
# reduced to its command and the command is matched by prefix. ``Bash`` on its
# own, or a ``Bash(...)`` with an empty or ``*`` command, grants an
# unrestricted shell.
FORBIDDEN_COMMAND_PREFIXES: tuple[str, ...] = (
    "sudo",
    "su",
    "git push",
    "rm -rf",
    "rm -fr",
    "curl",
    "wget",
)
# Matched as a whole word so ``Bash(sum:*)`` is not caught by ``su``.
_WORD_COMMANDS: frozenset[str] = frozenset({"su"})
FORBIDDEN_CAPABILITIES: tuple[str, ...] = ("Bash",)
UNRESTRICTED_SHELL = "Bash(*"

_ROLE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")
_WHITESPACE_RE = re.compile(r"\s+")


class RegistryError(Exception):
    """Raised when the role set is malformed or violates a safety rule."""


class RoleNotFoundError(RegistryError):
    def __init__(self, name: str, available: list[str]) -> None:
        super().__init__(
            f'Role "{name}" not found in registry. Available: {", ".join(available)}'
        )
        self.name = name
        self.available = available


@dataclass(frozen=True)
class RoleAudit:
    created_by: str  # "system" for built-ins, "proposal:<id>" for approved escalations
    created_at: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_by": self.created_by,
            "created_at": self.created_at,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RoleDefinition:
    description: str
    capabilities: tuple[str, ...]
    max_turns: int
    max_budget_usd: float
    audit: RoleAudit
    extends: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"description": self.description}
        if self.extends is not None:
            data["extends"] = self.extends
        data["capabilities"] = list(self.capabilities)
        data["max_turns"] = self.max_turns
        data["max_budget_usd"] = self.max_budget_usd
        data["audit"] = self.audit.to_dict()
        return data

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "RoleDefinition":
        if not isinstance(data, dict):
            raise RegistryError(f'Role "{name}" must be a JSON object')
        description = data.get("description")
        if not isinstance(description, str):
            raise RegistryError(f'Role "{name}" is missing a description')
        extends = data.get("extends")
        if extends is not None and not isinstance(extends, str):
            raise RegistryError(f'Role "{name}" has a non-string "extends"')
        capabilities = data.get("capabilities")
        if not isinstance(capabilities, list) or not all(
            isinstance(c, str) and c.strip() for c in capabilities
        ):
            raise RegistryError(
                f'Role "{name}" capabilities must be a list of non-empty strings'
            )
        max_turns = data.get("max_turns")
        if isinstance(max_turns, bool) or not isinstance(max_turns, int):
            raise RegistryError(f'Role "{name}" max_turns must be an integer')
        max_budget = data.get("max_budget_usd")
        if isinstance(max_budget, bool) or not isinstance(max_budget, (int, float)):
            raise RegistryError(f'Role "{name}" max_budget_usd must be a number')
        audit = data.get("audit")
        if not isinstance(audit, dict):
            raise RegistryError(f'Role "{name}" is missing audit metadata')
        return cls(
            description=description,
            extends=extends,
            capabilities=tuple(capabilities),
            max_turns=max_turns,
            max_budget_usd=max_budget,
            audit=RoleAudit(
                created_by=str(audit.get("created_by") or ""),
                created_at=str(audit.get("created_at") or ""),
                reason=str(audit.get("reason") or ""),
            ),
        )


@dataclass(frozen=True)
class ResolvedRole:
    name: str
    description: str
    capabilities: tuple[str, ...]
    max_turns: int
    max_budget_usd: float
    audit: RoleAudit
    extends: Optional[str] = None


@dataclass(frozen=True)
class RoleFound:
    role: ResolvedRole


@dataclass(frozen=True)
class RoleUnknown:
    name: str
    available: tuple[str, ...] = field(default_factory=tuple)

    @property
    def reason(self) -> str:
        return f'Unknown role "{self.name}" (available: {", ".join(self.available)})'


RoleLookup = Union[RoleFound, RoleUnknown]

RoleSet = dict[str, RoleDefinition]


def shell_command(capability: str) -> Optional[str]:
    """Reduce ``Bash(<cmd>:*)`` to ``<cmd>``; ``None`` for non-shell tools.

    Whitespace the executor ignores is collapsed, so ``Bash( sudo  ls)``
    yields ``sudo ls``.
    """
    text = capability.strip()
    if not (text.startswith("Bash(") or text.startswith("Bash (")):
        return None
    command = text[text.index("(") + 1 :].strip()
    if command.endswith(")"):
        command = command[:-1].rstrip()
    if command.endswith(":*"):
        command = command[:-2]
    elif command.endswith("*") and command != "*":
        command = command[:-1]
    return _WHITESPACE_RE.sub(" ", command).strip()


def _command_matches(command: str, prefix: str) -> bool:
    if prefix in _WORD_COMMANDS:
        return command == prefix or command.startswith(prefix + " ")
    return command.startswith(prefix)


def forbidden_match(capability: str) -> Optional[str]:
    """Return the forbidden pattern ``capability`` falls under, if any."""
    text = capability.strip()
    if text in FORBIDDEN_CAPABILITIES:
        return text
    command = shell_command(text)
    if command is None:
        return None
    if not command or command.startswith("*"):
        return UNRESTRICTED_SHELL
    for prefix in FORBIDDEN_COMMAND_PREFIXES:
        if _command_matches(command, prefix):
            return f"Bash({prefix}"
    return None


def _forbidden_summary() -> str:
    patterns = FORBIDDEN_CAPABILITIES + (UNRESTRICTED_SHELL,)
    patterns += tuple(f"Bash({prefix}" for prefix in FORBIDDEN_COMMAND_PREFIXES)
    return ", ".join(patterns)


def _merged_capabilities(
    definition: RoleDefinition, parent: Optional[RoleDefinition]
) -> tuple[str, ...]:
    merged: list[str] = []
    seen: set[str] = set()
    sources = (parent.capabilities if parent else ()) + definition.capabilities
    for capability in sources:
        if capability in seen:
            continue
        seen.add(capability)
        merged.append(capability)
    return tuple(merged)


def validate_role_set(roles: RoleSet) -> None:
    """Raise ``RegistryError`` on the first violation found."""
    for name, definition in roles.items():
        if not _ROLE_NAME_RE.match(name):
            raise RegistryError(
                f'Invalid role name "{name}". Must match {_ROLE_NAME_RE.pattern}'
            )
        if definition.max_turns <= 0:
            raise RegistryError(f'Role "{name}" max_turns must be positive')
        if definition.max_budget_usd <= 0:
            raise RegistryError(f'Role "{name}" max_budget_usd must be positive')

        parent: Optional[RoleDefinition] = None
        if definition.extends is not None:
            if definition.extends == name:
                raise RegistryError(f'Role "{name}" cannot extend itself')
            parent = roles.get(definition.extends)
            if parent is None:
                raise RegistryError(
                    f'Role "{name}" extends "{definition.extends}" which does not '
                    "exist in the registry."
                )
            if parent.extends is not None:
                raise RegistryError(
                    f'Role "{name}" extends "{definition.extends}" which itself '
                    f'extends "{parent.extends}". Only single-level inheritance '
                    "is allowed."
                )

        capabilities = _merged_capabilities(definition, parent)
        if not capabilities:
            raise RegistryError(f'Role "{name}" has no capabilities')
        for capability in capabilities:
            pattern = forbidden_match(capability)
            if pattern is not None:
                raise RegistryError(
                    f'Role "{name}" has forbidden capability: {capability} '
                    f'(matches "{pattern}"). Forbidden: '
                    f'{_forbidden_summary()}'
                )


def parse_role_set(document: Any) -> RoleSet:
    if not isinstance(document, dict):
        raise RegistryError("Role set must be a JSON object of name -> definition")
    return {
        str(name): RoleDefinition.from_dict(str(name), data)
        for name, data in document.items()
    }


def dump_role_set(roles: RoleSet) -> str:
    payload = {name: definition.to_dict() for name, definition in roles.items()}
    return json.dumps(payload, indent=2) + "\n"


def _min_cap(requested: Optional[float], ceiling: float) -> float:
    if requested is None:
        return ceiling
    return min(requested, ceiling)


class RoleRegistry:
    """Process-scoped, validated cache over the role-set file.

    The cache is written only by :meth:`add` (called when an escalation
    proposal is approved); file and cache are replaced together under a lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._roles: Optional[RoleSet] = None

    def _read_document(self) -> Any:
        try:
            if self.path.exists():
                raw = self.path.read_text(encoding="utf-8")
            else:
                raw = (
                    resources.files("ticket_autorunner.agents")
                    .joinpath(DEFAULT_ROLES_RESOURCE)
                    .read_text(encoding="utf-8")
                )
        except OSError as exc:
            raise RegistryError(f"Failed to read role set {self.path}: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RegistryError(f"Invalid role set JSON in {self.path}: {exc}") from exc

    def load(self) -> RoleSet:
        roles = parse_role_set(self._read_document())
        validate_role_set(roles)
        with self._lock:
            self._roles = roles
        return dict(roles)

    def _current(self) -> RoleSet:
        roles = self._roles
        if roles is None:
            self.load()
            roles = self._roles
        return cast(RoleSet, roles)

    def names(self) -> list[str]:
        return sorted(self._current())

    def lookup(
        self,
        name: str,
        *,
        max_turns: Optional[int] = None,
        max_budget_usd: Optional[float] = None,
    ) -> RoleLookup:
        roles = self._current()
        definition = roles.get(name)
        if definition is None:
            return RoleUnknown(name=name, available=tuple(sorted(roles)))
        parent = roles.get(definition.extends) if definition.extends else None
        return RoleFound(
            ResolvedRole(
                name=name,
                description=definition.description,
                capabilities=_merged_capabilities(definition, parent),
                max_turns=int(_min_cap(max_turns, definition.max_turns)),
                max_budget_usd=_min_cap(max_budget_usd, definition.max_budget_usd),
                audit=definition.audit,
                extends=definition.extends,
            )
        )

    def resolve(
        self,
        name: str,
        *,
        max_turns: Optional[int] = None,
        max_budget_usd: Optional[float] = None,
    ) -> ResolvedRole:
        result = self.lookup(name, max_turns=max_turns, max_budget_usd=max_budget_usd)
        if isinstance(result, RoleUnknown):
            raise RoleNotFoundError(name, list(result.available))
        return result.role

    def list(self) -> list[ResolvedRole]:
        return [self.resolve(name) for name in self.names()]

    def add(self, name: str, definition: RoleDefinition) -> ResolvedRole:
        with self._lock:
            current = self._roles
            if current is None:
                current = parse_role_set(self._read_document())
            if name in current:
                raise RegistryError(f'Role "{name}" already exists in the registry.')
            updated = dict(current)
            updated[name] = definition
            validate_role_set(updated)
            atomic_write(self.path, dump_role_set(updated), durable=True)
            self._roles = updated
        log_event(
            logger,
            logging.INFO,
            "registry.role_added",
            role=name,
            created_by=definition.audit.created_by,
        )
        return self.resolve(name)


__all__ = [
    "FORBIDDEN_CAPABILITIES",
    "FORBIDDEN_COMMAND_PREFIXES",
    "RegistryError",
    "ResolvedRole",
    "RoleAudit",
    "RoleDefinition",
    "RoleFound",
    "RoleLookup",
    "RoleNotFoundError",
    "RoleRegistry",
    "RoleUnknown",
    "dump_role_set",
    "forbidden_match",
    "parse_role_set",
    "shell_command",
    "validate_role_set",
]
