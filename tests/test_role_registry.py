from __future__ import annotations

import json
from pathlib import Path

import pytest

from ticket_autorunner.agents.registry import (
    RegistryError,
    RoleAudit,
    RoleDefinition,
    RoleFound,
    RoleNotFoundError,
    RoleRegistry,
    RoleUnknown,
    forbidden_match,
    parse_role_set,
    shell_command,
    validate_role_set,
)

AUDIT = {"created_by": "system", "created_at": "2025-01-01T00:00:00Z", "reason": "test"}


def _role(**overrides):
    data = {
        "description": "role",
        "capabilities": ["Read", "Bash(git status:*)"],
        "max_turns": 10,
        "max_budget_usd": 1.0,
        "audit": AUDIT,
    }
    data.update(overrides)
    return data


def _write(path: Path, document: dict) -> Path:
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_packaged_defaults_load_when_file_missing(tmp_path: Path) -> None:
    registry = RoleRegistry(tmp_path / "roles.json")
    roles = registry.load()
    assert {"worker", "reviewer", "docs", "tester"} <= set(roles)
    assert registry.names() == sorted(roles)


def test_extends_merges_parent_capabilities_first(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "roles.json",
        {
            "base": _role(capabilities=["Read", "Grep"]),
            "child": _role(extends="base", capabilities=["Grep", "Bash(make:*)"]),
        },
    )
    role = RoleRegistry(path).resolve("child")
    assert role.capabilities == ("Read", "Grep", "Bash(make:*)")
    assert role.extends == "base"


def test_lookup_clamps_caps_to_role_ceiling(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "roles.json", {"worker": _role(max_turns=10, max_budget_usd=1.0)}
    )
    registry = RoleRegistry(path)

    found = registry.lookup("worker", max_turns=50, max_budget_usd=0.5)
    assert isinstance(found, RoleFound)
    assert found.role.max_turns == 10
    assert found.role.max_budget_usd == 0.5


def test_lookup_unknown_is_a_value_not_an_exception(tmp_path: Path) -> None:
    path = _write(tmp_path / "roles.json", {"worker": _role()})
    result = RoleRegistry(path).lookup("ghost")
    assert isinstance(result, RoleUnknown)
    assert result.available == ("worker",)
    assert "ghost" in result.reason


def test_resolve_unknown_raises(tmp_path: Path) -> None:
    path = _write(tmp_path / "roles.json", {"worker": _role()})
    with pytest.raises(RoleNotFoundError):
        RoleRegistry(path).resolve("ghost")


@pytest.mark.parametrize(
    "document, message",
    [
        ({"Bad Name": _role()}, "name"),
        ({"worker": _role(max_turns=0)}, "max_turns"),
        ({"worker": _role(max_budget_usd=0)}, "max_budget_usd"),
        ({"worker": _role(capabilities=[])}, "capabilit"),
        ({"worker": _role(extends="worker")}, "itself"),
        ({"worker": _role(extends="missing")}, "missing"),
        ({"worker": _role(capabilities=["Bash"])}, "Bash"),
        ({"worker": _role(capabilities=["Bash(git push:*)"])}, "git push"),
        ({"worker": _role(capabilities=["Bash(  curl https://x)"])}, "curl"),
        ({"worker": _role(capabilities=["Bash(:*)"])}, 'matches "Bash(*"'),
        ({"worker": _role(capabilities=["Bash(*)"])}, 'matches "Bash(*"'),
        ({"worker": _role(capabilities=["Bash(su:*)"])}, 'matches "Bash(su"'),
    ],
)
def test_invalid_role_sets_are_rejected(document, message) -> None:
    with pytest.raises(RegistryError) as excinfo:
        validate_role_set(parse_role_set(document))
    assert message.lower() in str(excinfo.value).lower()


def test_extends_is_single_level(tmp_path: Path) -> None:
    document = {
        "a": _role(),
        "b": _role(extends="a"),
        "c": _role(extends="b"),
    }
    with pytest.raises(RegistryError):
        validate_role_set(parse_role_set(document))


def test_invalid_file_fails_load(tmp_path: Path) -> None:
    path = tmp_path / "roles.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RegistryError):
        RoleRegistry(path).load()


def test_forbidden_match_ignores_extra_whitespace() -> None:
    assert forbidden_match("Bash( sudo   apt-get install)") == "Bash(sudo"
    assert forbidden_match("Bash(git push --force:*)") == "Bash(git push"
    assert forbidden_match("Bash(git status:*)") is None


def test_forbidden_match_reduces_shell_capability_to_its_command() -> None:
    assert shell_command("Bash(su:*)") == "su"
    assert shell_command("Bash( git   push :*)") == "git push"
    assert shell_command("Read") is None
    assert forbidden_match("Bash(:*)") == "Bash(*"
    assert forbidden_match("Bash()") == "Bash(*"
    assert forbidden_match("Bash(su:*)") == "Bash(su"
    assert forbidden_match("Bash(su root)") == "Bash(su"
    assert forbidden_match("Bash(sum:*)") is None
    assert forbidden_match("Bash(curl:*)") == "Bash(curl"
    assert forbidden_match("Read") is None


def test_add_persists_and_updates_cache(tmp_path: Path) -> None:
    path = tmp_path / "roles.json"
    registry = RoleRegistry(path)
    registry.load()

    definition = RoleDefinition(
        description="expanded",
        capabilities=("Read", "Bash(docker build:*)"),
        max_turns=20,
        max_budget_usd=3.0,
        audit=RoleAudit(
            created_by="proposal:abc", created_at="2025-02-01T00:00:00Z", reason="ok"
        ),
    )
    added = registry.add("worker-eng-1", definition)

    assert added.name == "worker-eng-1"
    assert "worker-eng-1" in registry.names()
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["worker-eng-1"]["capabilities"] == ["Read", "Bash(docker build:*)"]
    assert on_disk["worker-eng-1"]["audit"]["created_by"] == "proposal:abc"
    # Built-in roles are written out alongside the new one.
    assert "worker" in on_disk

    reloaded = RoleRegistry(path)
    assert reloaded.resolve("worker-eng-1").max_turns == 20


def test_add_rejects_existing_name(tmp_path: Path) -> None:
    registry = RoleRegistry(tmp_path / "roles.json")
    registry.load()
    definition = RoleDefinition.from_dict("worker", _role())
    with pytest.raises(RegistryError):
        registry.add("worker", definition)


def test_failed_add_leaves_file_and_cache_untouched(tmp_path: Path) -> None:
    path = _write(tmp_path / "roles.json", {"worker": _role()})
    before = path.read_text(encoding="utf-8")
    registry = RoleRegistry(path)
    registry.load()

    bad = RoleDefinition.from_dict("risky", _role(capabilities=["Bash(rm -rf /)"]))
    with pytest.raises(RegistryError):
        registry.add("risky", bad)

    assert "risky" not in registry.names()
    assert path.read_text(encoding="utf-8") == before
