from __future__ import annotations

import logging

from ticket_autorunner.agents.dispatcher import dispatch, role_label


def test_ticket_without_role_label_gets_default(registry, ticket_factory) -> None:
    result = dispatch(ticket_factory(labels=("agent-ready",)), registry, "worker")
    assert result.role == "worker"
    assert "No role:" in result.reason


def test_role_label_selects_registered_role(registry, ticket_factory) -> None:
    ticket = ticket_factory(labels=("agent-ready", role_label("docs")))
    result = dispatch(ticket, registry, "worker")
    assert result.role == "docs"
    assert 'Matched label "role:docs"' in result.reason


def test_first_role_label_wins(registry, ticket_factory) -> None:
    ticket = ticket_factory(labels=("role:tester", "role:docs"))
    assert dispatch(ticket, registry).role == "tester"


def test_unknown_role_falls_back_with_warning(registry, ticket_factory, caplog) -> None:
    ticket = ticket_factory(labels=("role:astronaut",))
    with caplog.at_level(logging.WARNING, logger="ticket_autorunner.agents.dispatcher"):
        result = dispatch(ticket, registry, "worker")
    assert result.role == "worker"
    assert "astronaut" in result.reason
    assert any("dispatch.unknown_role" in r.getMessage() for r in caplog.records)
