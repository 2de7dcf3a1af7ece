from __future__ import annotations

import json

import httpx
import pytest

from ticket_autorunner.core.exceptions import TrackerError, TransientError
from ticket_autorunner.integrations.linear.client import LinearClient

ISSUE_NODE = {
    "id": "uuid-1",
    "identifier": "ENG-1",
    "title": "Add login",
    "description": "Users need to log in.",
    "url": "https://linear.app/acme/issue/ENG-1",
    "state": {"name": "Todo", "type": "unstarted"},
    "team": {"id": "team-1", "key": "ENG"},
    "project": {"name": "web"},
    "labels": {"nodes": [{"id": "l1", "name": "agent-ready"}]},
    "comments": {"nodes": [{"body": "first"}]},
}


class GraphQLStub:
    """Answers each request by the GraphQL operation name it carries."""

    def __init__(self, responses) -> None:
        self.responses = responses
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        for marker, response in self.responses.items():
            if marker in body["query"]:
                if callable(response):
                    return response(body)
                return httpx.Response(200, json=response)
        return httpx.Response(200, json={"errors": [{"message": "unexpected query"}]})

    def variables_for(self, marker: str) -> list[dict]:
        return [r["variables"] for r in self.requests if marker in r["query"]]


def _client(stub: GraphQLStub) -> LinearClient:
    transport = httpx.MockTransport(stub)
    return LinearClient(
        "lin_api_test", client=httpx.AsyncClient(transport=transport)
    )


@pytest.mark.asyncio
async def test_fetch_ticket_maps_issue_fields() -> None:
    stub = GraphQLStub({"query Ticket(": {"data": {"issue": ISSUE_NODE}}})
    async with _client(stub) as client:
        ticket = await client.fetch_ticket("ENG-1")

    assert ticket.id == "uuid-1"
    assert ticket.team_key == "ENG" and ticket.team_id == "team-1"
    assert ticket.state_name == "Todo"
    assert ticket.project_name == "web"
    assert ticket.labels == ("agent-ready",)
    assert ticket.comments == ("first",)
    assert stub.variables_for("query Ticket(") == [{"id": "ENG-1"}]


@pytest.mark.asyncio
@pytest.mark.parametrize("identifier", ["eng-1", "ENG", "ENG-", "1-ENG", "ENG-1 "])
async def test_invalid_identifier_never_hits_the_api(identifier: str) -> None:
    stub = GraphQLStub({})
    async with _client(stub) as client:
        with pytest.raises(TrackerError, match="Invalid ticket identifier"):
            await client.fetch_ticket(identifier)
    assert stub.requests == []


@pytest.mark.asyncio
async def test_missing_issue_and_graphql_errors_raise() -> None:
    stub = GraphQLStub(
        {
            "query Ticket(": {"data": {"issue": None}},
            "query Tickets(": {"errors": [{"message": "Bad filter"}]},
        }
    )
    async with _client(stub) as client:
        with pytest.raises(TrackerError, match="not found"):
            await client.fetch_ticket("ENG-2")
        with pytest.raises(TrackerError, match="Bad filter"):
            await client.fetch_tickets(label="agent-ready", state="Todo")


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_raised() -> None:
    stub = GraphQLStub({"query Ticket(": lambda body: httpx.Response(503)})
    async with _client(stub) as client:
        with pytest.raises(TransientError):
            await client.fetch_ticket("ENG-1")
    assert len(stub.requests) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    stub = GraphQLStub(
        {"query Ticket(": lambda body: httpx.Response(401, text="bad key")}
    )
    async with _client(stub) as client:
        with pytest.raises(TrackerError, match="401"):
            await client.fetch_ticket("ENG-1")
    assert len(stub.requests) == 1


@pytest.mark.asyncio
async def test_fetch_tickets_filters_by_label_state_and_project() -> None:
    stub = GraphQLStub(
        {"query Tickets(": {"data": {"issues": {"nodes": [ISSUE_NODE]}}}}
    )
    async with _client(stub) as client:
        tickets = await client.fetch_tickets(
            label="agent-ready", state="Todo", project="web"
        )

    assert [t.identifier for t in tickets] == ["ENG-1"]
    [variables] = stub.variables_for("query Tickets(")
    assert variables["filter"] == {
        "labels": {"name": {"eq": "agent-ready"}},
        "state": {"name": {"eq": "Todo"}},
        "project": {"name": {"eq": "web"}},
    }


def _relation(kind: str, identifier: str, state: str, state_type: str) -> dict:
    return {
        "type": kind,
        "issue": {"identifier": identifier, "state": {"name": state, "type": state_type}},
    }


@pytest.mark.asyncio
async def test_blocking_relations_only_count_blocks(ticket_factory) -> None:
    relations = {
        "nodes": [
            _relation("blocks", "ENG-0", "Done", "completed"),
            _relation("blocks", "ENG-5", "Doing", "started"),
            _relation("related", "ENG-6", "Todo", "unstarted"),
        ]
    }
    stub = GraphQLStub(
        {"query Blockers(": {"data": {"issue": {"inverseRelations": relations}}}}
    )
    async with _client(stub) as client:
        found = await client.fetch_blocking_relations(ticket_factory("ENG-1"))

    assert [(r.identifier, r.done) for r in found] == [
        ("ENG-0", True),
        ("ENG-5", False),
    ]


@pytest.mark.asyncio
async def test_transition_resolves_state_name_once(ticket_factory) -> None:
    stub = GraphQLStub(
        {
            "query TeamStates(": {
                "data": {
                    "team": {
                        "states": {
                            "nodes": [
                                {"id": "s-todo", "name": "Todo"},
                                {"id": "s-prog", "name": "In Progress"},
                            ]
                        }
                    }
                }
            },
            "mutation IssueUpdate(": {"data": {"issueUpdate": {"success": True}}},
        }
    )
    ticket = ticket_factory("ENG-1")
    async with _client(stub) as client:
        await client.transition(ticket, "In Progress")
        await client.transition(ticket, "Todo")
        with pytest.raises(TrackerError, match="Available: Todo, In Progress"):
            await client.transition(ticket, "Shipped")

    assert len(stub.variables_for("query TeamStates(")) == 1
    updates = stub.variables_for("mutation IssueUpdate(")
    assert [u["input"] for u in updates] == [
        {"stateId": "s-prog"},
        {"stateId": "s-todo"},
    ]


@pytest.mark.asyncio
async def test_set_labels_skips_unknown_names(ticket_factory) -> None:
    stub = GraphQLStub(
        {
            "query TeamLabels(": {
                "data": {
                    "team": {
                        "labels": {
                            "nodes": [
                                {"id": "l-ready", "name": "agent-ready"},
                                {"id": "l-park", "name": "needs-human-approval"},
                            ]
                        }
                    }
                }
            },
            "mutation IssueUpdate(": {"data": {"issueUpdate": {"success": True}}},
        }
    )
    async with _client(stub) as client:
        await client.set_labels(
            ticket_factory("ENG-1"), ["needs-human-approval", "no-such-label"]
        )

    [update] = stub.variables_for("mutation IssueUpdate(")
    assert update["input"] == {"labelIds": ["l-park"]}


@pytest.mark.asyncio
async def test_unsuccessful_mutation_raises(ticket_factory) -> None:
    stub = GraphQLStub(
        {"mutation CommentCreate(": {"data": {"commentCreate": {"success": False}}}}
    )
    async with _client(stub) as client:
        with pytest.raises(TrackerError, match="commentCreate"):
            await client.add_comment(ticket_factory("ENG-1"), "hello")


@pytest.mark.asyncio
async def test_create_child_issue_returns_identifier(ticket_factory) -> None:
    labels = {"nodes": [{"id": "l1", "name": "agent-ready"}]}
    created = {"success": True, "issue": {"identifier": "ENG-42"}}
    stub = GraphQLStub(
        {
            "query TeamLabels(": {"data": {"team": {"labels": labels}}},
            "mutation IssueCreate(": {"data": {"issueCreate": created}},
        }
    )
    parent = ticket_factory("ENG-1")
    async with _client(stub) as client:
        child = await client.create_child_issue(
            parent,
            title="Fix review feedback: ENG-1",
            description="d",
            labels=["agent-ready"],
        )

    assert child == "ENG-42"
    [variables] = stub.variables_for("mutation IssueCreate(")
    assert variables["input"]["parentId"] == parent.id
    assert variables["input"]["teamId"] == "team-1"
    assert variables["input"]["labelIds"] == ["l1"]
