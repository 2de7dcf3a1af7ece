"""Linear GraphQL tracker adapter."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Sequence

import httpx

from ...core.exceptions import TrackerError, TransientError
from ...core.logging_utils import log_event
from ...core.retry import retry_transient
from ...tickets.models import BlockingRelation, Ticket

logger = logging.getLogger("ticket_autorunner.integrations.linear")

DEFAULT_API_URL = "https://api.linear.app/graphql"
PAGE_SIZE = 50
DONE_STATE_TYPES = frozenset({"completed", "canceled"})

_IDENTIFIER_RE = re.compile(r"^[A-Z][A-Z0-9]*-\d+$")

TICKET_FIELDS = """
fragment TicketFields on Issue {
  id
  identifier
  title
  description
  url
  state { name type }
  team { id key }
  project { name }
  labels(first: 100) { nodes { id name } }
  comments(first: 100) { nodes { body } }
}
"""

ISSUE_QUERY = (
    TICKET_FIELDS
    + """
query Ticket($id: String!) {
  issue(id: $id) { ...TicketFields }
}
"""
)

ISSUES_QUERY = (
    TICKET_FIELDS
    + """
query Tickets($filter: IssueFilter, $first: Int) {
  issues(filter: $filter, first: $first) { nodes { ...TicketFields } }
}
"""
)

BLOCKERS_QUERY = """
query Blockers($id: String!) {
  issue(id: $id) {
    inverseRelations(first: 250) {
      nodes { type issue { identifier state { name type } } }
    }
  }
}
"""

TEAM_STATES_QUERY = """
query TeamStates($id: String!) {
  team(id: $id) { states { nodes { id name } } }
}
"""

TEAM_LABELS_QUERY = """
query TeamLabels($id: String!) {
  team(id: $id) { labels(first: 250) { nodes { id name } } }
}
"""

TEAM_BY_KEY_QUERY = """
query TeamByKey($key: String!) {
  teams(filter: { key: { eq: $key } }) { nodes { id key } }
}
"""

ISSUE_UPDATE_MUTATION = """
mutation IssueUpdate($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) { success }
}
"""

COMMENT_CREATE_MUTATION = """
mutation CommentCreate($input: CommentCreateInput!) {
  commentCreate(input: $input) { success }
}
"""

ISSUE_CREATE_MUTATION = """
mutation IssueCreate($input: IssueCreateInput!) {
  issueCreate(input: $input) { success issue { identifier } }
}
"""


def _nodes(container: Any) -> list[dict[str, Any]]:
    if not isinstance(container, dict):
        return []
    nodes = container.get("nodes")
    return [n for n in nodes if isinstance(n, dict)] if isinstance(nodes, list) else []


def ticket_from_node(node: dict[str, Any]) -> Ticket:
    team = node.get("team") or {}
    if not team.get("key"):
        raise TrackerError(f"Issue {node.get('identifier')} has no team")
    state = node.get("state") or {}
    project = node.get("project") or {}
    return Ticket(
        id=str(node["id"]),
        identifier=str(node["identifier"]),
        title=str(node.get("title") or ""),
        description=node.get("description"),
        team_key=str(team["key"]),
        team_id=team.get("id"),
        state_name=str(state.get("name") or "Unknown"),
        state_type=state.get("type"),
        project_name=project.get("name"),
        labels=tuple(str(n.get("name")) for n in _nodes(node.get("labels"))),
        comments=tuple(str(n.get("body") or "") for n in _nodes(node.get("comments"))),
        url=str(node.get("url") or ""),
    )


class LinearClient:
    """Implements the tracker port over Linear's GraphQL API."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_url = api_url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {"Authorization": api_key, "Content-Type": "application/json"}
        self._team_ids: dict[str, str] = {}
        self._state_ids: dict[str, dict[str, str]] = {}
        self._label_ids: dict[str, dict[str, str]] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LinearClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    @retry_transient(max_attempts=3, base_wait=0.5, max_wait=8.0)
    async def _post(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._api_url,
                json={"query": query, "variables": variables},
                headers=self._headers,
            )
        except httpx.TransportError as exc:
            raise TransientError(f"Linear request failed: {exc}") from exc
        status = response.status_code
        if status == 429 or 500 <= status < 600:
            raise TransientError(f"Linear API returned HTTP {status}")
        if status >= 400:
            preview = (response.text or "").strip().replace("\n", " ")[:200]
            raise TrackerError(f"Linear API returned HTTP {status}: {preview}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TrackerError("Linear API returned a non-JSON response") from exc
        return payload if isinstance(payload, dict) else {}

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = await self._post(query, variables)
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e)
                for e in errors
            )
            raise TrackerError(f"Linear GraphQL error: {messages}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise TrackerError("Linear GraphQL response has no data")
        return data

    async def _mutate(
        self, mutation: str, variables: dict[str, Any], field: str
    ) -> dict[str, Any]:
        data = await self._graphql(mutation, variables)
        result = data.get(field) or {}
        if not result.get("success"):
            raise TrackerError(f"Linear {field} did not succeed")
        return result

    async def fetch_ticket(self, identifier: str) -> Ticket:
        if not _IDENTIFIER_RE.match(identifier):
            raise TrackerError(
                f"Invalid ticket identifier format: {identifier}. Expected format: TEAM-123"
            )
        data = await self._graphql(ISSUE_QUERY, {"id": identifier})
        node = data.get("issue")
        if not isinstance(node, dict):
            raise TrackerError(f"Ticket not found: {identifier}")
        return ticket_from_node(node)

    async def fetch_tickets(
        self, *, label: str, state: str, project: Optional[str] = None
    ) -> list[Ticket]:
        issue_filter: dict[str, Any] = {
            "labels": {"name": {"eq": label}},
            "state": {"name": {"eq": state}},
        }
        if project:
            issue_filter["project"] = {"name": {"eq": project}}
        data = await self._graphql(
            ISSUES_QUERY, {"filter": issue_filter, "first": PAGE_SIZE}
        )
        return [ticket_from_node(node) for node in _nodes(data.get("issues"))]

    async def fetch_blocking_relations(self, ticket: Ticket) -> list[BlockingRelation]:
        data = await self._graphql(BLOCKERS_QUERY, {"id": ticket.id})
        issue = data.get("issue") or {}
        relations: list[BlockingRelation] = []
        for node in _nodes(issue.get("inverseRelations")):
            if node.get("type") != "blocks":
                continue
            blocker = node.get("issue") or {}
            state = blocker.get("state") or {}
            relations.append(
                BlockingRelation(
                    identifier=str(blocker.get("identifier") or "?"),
                    state_name=str(state.get("name") or "Unknown"),
                    done=state.get("type") in DONE_STATE_TYPES,
                )
            )
        return relations

    async def _team_id(self, ticket: Ticket) -> str:
        if ticket.team_id:
            return ticket.team_id
        cached = self._team_ids.get(ticket.team_key)
        if cached:
            return cached
        data = await self._graphql(TEAM_BY_KEY_QUERY, {"key": ticket.team_key})
        teams = _nodes(data.get("teams"))
        if not teams:
            raise TrackerError(f"Team not found: {ticket.team_key}")
        team_id = str(teams[0]["id"])
        self._team_ids[ticket.team_key] = team_id
        return team_id

    async def _states(self, team_id: str) -> dict[str, str]:
        if team_id not in self._state_ids:
            data = await self._graphql(TEAM_STATES_QUERY, {"id": team_id})
            team = data.get("team") or {}
            self._state_ids[team_id] = {
                str(n["name"]): str(n["id"]) for n in _nodes(team.get("states"))
            }
        return self._state_ids[team_id]

    async def _labels(self, team_id: str) -> dict[str, str]:
        if team_id not in self._label_ids:
            data = await self._graphql(TEAM_LABELS_QUERY, {"id": team_id})
            team = data.get("team") or {}
            self._label_ids[team_id] = {
                str(n["name"]): str(n["id"]) for n in _nodes(team.get("labels"))
            }
        return self._label_ids[team_id]

    async def _label_ids_for(self, ticket: Ticket, names: Sequence[str]) -> list[str]:
        available = await self._labels(await self._team_id(ticket))
        ids: list[str] = []
        for name in names:
            label_id = available.get(name)
            if label_id is None:
                log_event(
                    logger,
                    logging.WARNING,
                    "linear.label_missing",
                    ticket=ticket.identifier,
                    label=name,
                    team=ticket.team_key,
                )
                continue
            if label_id not in ids:
                ids.append(label_id)
        return ids

    async def transition(self, ticket: Ticket, state_name: str) -> None:
        states = await self._states(await self._team_id(ticket))
        state_id = states.get(state_name)
        if state_id is None:
            raise TrackerError(
                f'State "{state_name}" not found in team {ticket.team_key}. '
                f"Available: {', '.join(states)}"
            )
        await self._mutate(
            ISSUE_UPDATE_MUTATION,
            {"id": ticket.id, "input": {"stateId": state_id}},
            "issueUpdate",
        )
        log_event(
            logger,
            logging.INFO,
            "linear.transitioned",
            ticket=ticket.identifier,
            state=state_name,
        )

    async def add_comment(self, ticket: Ticket, body: str) -> None:
        await self._mutate(
            COMMENT_CREATE_MUTATION,
            {"input": {"issueId": ticket.id, "body": body}},
            "commentCreate",
        )

    async def set_labels(self, ticket: Ticket, labels: Sequence[str]) -> None:
        label_ids = await self._label_ids_for(ticket, labels)
        await self._mutate(
            ISSUE_UPDATE_MUTATION,
            {"id": ticket.id, "input": {"labelIds": label_ids}},
            "issueUpdate",
        )

    async def create_child_issue(
        self, parent: Ticket, *, title: str, description: str, labels: Sequence[str]
    ) -> str:
        team_id = await self._team_id(parent)
        label_ids = await self._label_ids_for(parent, labels)
        result = await self._mutate(
            ISSUE_CREATE_MUTATION,
            {
                "input": {
                    "teamId": team_id,
                    "title": title,
                    "description": description,
                    "parentId": parent.id,
                    "labelIds": label_ids,
                }
            },
            "issueCreate",
        )
        issue = result.get("issue") or {}
        return str(issue.get("identifier") or "unknown")

    async def update_description(self, ticket: Ticket, description: str) -> None:
        await self._mutate(
            ISSUE_UPDATE_MUTATION,
            {"id": ticket.id, "input": {"description": description}},
            "issueUpdate",
        )


__all__ = ["DONE_STATE_TYPES", "LinearClient", "ticket_from_node"]
