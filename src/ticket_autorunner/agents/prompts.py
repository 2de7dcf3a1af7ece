from __future__ import annotations

from typing import Optional

from ..core.config import ProjectConfig
from ..tickets.models import Ticket

WORKER_PROMPT_TEMPLATE = """You are implementing a Linear ticket. Follow the instructions precisely.

## Ticket

**{identifier}: {title}**

Description:
{description}

Comments:
{comments}

Linear URL: {url}

## Instructions

1. Read the codebase to understand the project structure, conventions, and patterns.
2. Implement the changes described in the ticket above.
3. Follow existing code style and conventions exactly.
4. Write tests if the project has a test suite and the change is testable.
5. Run the test suite to verify your changes: `{test_command}`
6. Run the linter to ensure code quality: `{lint_command}`
{build_step}{commit_step}. Commit your changes with a clear commit message referencing {identifier}.
   Format: `{identifier}: <description of changes>`

## Rules

- Do NOT run git push. The runner handles that.
- Do NOT modify CI/CD config, deployment files, or package manager lockfiles unless the ticket specifically asks for it.
- Do NOT add dependencies unless the ticket requires it.
- Keep changes minimal and focused on the ticket requirements.
- If the ticket is ambiguous, implement the most reasonable interpretation.
- If you cannot complete the task, commit what you have and explain what's blocking in a comment at the top of your output.
"""

RETRY_PREAMBLE = """## Previous Attempt Failed

Attempt {attempt} did not pass. Fix these problems in this attempt:

```
{errors}
```

"""

REVIEW_PROMPT_TEMPLATE = """You are reviewing a pull request. Be thorough but fair.

## PR Details

PR URL: {pr_url}
{ticket_line}
## Review Process

1. Run `gh pr diff {pr_url}` to see the diff.
2. Run `gh pr view {pr_url}` for PR details.
3. Read any modified files for full context.
4. Run tests: `{test_command}`
5. Run linter: `{lint_command}`
{build_step}
## Output Format

Output ONLY a JSON object:

{{
  "approved": true | false,
  "summary": "One-paragraph summary.",
  "issues": [
    {{ "severity": "critical|major|minor|nit", "file": "path", "description": "..." }}
  ],
  "tests_pass": true | false,
  "lint_pass": true | false,
  "build_pass": true | false
}}

Approve if: tests pass, lint passes, no critical issues, at most 2 major issues.
"""

PRIOR_ERROR_LIMIT = 4000


def build_worker_prompt(
    ticket: Ticket,
    project: ProjectConfig,
    *,
    previous_error: Optional[str] = None,
    attempt: int = 1,
) -> str:
    comments = (
        "\n\n".join(
            f"Comment {index}:\n{body}" for index, body in enumerate(ticket.comments, 1)
        )
        if ticket.comments
        else "No comments."
    )
    if project.build_command:
        build_step = f"7. Run the build to verify compilation: `{project.build_command}`\n"
        commit_step = "8"
    else:
        build_step = ""
        commit_step = "7"
    prompt = WORKER_PROMPT_TEMPLATE.format(
        identifier=ticket.identifier,
        title=ticket.title,
        description=ticket.description or "No description provided.",
        comments=comments,
        url=ticket.url or "n/a",
        test_command=project.test_command,
        lint_command=project.lint_command,
        build_step=build_step,
        commit_step=commit_step,
    )
    if previous_error and attempt > 1:
        prompt = (
            RETRY_PREAMBLE.format(
                attempt=attempt - 1, errors=previous_error[:PRIOR_ERROR_LIMIT]
            )
            + prompt
        )
    return prompt


def build_review_prompt(
    pr_url: str, project: ProjectConfig, *, ticket: Optional[Ticket] = None
) -> str:
    ticket_line = (
        f"Ticket: {ticket.identifier}: {ticket.title}\n" if ticket is not None else ""
    )
    build_step = (
        f"6. Run build: `{project.build_command}`\n" if project.build_command else ""
    )
    return REVIEW_PROMPT_TEMPLATE.format(
        pr_url=pr_url,
        ticket_line=ticket_line,
        test_command=project.test_command,
        lint_command=project.lint_command,
        build_step=build_step,
    )


__all__ = ["build_review_prompt", "build_worker_prompt"]
