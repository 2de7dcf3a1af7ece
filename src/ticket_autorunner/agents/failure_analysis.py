"""Classify a failed agent run from its transcript.

Rules are applied in priority order over ``stdout + "\\n" + stderr``.
Structured denial messages are collected exhaustively; every other rule
short-circuits.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

KNOWN_TOOLS = frozenset({"Read", "Write", "Edit", "Grep", "Glob", "Bash"})


class FailureCategory(str, Enum):
    CAPABILITY_DENIED = "capability_denied"
    BUDGET_EXHAUSTED = "budget_exhausted"
    TIMED_OUT = "timed_out"
    IMPLEMENTATION_ERROR = "implementation_error"


@dataclass(frozen=True)
class FailureAnalysis:
    category: FailureCategory
    missing_capabilities: tuple[str, ...] = ()
    suggested_capabilities: tuple[str, ...] = ()
    confidence: float = 0.3

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "missing_capabilities": list(self.missing_capabilities),
            "suggested_capabilities": list(self.suggested_capabilities),
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureAnalysis":
        return cls(
            category=FailureCategory(data.get("category", "implementation_error")),
            missing_capabilities=tuple(data.get("missing_capabilities") or ()),
            suggested_capabilities=tuple(data.get("suggested_capabilities") or ()),
            confidence=float(data.get("confidence", 0.3)),
        )


@dataclass(frozen=True)
class _DenialRule:
    pattern: re.Pattern[str]
    template: str = "{0}"


_STRUCTURED_DENIALS: tuple[_DenialRule, ...] = (
    _DenialRule(
        re.compile(r'(?:tool|operation)\s+"([^"]+)"\s+is\s+not\s+allowed', re.I)
    ),
    _DenialRule(
        re.compile(r"Bash\(([^)]+)\)\s*(?:is\s+)?not\s+allowed", re.I), "Bash({0})"
    ),
)

_GENERIC_DENIAL = re.compile(
    r"not in the list of allowed tools|permission[_\s]denied|access[_\s]denied"
    r"|\bdenied\b|not\s+allowed|not\s+permitted",
    re.I,
)

_BUDGET = re.compile(
    r"max budget exceeded|budget[_\s]exhausted|spending limit"
    r"|error_max_turns|error_max_budget",
    re.I,
)

# Word boundaries keep config keys such as "request_timeout_ms" or
# "timeoutSeconds" from reading as a timeout.
_TIMEOUT = re.compile(r"\btimed out\b|\bSIGTERM\b|\bETIMEDOUT\b|\btimeout\b", re.I)


def normalize_capability(name: str) -> str:
    """Turn a denied operation into a capability pattern.

    ``npm test`` becomes ``Bash(npm test:*)``; tool names and ``Bash(...)``
    forms pass through unchanged.
    """
    text = name.strip()
    if text.startswith("Bash(") or text in KNOWN_TOOLS:
        return text
    return f"Bash({text}:*)"


def _structured_denials(text: str) -> list[str]:
    found: list[str] = []
    seen: set[str] = set()
    for rule in _STRUCTURED_DENIALS:
        for match in rule.pattern.finditer(text):
            capability = rule.template.format(match.group(1).strip())
            if capability and capability not in seen:
                seen.add(capability)
                found.append(capability)
    return found


def analyze_failure(stdout: Optional[str], stderr: Optional[str]) -> FailureAnalysis:
    combined = f"{stdout or ''}\n{stderr or ''}"

    missing = _structured_denials(combined)
    if missing:
        suggested: list[str] = []
        for capability in missing:
            normalized = normalize_capability(capability)
            if normalized not in suggested:
                suggested.append(normalized)
        return FailureAnalysis(
            category=FailureCategory.CAPABILITY_DENIED,
            missing_capabilities=tuple(missing),
            suggested_capabilities=tuple(suggested),
            confidence=0.9,
        )

    if _GENERIC_DENIAL.search(combined):
        return FailureAnalysis(category=FailureCategory.CAPABILITY_DENIED, confidence=0.5)

    if _BUDGET.search(combined):
        return FailureAnalysis(category=FailureCategory.BUDGET_EXHAUSTED, confidence=0.8)

    if _TIMEOUT.search(combined):
        return FailureAnalysis(category=FailureCategory.TIMED_OUT, confidence=0.8)

    return FailureAnalysis(category=FailureCategory.IMPLEMENTATION_ERROR, confidence=0.3)


__all__ = [
    "FailureAnalysis",
    "FailureCategory",
    "analyze_failure",
    "normalize_capability",
]
