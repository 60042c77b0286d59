"""
Heuristic detection of throttling / blocking responses.

A response is classified as blocked when its status code is in the rule
set's status codes, OR its body contains any rule phrase (case-insensitive).
Rules are data, loaded from the ``[blocking]`` config section, so localized
phrases can be added without code changes.

Advisory only
-------------
A positive verdict triggers an alert; it never aborts the call or alters the
response.  Callers still receive the real status code and body.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_BLOCKING_STATUS_CODES: tuple[int, ...] = (403, 429)

DEFAULT_BLOCKING_PHRASES: tuple[str, ...] = (
    "blocked",
    "captcha",
    "access denied",
    "too many requests",
    "rate limit",
    "заблокирован",
    "доступ запрещен",
)


class BlockingRules(BaseModel):
    """Data-driven blocking rule set.

    Attributes:
        status_codes: HTTP statuses that denote rate limiting or access denial.
        phrases:      Case-insensitive substrings that denote a block page.
    """

    model_config = ConfigDict(frozen=True)

    status_codes: tuple[int, ...] = DEFAULT_BLOCKING_STATUS_CODES
    phrases:      tuple[str, ...] = DEFAULT_BLOCKING_PHRASES

    @field_validator("status_codes")
    @classmethod
    def valid_status_codes(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        for code in v:
            if not 100 <= code <= 599:
                raise ValueError(f"Blocking status code must be in 100..599, got {code}.")
        return v

    @field_validator("phrases")
    @classmethod
    def normalise_phrases(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(p.strip().lower() for p in v if p.strip())


@dataclass(frozen=True)
class BlockingVerdict:
    """Result of classifying one response.

    Attributes:
        blocked:        True if any rule matched.
        reason:         Human-readable description of the first match.
        matched_status: Status code that matched, if any.
        matched_phrase: Phrase that matched, if any.
    """

    blocked:        bool
    reason:         Optional[str] = None
    matched_status: Optional[int] = None
    matched_phrase: Optional[str] = None


class BlockingClassifier:
    """Applies a ``BlockingRules`` set to completed responses."""

    def __init__(self, rules: Optional[BlockingRules] = None) -> None:
        self.rules = rules or BlockingRules()

    def classify(self, status_code: int, body_text: str) -> BlockingVerdict:
        matched_status = status_code if status_code in self.rules.status_codes else None

        lowered = (body_text or "").lower()
        matched_phrase = next((p for p in self.rules.phrases if p in lowered), None)

        if matched_status is None and matched_phrase is None:
            return BlockingVerdict(blocked=False)

        parts = []
        if matched_status is not None:
            parts.append(f"status {matched_status}")
        if matched_phrase is not None:
            parts.append(f"body contains '{matched_phrase}'")

        return BlockingVerdict(
            blocked=True,
            reason="; ".join(parts),
            matched_status=matched_status,
            matched_phrase=matched_phrase,
        )
