"""
Comment sanitization against self-identification and stylometric leakage.

Free-text comments run through an ordered set of rules:
1. REJECT rules - patterns that identify the author (student ids, email
   addresses, phone numbers, self-introductions). Any match refuses the
   comment with that rule's message.
2. STRIP rules - normalizations that remove writing-style fingerprints
   (runs of punctuation, irregular whitespace).
3. Length limit on the normalized text.

Each rule is independently testable; evaluate() reports every rule that
fired so audits can see exactly why a comment was changed or refused.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from core.config import settings


class RuleAction(str, Enum):
    """What a rule does when its pattern matches."""

    REJECT = "reject"
    STRIP = "strip"


@dataclass(frozen=True)
class CommentRule:
    """A single named pattern with its action."""

    name: str
    pattern: re.Pattern
    action: RuleAction
    message: str = ""
    replacement: str = ""


class SanitizationVerdict(BaseModel):
    """Structured result of running every rule over a comment."""

    valid: bool
    sanitized: Optional[str] = None
    error: Optional[str] = None
    matched_rules: list[str] = Field(default_factory=list)


# =============================================================================
# Rules
# =============================================================================

REJECT_RULES: tuple[CommentRule, ...] = (
    CommentRule(
        name="student_id",
        pattern=re.compile(r"\b\d{2,4}[-\s]\d{4,5}[-\s]\d{3,5}\b"),
        action=RuleAction.REJECT,
        message="Comments cannot contain student ID numbers",
    ),
    CommentRule(
        name="email",
        pattern=re.compile(r"(?:[A-Za-z0-9._%+-]+)?@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}"),
        action=RuleAction.REJECT,
        message="Comments cannot contain email addresses",
    ),
    CommentRule(
        name="phone",
        pattern=re.compile(r"\b\d{3}[-\s.]?\d{3}[-\s.]?\d{4}\b"),
        action=RuleAction.REJECT,
        message="Comments cannot contain phone numbers",
    ),
    CommentRule(
        name="self_identification",
        # Name detection relies on capitalization, so only the phrase parts
        # are case-insensitive.
        pattern=re.compile(
            r"(?i:\bmy student (?:number|id)\b|\bstudent number\s*:|\bemail\s*:)"
            r"|\b(?:I am|[Tt]his is)\s+[A-Z][a-z]+\s+[A-Z][a-z]+\b"
        ),
        action=RuleAction.REJECT,
        message="Comments cannot contain self-identifying information",
    ),
)

STRIP_RULES: tuple[CommentRule, ...] = (
    CommentRule(
        name="repeated_exclamation",
        pattern=re.compile(r"!{2,}"),
        action=RuleAction.STRIP,
        replacement="!",
    ),
    CommentRule(
        name="repeated_question",
        pattern=re.compile(r"\?{2,}"),
        action=RuleAction.STRIP,
        replacement="?",
    ),
    CommentRule(
        name="repeated_period",
        pattern=re.compile(r"\.{4,}"),
        action=RuleAction.STRIP,
        replacement="...",
    ),
    CommentRule(
        name="whitespace",
        pattern=re.compile(r"\s{2,}|[\t\r\n\f\v]"),
        action=RuleAction.STRIP,
        replacement=" ",
    ),
)

COMMENT_RULES: tuple[CommentRule, ...] = REJECT_RULES + STRIP_RULES


# =============================================================================
# Sanitizer
# =============================================================================


class CommentSanitizer:
    """Runs COMMENT_RULES in order and applies the length limit."""

    def __init__(self, max_length: Optional[int] = None, rules: tuple[CommentRule, ...] = COMMENT_RULES):
        self.max_length = max_length if max_length is not None else settings.COMMENT_MAX_LENGTH
        self.rules = rules

    def find_identity_patterns(self, text: str) -> list[str]:
        """Names of the REJECT rules matching the text."""
        return [
            rule.name
            for rule in self.rules
            if rule.action == RuleAction.REJECT and rule.pattern.search(text)
        ]

    def evaluate(self, text: Optional[str]) -> SanitizationVerdict:
        if not text:
            return SanitizationVerdict(valid=True, sanitized="")

        matched: list[str] = []
        sanitized = text
        for rule in self.rules:
            if rule.action == RuleAction.REJECT:
                if rule.pattern.search(text):
                    return SanitizationVerdict(valid=False, error=rule.message, matched_rules=[rule.name])
                continue

            sanitized, replaced = rule.pattern.subn(rule.replacement, sanitized)
            if replaced:
                matched.append(rule.name)

        sanitized = sanitized.strip()
        if len(sanitized) > self.max_length:
            return SanitizationVerdict(
                valid=False,
                error=f"Comments must not exceed {self.max_length} characters",
                matched_rules=matched,
            )

        return SanitizationVerdict(valid=True, sanitized=sanitized, matched_rules=matched)


def evaluate(text: Optional[str], max_length: Optional[int] = None) -> SanitizationVerdict:
    """Evaluate a comment with the default rule set."""
    return CommentSanitizer(max_length=max_length).evaluate(text)
