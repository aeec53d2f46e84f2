"""Confirmation code extraction from message subjects.

Rules are evaluated in priority order and the first match wins. Labeled
patterns ("123456 is your verification code", "OTP: 7841") come before the
generic 4-8 digit fallback, otherwise an unrelated number elsewhere in the
subject would be captured first.

Example:
    matcher = CodeMatcher()
    matcher.extract("482913 is your verification code")  # "482913"
    matcher.extract("Hello there")  # None
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

DEFAULT_FLAGS = re.IGNORECASE | re.ASCII


@dataclass(frozen=True, slots=True)
class CodeRule:
    """A single extraction rule.

    Attributes:
        name: Rule identifier, reported with each match.
        pattern: Compiled regular expression searched in the subject.
        group: Index of the capturing group holding the code.
    """

    name: str
    pattern: re.Pattern[str]
    group: int = 1

    @classmethod
    def compile(cls, name: str, regex: str, group: int = 1, flags: int = DEFAULT_FLAGS) -> CodeRule:
        pattern = re.compile(regex, flags)
        if group > pattern.groups:
            msg = f"Rule {name!r} has no capturing group {group}"
            raise ValueError(msg)
        return cls(name=name, pattern=pattern, group=group)

    def search(self, text: str) -> str | None:
        match = self.pattern.search(text)
        if match is None:
            return None
        return match.group(self.group) or None


@dataclass(frozen=True, slots=True)
class CodeMatch:
    """A code found in a subject and the rule that found it."""

    code: str
    rule: str


# Highest priority first
DEFAULT_CODE_RULES: tuple[CodeRule, ...] = (
    CodeRule.compile(
        "code_is_your_code",
        r"(\d{4,8})\s+is\s+(?:your\s+)?(?:confirmation|verification|security)?\s*code",
    ),
    CodeRule.compile(
        "labeled_code",
        r"(?:code|otp|verification)\s*(?:is|:)\s*(\d{4,8})",
    ),
    CodeRule.compile(
        "typed_code",
        r"(?:confirmation|verification|security)\s*code\s*:?\s*(\d{4,8})",
    ),
    CodeRule.compile(
        "dashed_code",
        r"code\s*:?\s*([A-Z0-9]{3,}-[A-Z0-9]{3,}-[A-Z0-9]{3,})",
    ),
    CodeRule.compile(
        "otp",
        r"otp\s*:?\s*(\d{4,8})",
    ),
    CodeRule.compile(
        "digit_run",
        r"\b(\d{4,8})\b",
    ),
)


class CodeMatcher:
    """Ordered rule set; the first rule that matches decides the code."""

    def __init__(self, rules: Iterable[CodeRule] = DEFAULT_CODE_RULES) -> None:
        self._rules: tuple[CodeRule, ...] = tuple(rules)

    @property
    def rules(self) -> Sequence[CodeRule]:
        return self._rules

    def match(self, subject: str | None) -> CodeMatch | None:
        """Return the first match in priority order, or None."""
        if not subject:
            return None
        for rule in self._rules:
            code = rule.search(subject)
            if code is not None:
                return CodeMatch(code=code, rule=rule.name)
        return None

    def extract(self, subject: str | None) -> str | None:
        """Return the code found in the subject, or None."""
        found = self.match(subject)
        return found.code if found else None

    def has_code(self, subject: str | None) -> bool:
        return self.match(subject) is not None
