"""Rules engine for deterministic email classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailtriage.categories import Category

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = Category.NOT_INTERESTED


@dataclass(frozen=True)
class KeywordRule:
    """Maps any of a set of keywords to a category.

    ``field`` selects the text the keywords are searched in: ``"text"`` is
    the lowercased subject and body joined by a space, ``"subject"`` is the
    lowercased subject alone.
    """

    name: str
    category: Category
    keywords: tuple[str, ...]
    field: str = "text"


@dataclass
class RuleMatch:
    """Result of a rule match."""

    rule_name: str
    category: Category
    keyword: str

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "rule_name": self.rule_name,
            "category": self.category.value,
            "keyword": self.keyword,
        }


class RulesEngine:
    """Ordered keyword rules; the first matching rule decides the category."""

    def __init__(self, rules: list[KeywordRule] | None = None):
        """Initialize with a list of rules (the default rule set if omitted)."""
        self.rules = list(rules) if rules is not None else create_default_rules()

    def classify(self, subject: str, body: str) -> Category:
        """Return the category of the first matching rule, or the default."""
        match = self.evaluate(subject, body)
        return match.category if match else DEFAULT_CATEGORY

    def evaluate(self, subject: str, body: str) -> RuleMatch | None:
        """
        Evaluate rules against an email.
        Returns the first matching rule or None.
        """
        fields = self._fields(subject, body)
        for rule in self.rules:
            match_result = self._evaluate_rule(rule, fields)
            if match_result:
                logger.debug(f"Rule '{rule.name}' matched on '{match_result.keyword}'")
                return match_result

        return None

    def evaluate_all(self, subject: str, body: str) -> list[RuleMatch]:
        """
        Evaluate all rules and return all matches.
        Useful for debugging and understanding why a decision was made.
        """
        fields = self._fields(subject, body)
        matches = []
        for rule in self.rules:
            match_result = self._evaluate_rule(rule, fields)
            if match_result:
                matches.append(match_result)
        return matches

    def _fields(self, subject: str, body: str) -> dict[str, str]:
        subject_lower = (subject or "").lower()
        body_lower = (body or "").lower()
        return {
            "text": f"{subject_lower} {body_lower}",
            "subject": subject_lower,
        }

    def _evaluate_rule(self, rule: KeywordRule, fields: dict[str, str]) -> RuleMatch | None:
        """Evaluate a single rule against the prepared fields."""
        value = fields.get(rule.field)
        if value is None:
            logger.warning(f"Unknown field: {rule.field}")
            return None

        for keyword in rule.keywords:
            if keyword in value:
                return RuleMatch(rule_name=rule.name, category=rule.category, keyword=keyword)
        return None


def create_default_rules() -> list[KeywordRule]:
    """Create the default fallback rules, highest priority first."""
    return [
        KeywordRule(
            name="spam_markers",
            category=Category.SPAM,
            keywords=(
                "unsubscribe", "opt out", "no longer wish", "remove from list",
                "marketing", "promotion", "discount", "sale", "limited time",
            ),
        ),
        KeywordRule(
            name="out_of_office_markers",
            category=Category.OUT_OF_OFFICE,
            keywords=(
                "out of office", "vacation", "away", "unavailable",
                "auto-reply", "automatic reply",
            ),
        ),
        KeywordRule(
            name="meeting_markers",
            category=Category.MEETING_BOOKED,
            keywords=(
                "meeting", "call", "appointment", "schedule", "calendar",
                "zoom", "teams", "google meet", "conference",
            ),
        ),
        KeywordRule(
            name="action_markers",
            category=Category.ACTION_REQUIRED,
            keywords=(
                "action required", "please respond", "reply needed", "urgent",
                "asap", "deadline", "complete", "verify",
            ),
        ),
        KeywordRule(
            name="business_interest_markers",
            category=Category.INTERESTED,
            keywords=(
                "proposal", "opportunity", "collaboration", "partnership",
                "business", "work", "project", "job", "interview",
            ),
        ),
        KeywordRule(
            name="automated_markers",
            category=Category.NOT_INTERESTED,
            keywords=(
                "newsletter", "update", "notification", "system", "automated",
                "no-reply", "noreply",
            ),
        ),
        # Only "important" can still match here; the others are caught above.
        KeywordRule(
            name="urgent_subject",
            category=Category.ACTION_REQUIRED,
            keywords=("important", "urgent", "asap"),
            field="subject",
        ),
    ]
