"""The closed set of email categories."""

from __future__ import annotations

from enum import Enum


class Category(str, Enum):
    """Label assigned to every processed email."""

    INTERESTED = "Interested"
    ACTION_REQUIRED = "Action Required"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_label(cls, label: str | None) -> Category | None:
        """Resolve a label to a category.

        Matching ignores surrounding whitespace and case, so the legacy
        "Action required" spelling resolves to ACTION_REQUIRED. Anything
        else returns None.
        """
        if not label:
            return None
        wanted = label.strip().casefold()
        for category in cls:
            if category.value.casefold() == wanted:
                return category
        return None


HIGH_VALUE_CATEGORY = Category.INTERESTED
