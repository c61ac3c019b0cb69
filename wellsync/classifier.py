from __future__ import annotations

import re

from wellsync.models import EventRecord


MANAGED_MARKER = "[MANAGED]"

# Order matters: the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("fitness", ("workout", "gym", "run", "fitness", "exercise")),
    ("mental", ("meditation", "therapy", "mindfulness", "mental")),
    ("nutrition", ("meal", "lunch", "dinner", "breakfast", "nutrition")),
    ("medical", ("doctor", "appointment", "medical", "checkup")),
    ("work", ("work", "meeting", "conference", "project")),
)
FALLBACK_CATEGORY = "personal"

_MARKER_LINE_PATTERN = re.compile(r"\n?\[MANAGED\] - (?:Created|Updated) by [^\n]*")


def classify(title: str | None, description: str | None) -> str:
    text = f"{title or ''} {description or ''}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return FALLBACK_CATEGORY


def is_managed(description: str | None) -> bool:
    return MANAGED_MARKER in (description or "")


def classify_event(event: EventRecord) -> EventRecord:
    return event.with_updates(
        category=classify(event.title, event.description),
        is_managed=is_managed(event.description),
    )


def strip_managed_marker(description: str | None) -> str:
    return _MARKER_LINE_PATTERN.sub("", description or "")


def stamp_managed_marker(description: str | None, app_name: str, *, updated: bool = False) -> str:
    """Return ``description`` with exactly one trailing managed-marker line.

    A marker line left by an earlier create or update is removed first, so
    repeated updates keep a single line.
    """
    verb = "Updated" if updated else "Created"
    base = strip_managed_marker(description)
    return f"{base}\n{MANAGED_MARKER} - {verb} by {app_name}"
