"""Allergen label vocabulary and label-set parsing.

Every label that reaches the metrics layer is filtered through the closed
vocabulary defined here, whether it comes from curated ground truth or from
free-form model output.
"""

from __future__ import annotations

import re

LABEL_ORDER: tuple[str, ...] = (
    "milk",
    "egg",
    "peanut",
    "tree nut",
    "wheat",
    "soy",
    "fish",
    "shellfish",
    "sesame",
)

ALL_LABELS: frozenset[str] = frozenset(LABEL_ORDER)

EMPTY_MARKER = "EMPTY"

_EMPTY_TOKENS = {"", "empty", "none"}

_ROLE_TAGS = re.compile(r"(assistant|system|user):", re.IGNORECASE)

_LABEL_PATTERNS = {label: re.compile(rf"\b{re.escape(label)}\b") for label in LABEL_ORDER}


def is_empty_label_text(raw: str | None) -> bool:
    """Return True when the text explicitly states that there are no labels."""
    if raw is None:
        return True
    return raw.strip().lower() in _EMPTY_TOKENS


def parse_labels(raw: str | None) -> frozenset[str]:
    """Parse comma-separated label text into a label set.

    Parsing is case-insensitive and whitespace-tolerant. Tokens outside the
    vocabulary are dropped. Blank text and the literals "empty"/"none" give
    the empty set.

    Args:
        raw: Label text such as ``"Milk, egg"``.

    Returns:
        Frozen set of vocabulary labels.
    """
    if is_empty_label_text(raw):
        return frozenset()
    tokens = (token.strip().lower() for token in raw.split(","))
    return frozenset(token for token in tokens if token in ALL_LABELS)


def format_labels(labels: frozenset[str] | set[str]) -> str:
    """Render a label set in vocabulary order, or ``EMPTY`` when there are none."""
    ordered = [label for label in LABEL_ORDER if label in labels]
    return ", ".join(ordered) if ordered else EMPTY_MARKER


def extract_labels(text: str) -> frozenset[str]:
    """Find vocabulary labels mentioned anywhere in free-form model output.

    Chat role tags are stripped and the text lower-cased before each label is
    matched on word boundaries, so "shellfish" never yields "fish" and "eggs"
    never yields "egg".
    """
    cleaned = _ROLE_TAGS.sub("", text).lower()
    return frozenset(
        label for label, pattern in _LABEL_PATTERNS.items() if pattern.search(cleaned)
    )


def normalize_ground_truth(raw: str | None) -> str:
    """Return the stored form of a ground-truth string (``EMPTY`` for blank values)."""
    if raw is None or not raw.strip() or raw.strip().lower() == "empty":
        return EMPTY_MARKER
    return raw
