"""
Keyword-frequency categorization of conversation batches.

Not language understanding: each category is scored by counting
(overlapping, case-insensitive) substring hits of its keywords in the
batch text. The best category above a minimum score is written back as
a "category:<name>" tag on every message in the batch.
"""

import logging
from typing import Mapping, Optional, Protocol, Sequence

from .store import StoreError
from .types import CATEGORY_TAG_PREFIX, Message

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 2

# Order matters: ties go to the earlier category
DEFAULT_CATEGORIES: dict[str, list[str]] = {
    "technical": [
        "code", "programming", "bug", "error", "function", "class", "method",
        "variable", "implementation", "golang", "c++", "postgres", "uuid",
    ],
    "planning": [
        "plan", "schedule", "timeline", "milestone", "project", "task",
        "todo", "implement", "feature", "requirement", "design",
    ],
    "question": [
        "how", "what", "why", "when", "where", "who", "which", "?",
        "explain", "help", "understand",
    ],
    "feedback": [
        "review", "feedback", "improve", "suggestion", "opinion", "think", "feel",
    ],
}


class TagWriter(Protocol):
    """Anything that can append a tag to a set of messages."""

    def tag_messages(self, ids: list[str], tag: str) -> int: ...


def count_occurrences(text: str, keyword: str) -> int:
    """Occurrences of keyword in text, overlapping matches included."""
    if not keyword:
        return 0
    count = 0
    start = text.find(keyword)
    while start != -1:
        count += 1
        start = text.find(keyword, start + 1)
    return count


def merge_categories(
    overrides: Optional[Mapping[str, list[str]]] = None,
) -> dict[str, list[str]]:
    """Default table with configured categories replacing or extending it."""
    categories = {name: list(words) for name, words in DEFAULT_CATEGORIES.items()}
    for name, words in (overrides or {}).items():
        categories[name] = [w.lower() for w in words if w]
    return categories


class Categorizer:
    """Scores message batches and writes the winning category tag."""

    def __init__(
        self,
        writer: TagWriter,
        categories: Optional[Mapping[str, list[str]]] = None,
        min_score: int = DEFAULT_MIN_SCORE,
    ):
        self._writer = writer
        self.categories = {
            name: [w.lower() for w in words]
            for name, words in (categories or DEFAULT_CATEGORIES).items()
        }
        self.min_score = min_score

    @staticmethod
    def batch_text(batch: Sequence[Message]) -> str:
        return "".join(f"{m.role}: {m.content}\n" for m in batch).lower()

    def scores(self, batch: Sequence[Message]) -> dict[str, int]:
        text = self.batch_text(batch)
        return {
            name: sum(count_occurrences(text, word) for word in words)
            for name, words in self.categories.items()
        }

    def choose(self, batch: Sequence[Message]) -> Optional[str]:
        """Highest-scoring category, or None if nothing reaches min_score."""
        best_name = None
        best_score = 0
        for name, score in self.scores(batch).items():
            if score > best_score:
                best_name, best_score = name, score
        if best_name is None or best_score < self.min_score:
            return None
        return best_name

    def categorize(self, batch: Sequence[Message]) -> Optional[str]:
        """
        Choose a category for the batch and tag every message with it.

        Returns the category name, or None when no category qualified.
        A failed tag write is logged and not retried; the category is
        still returned since the decision was made.
        """
        if not batch:
            return None
        category = self.choose(batch)
        if category is None:
            logger.debug("No category for batch of %d messages", len(batch))
            return None
        tag = f"{CATEGORY_TAG_PREFIX}{category}"
        ids = [m.id for m in batch]
        try:
            self._writer.tag_messages(ids, tag)
            logger.info("Categorized batch of %d messages as %s", len(ids), category)
        except StoreError as e:
            logger.warning("Failed to write %s to %d messages: %s", tag, len(ids), e)
        return category
