"""Global + per-group stop-word filtering.

A post is dropped before it is persisted or counted when its lower-cased text
contains any stop word as a substring.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from feedrank.storage.repository import (
    STOP_WORDS_KEY,
    get_active_groups_for_source,
    get_setting,
    set_setting,
)

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[,\s]+")


def normalize_words(raw: Any) -> list[str]:
    """Accept a list of words or a comma/whitespace separated string."""
    if raw is None:
        return []
    if isinstance(raw, str):
        candidates: Iterable[Any] = _SPLIT_RE.split(raw)
    elif isinstance(raw, (list, tuple, set)):
        candidates = raw
    else:
        logger.warning("Ignoring stop words of unexpected type %s", type(raw).__name__)
        return []

    words: list[str] = []
    seen: set[str] = set()
    for word in candidates:
        if not isinstance(word, str):
            continue
        word = word.strip().lower()
        if word and word not in seen:
            seen.add(word)
            words.append(word)
    return words


def combine(global_words: Any, group_words: Iterable[Any]) -> frozenset[str]:
    combined = set(normalize_words(global_words))
    for words in group_words:
        combined.update(normalize_words(words))
    return frozenset(combined)


def matches(text: str | None, stop_words: frozenset[str] | set[str]) -> str | None:
    """Return the first stop word found in `text`, or None."""
    if not text or not stop_words:
        return None
    lowered = text.lower()
    for word in stop_words:
        if word in lowered:
            return word
    return None


async def get_global_stop_words(session: AsyncSession) -> list[str]:
    return normalize_words(await get_setting(session, STOP_WORDS_KEY))


async def set_global_stop_words(session: AsyncSession, words: Any) -> list[str]:
    normalized = normalize_words(words)
    await set_setting(session, STOP_WORDS_KEY, normalized)
    return normalized


async def load_stop_words(session: AsyncSession, source_id: int) -> frozenset[str]:
    """Global words plus the words of every active group containing the source."""
    global_words = await get_setting(session, STOP_WORDS_KEY)
    groups = await get_active_groups_for_source(session, source_id)
    return combine(global_words, (g.stop_words for g in groups))
