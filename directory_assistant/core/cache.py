"""
Response cache.

Short-lived memo of normalized question -> answer shared by every session.
A hit skips context building and the model call entirely.
"""

import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Sequence, Tuple

CACHE_TTL_SECONDS = 30 * 60
KEY_PREFIX_LENGTH = 50

_NON_ALNUM_RE = re.compile(r"[\W_]+", re.UNICODE)


def normalize_question(question: str) -> str:
    """Cache key for a question.

    Lowercased, trimmed, non-alphanumeric characters dropped (accented
    letters are kept), whitespace collapsed, cut to a fixed prefix.
    """
    words = _NON_ALNUM_RE.sub(" ", question.lower().strip()).split()
    return " ".join(words)[:KEY_PREFIX_LENGTH].rstrip()


@dataclass(frozen=True)
class CacheEntry:
    """A cached answer and, for searches, the providers it was drawn from."""
    answer: str
    created_at: float
    service_type: Optional[str] = None
    candidates: Tuple[str, ...] = ()


class ResponseCache:
    """In-process answer cache with a fixed TTL.

    Concurrent writers to the same key resolve last-write-wins.
    """

    def __init__(self, ttl_seconds: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

    def lookup_entry(self, question: str) -> Optional[CacheEntry]:
        """Return the cached entry, or None on a miss or an expired entry."""
        key = normalize_question(question)
        if not key:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self.clock() - entry.created_at >= self.ttl_seconds:
                self._entries.pop(key, None)
                return None
            return entry

    def lookup(self, question: str) -> Optional[str]:
        entry = self.lookup_entry(question)
        return entry.answer if entry is not None else None

    def store(
        self,
        question: str,
        answer: str,
        service_type: Optional[str] = None,
        candidates: Sequence[str] = ()
    ) -> None:
        key = normalize_question(question)
        if not key:
            return
        with self._lock:
            self._entries[key] = CacheEntry(
                answer=answer,
                created_at=self.clock(),
                service_type=service_type,
                candidates=tuple(candidates)
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
