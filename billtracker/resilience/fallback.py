"""Last-known-good fallback payloads.

Provides:
- A store of the latest successful payload per operation key (24h lifetime)
- Stale tagging for payloads served from the store
- Degraded placeholder payloads when nothing usable was ever stored
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

FALLBACK_TTL = 24 * 60 * 60  # 24 hours
DEFAULT_STALE_MESSAGE = "This data may be outdated due to service issues"


@dataclass
class FallbackEntry:
    """A stored fallback payload."""

    key: str
    payload: Any
    stored_at: float


class FallbackStore:
    """Keeps the most recent successful payload for each operation key.

    Only consulted after the circuit breaker and retry manager have both failed.
    Callers must tag anything served from here as stale.
    """

    def __init__(self, ttl: float = FALLBACK_TTL, clock: Callable[[], float] = time.time):
        """Initialize fallback store.

        Args:
            ttl: Seconds a payload stays usable
            clock: Time source in seconds
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, FallbackEntry] = {}

    def set_fallback(self, key: str, payload: Any) -> None:
        """Store a payload, overwriting any previous one for the key."""
        self._entries[key] = FallbackEntry(key=key, payload=payload, stored_at=self._clock())

    def get_fallback(self, key: str) -> Optional[Any]:
        """Get a payload if it is younger than the store's TTL.

        Expired entries are purged on read.

        Args:
            key: Operation key

        Returns:
            Stored payload or None
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() - entry.stored_at >= self.ttl:
            del self._entries[key]
            logger.debug(f"Fallback for {key} expired")
            return None

        return entry.payload

    def purge_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_fallback(key) is not None


def mark_stale(payload: Any, message: str = DEFAULT_STALE_MESSAGE) -> Any:
    """Tag a fallback payload as stale without mutating the stored copy.

    Strings get a bracketed note appended, dicts get ``is_stale`` and
    ``fallback_message`` keys, lists are tagged item by item.
    """
    if isinstance(payload, str):
        return f"{payload} [Note: {message}]"
    if isinstance(payload, dict):
        return {**payload, "is_stale": True, "fallback_message": message}
    if isinstance(payload, list):
        return [mark_stale(item, message) for item in payload]
    return payload


# =============================================================================
# Degraded payloads
# =============================================================================


def generate_fallback_bills() -> list[dict[str, Any]]:
    """Placeholder bill list shown while the bill source is unavailable."""
    now = datetime.now(timezone.utc).isoformat()
    return [
        {
            "id": "fallback-1",
            "billNumber": "SB 1",
            "shortTitle": "Sample Bill - Service Temporarily Unavailable",
            "fullTitle": "A sample bill displayed while the bill tracking service is temporarily unavailable",
            "status": "Filed",
            "sponsors": [{"name": "System", "photoUrl": "", "district": ""}],
            "officialUrl": "#",
            "billText": "Bill text is temporarily unavailable due to service issues.",
            "abstract": (
                "This is a placeholder bill shown when the main service is unavailable. "
                "Please try refreshing the page in a few minutes."
            ),
            "committee": "",
            "coSponsors": [],
            "filedDate": now,
            "lastUpdated": now,
            "topics": ["System"],
            "isPlaceholder": True,
        }
    ]


def generate_fallback_summary(bill_text: str, reading_level: str = "high-level") -> str:
    """Build a summary from the bill's leading sentences.

    Uses the first 2 sentences (3 for ``detailed``) longer than 20 characters.
    """
    detailed = reading_level == "detailed"
    sentences = [s.strip() for s in re.split(r"[.!?]+", bill_text or "") if len(s.strip()) > 20]
    summary = ". ".join(sentences[: 3 if detailed else 2]).strip()

    if summary:
        return summary if summary.endswith(".") else summary + "."

    if detailed:
        return (
            "This bill contains legislative text that requires review. "
            "Please refer to the official bill text for complete details."
        )
    return "Summary unavailable. Please refer to the official bill text."


def generate_fallback_news(reason: Optional[str] = None) -> list[dict[str, Any]]:
    """Placeholder article list shown while news search is unavailable."""
    article = {
        "headline": "News service temporarily unavailable",
        "source": "System",
        "url": "#",
        "publishedAt": datetime.now(timezone.utc).isoformat(),
        "description": "Related news articles are temporarily unavailable. Please try again later.",
        "urlToImage": None,
        "isError": True,
    }
    if reason:
        article["errorMessage"] = reason
    return [article]
