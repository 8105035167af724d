"""Time-windowed suppression of repeated notifications.

The upstream peer tends to resend the same text several times in quick
succession (partial message updates, repeated questions). DedupCache decides
whether a given notification should be emitted or suppressed; it never delays
anything.

Usage:
    cache = DedupCache()
    gate = dedup_key_for_event(event_data, message_cooldown=3.0, question_cooldown=5.0)
    if gate is None or cache.should_emit(*gate):
        broadcast(...)
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

from .events import TaskEventData, TaskEventName


logger = logging.getLogger(__name__)


DEFAULT_MESSAGE_COOLDOWN = 3.0
DEFAULT_QUESTION_COOLDOWN = 5.0
DEFAULT_MAX_ENTRIES = 100


class DedupCache:
    """Remembers when each key was last emitted.

    Args:
        max_entries: When the cache grows past this size, entries older than
            twice the cooldown of the current call are swept.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._last_emitted: Dict[str, float] = {}

    def should_emit(self, key: str, cooldown: float, now: Optional[float] = None) -> bool:
        """Decide whether a notification with this key may be emitted.

        Args:
            key: Composite key (category + normalized text).
            cooldown: Suppression window in seconds.
            now: Current time in seconds; defaults to time.monotonic().

        Returns:
            True (and records now) if the key is new or its last emission is
            older than cooldown; False otherwise, without touching the record.
        """
        if now is None:
            now = time.monotonic()

        last = self._last_emitted.get(key)
        if last is not None and now - last <= cooldown:
            return False

        self._last_emitted[key] = now
        if len(self._last_emitted) > self.max_entries:
            self._sweep(now - cooldown * 2)
        return True

    def _sweep(self, cutoff: float) -> None:
        stale = [k for k, ts in self._last_emitted.items() if ts < cutoff]
        for k in stale:
            del self._last_emitted[k]
        if stale:
            logger.debug(f"Dedup sweep evicted {len(stale)} entries")

    def clear(self) -> None:
        self._last_emitted.clear()

    def __len__(self) -> int:
        return len(self._last_emitted)


def parse_question(text: str) -> Optional[Dict[str, Any]]:
    """Decode a JSON-encoded followup question.

    Returns:
        The decoded object when it carries a string "question", else None.
    """
    if not (text.startswith("{") and "question" in text):
        return None
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    if isinstance(data, dict) and isinstance(data.get("question"), str):
        return data
    return None


def _question_text(text: str) -> Optional[str]:
    data = parse_question(text)
    return data["question"].strip() if data else None


def dedup_key_for_event(
    event: TaskEventData,
    message_cooldown: float = DEFAULT_MESSAGE_COOLDOWN,
    question_cooldown: float = DEFAULT_QUESTION_COOLDOWN,
) -> Optional[Tuple[str, float]]:
    """Map a TaskEvent to its dedup (key, cooldown).

    Returns:
        None for structural events, which must always be forwarded.
    """
    if event.event_name != TaskEventName.MESSAGE.value or not event.payload:
        return None

    first = event.payload[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        return None

    msg_type = message.get("type")
    text = message.get("text")
    if not isinstance(text, str) or not text.strip() or msg_type == "tool":
        return None
    text = text.strip()

    if msg_type == "say":
        question = _question_text(text)
        if question:
            return f"question:{question}", question_cooldown
        return f"say:{text}", message_cooldown
    if msg_type == "ask":
        return f"ask:{text}", message_cooldown
    return f"{msg_type}:{text}", message_cooldown
