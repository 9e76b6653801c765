"""
Plaza Message Log

Bounded in-memory record of every inbound envelope, appended before the
envelope is dispatched. It is what the "recent messages" query returns.

Design:
- Fixed-capacity ring buffer; once full, each append drops the oldest entry
- Entries are the decoded envelopes, never mutated after append
- No persistence: this is an observability aid, the process owns it
"""

from collections import deque

from plaza.protocol.envelope import MessageType, PlazaMessage


class MessageLog:
    """Append-only ring buffer of PlazaMessage envelopes."""

    def __init__(self, capacity: int = 5000):
        """
        Initialize the log.

        Args:
            capacity: Max envelopes kept (oldest evicted)
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[PlazaMessage] = deque(maxlen=capacity)
        self._total = 0

    def append(self, message: PlazaMessage) -> None:
        self._entries.append(message)
        self._total += 1

    def recent(
        self,
        limit: int = 100,
        message_type: MessageType | None = None
    ) -> list[PlazaMessage]:
        """
        Most recent envelopes first.

        Args:
            limit: Max envelopes to return
            message_type: Only return envelopes of this type
        """
        result: list[PlazaMessage] = []
        if limit <= 0:
            return result
        for message in reversed(self._entries):
            if message_type is not None and message.type != message_type:
                continue
            result.append(message)
            if len(result) >= limit:
                break
        return result

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    @property
    def total_appended(self) -> int:
        """Envelopes appended since start, including evicted ones."""
        return self._total

    def __len__(self) -> int:
        return len(self._entries)
