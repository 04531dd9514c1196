"""Per-session conversational memory buffers.

Window buffers live in process memory. Durable buffers are additionally
written to the keyed store under ``memory:<session_id>`` and reloaded on
first access.
"""

import logging

from flowforge.core.models import MemoryMessage
from flowforge.core.state import Database

logger = logging.getLogger(__name__)

MEMORY_KEY_PREFIX = "memory:"


class MemoryStore:
    """Bounded, ordered message buffers keyed by session id."""

    def __init__(self, db: Database | None = None, default_window: int = 10):
        self.db = db
        self.default_window = default_window
        self._buffers: dict[str, list[MemoryMessage]] = {}

    def get(self, session_id: str) -> list[MemoryMessage]:
        if session_id not in self._buffers and self.db is not None:
            stored = self.db.get_blob(MEMORY_KEY_PREFIX + session_id)
            if stored:
                self._buffers[session_id] = [MemoryMessage.model_validate(m) for m in stored]
        return list(self._buffers.get(session_id, []))

    def append(
        self,
        session_id: str,
        role: str,
        content: str,
        window_size: int | None = None,
        durable: bool = False,
    ) -> list[MemoryMessage]:
        """Append a message, trim to the window and return the buffer."""
        window = window_size or self.default_window
        buffer = self.get(session_id)
        buffer.append(MemoryMessage(role=role, content=content))
        if window > 0 and len(buffer) > window:
            buffer = buffer[-window:]
        self._buffers[session_id] = buffer

        if durable and self.db is not None:
            self.db.put_blob(
                MEMORY_KEY_PREFIX + session_id, [m.model_dump(mode="json") for m in buffer]
            )
        return list(buffer)

    def clear(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)
        if self.db is not None:
            self.db.delete_blob(MEMORY_KEY_PREFIX + session_id)
        logger.debug(f"Cleared memory session '{session_id}'")
