"""
In-memory conversation store. Append-only message log keyed by session_id.

Seeds the pipeline's conversation context and persists each final answer.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

VALID_ROLES = frozenset({"user", "assistant"})


class SessionStore:
    """Thread-safe message log. One instance is shared by the app."""

    def __init__(self) -> None:
        # session_id -> list of {"role", "content", "created_at"}
        self._sessions: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get_history(self, session_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Return the session's messages oldest first (copy so caller cannot mutate the store)."""
        if not session_id or not isinstance(session_id, str):
            logger.info("[session_store:get_history] IN  session_id=%r -> empty", session_id)
            return []
        with self._lock:
            messages = self._sessions.get(session_id) or []
            out = [dict(m) for m in messages]
        if limit is not None and limit >= 0:
            out = out[-limit:] if limit else []
        logger.info("[session_store:get_history] IN  session_id=%s OUT messages=%d", session_id[:16], len(out))
        return out

    def append_message(self, session_id: str, role: str, content: str) -> None:
        """Append one message to the session's history."""
        if not session_id or not isinstance(session_id, str):
            logger.info("[session_store:append_message] skip invalid session_id=%r", session_id)
            return
        if role not in VALID_ROLES:
            raise ValueError(f"role must be one of {sorted(VALID_ROLES)}, got {role!r}")
        message = {
            "role": role,
            "content": content or "",
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._sessions.setdefault(session_id, []).append(message)
        logger.info("[session_store:append_message] session_id=%s role=%s content_len=%d", session_id[:16], role, len(content or ""))

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
