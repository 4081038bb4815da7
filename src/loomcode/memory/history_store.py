"""Persist conversations: one JSON file per session and day, plus an index of recent sessions."""

import logging
from datetime import date
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from pydantic import ValidationError

from loomcode.common import now_ms
from loomcode.core.schema import ChatMessage
from loomcode.memory.state_file import StateFile

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    """Load/save contract used by the orchestrator."""

    def load_history(self) -> List[ChatMessage]: ...

    def save_history(self, messages: Sequence[ChatMessage]) -> None: ...

    def save_session(self, session_id: str, messages: Sequence[ChatMessage]) -> None: ...

    def clear_history(self) -> None: ...


def _dump(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    return [m.model_dump(mode="json", exclude_none=True) for m in messages]


def _parse(raw: Any) -> List[ChatMessage]:
    messages: List[ChatMessage] = []
    for item in raw if isinstance(raw, list) else []:
        try:
            messages.append(ChatMessage.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid history entry: %s", exc)
    return messages


class JsonHistoryStore:
    """
    History of one session under ``<directory>/<session_id>/<YYYY-MM-DD>.json``.

    ``load_history`` returns today's conversation.  Every save also refreshes the session's entry in
    ``<directory>/sessions.json``, which keeps the ``max_sessions`` most recently updated sessions.
    Failures are logged and never raised.
    """

    def __init__(
        self,
        directory: str | Path,
        session_id: str = "default",
        max_sessions: int = 10,
        today: Callable[[], date] = date.today,
    ):
        self.directory = Path(directory)
        self.session_id = session_id
        self.max_sessions = max_sessions
        self._today = today
        self._sessions = StateFile(self.directory / "sessions.json")

    def _daily_file(self, day: Optional[date] = None) -> StateFile:
        day = day or self._today()
        return StateFile(self.directory / self.session_id / f"{day.isoformat()}.json")

    def load_history(self) -> List[ChatMessage]:
        data = self._daily_file().load() or {}
        return _parse(data.get("messages"))

    def load_history_for_date(self, day: date) -> List[ChatMessage]:
        data = self._daily_file(day).load() or {}
        return _parse(data.get("messages"))

    def save_history(self, messages: Sequence[ChatMessage]) -> None:
        self._daily_file().save({"session_id": self.session_id, "messages": _dump(messages)})
        self.save_session(self.session_id, messages)

    def save_session(self, session_id: str, messages: Sequence[ChatMessage]) -> None:
        sessions = self._load_sessions()
        existing = next((s for s in sessions if s.get("session_id") == session_id), None)
        now = now_ms()
        entry = {
            "session_id": session_id,
            "history": _dump(messages),
            "created_at": existing.get("created_at", now) if existing else now,
            "updated_at": now,
        }
        sessions = [s for s in sessions if s.get("session_id") != session_id]
        sessions.append(entry)
        self._sessions.save({"sessions": sessions[-self.max_sessions :]})

    def load_session(self, session_id: str) -> Optional[List[ChatMessage]]:
        for entry in self._load_sessions():
            if entry.get("session_id") == session_id:
                return _parse(entry.get("history"))
        return None

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Summaries of the stored sessions, most recently updated first."""
        summaries = [
            {
                "session_id": s.get("session_id"),
                "messages": len(s.get("history") or []),
                "created_at": s.get("created_at"),
                "updated_at": s.get("updated_at"),
            }
            for s in self._load_sessions()
        ]
        return sorted(summaries, key=lambda s: s["updated_at"] or 0, reverse=True)

    def clear_history(self) -> None:
        self._daily_file().clear()
        sessions = [s for s in self._load_sessions() if s.get("session_id") != self.session_id]
        self._sessions.save({"sessions": sessions})
        logger.info("Cleared history for session %s", self.session_id)

    def _load_sessions(self) -> List[Dict[str, Any]]:
        data = self._sessions.load() or {}
        return [s for s in data.get("sessions") or [] if isinstance(s, dict)]
