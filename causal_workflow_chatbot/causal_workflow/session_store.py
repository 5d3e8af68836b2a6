from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

from .models import WorkflowSession


@dataclass
class SessionEntry:
    session: WorkflowSession
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    executor: Any = None


class SessionRegistry:
    """
    In-memory sessions keyed by id (no persistence; a restart loses everything).

    Each entry carries its own lock. Whoever processes a turn holds that lock
    for the whole turn, so a second message for the same session waits until
    the first one's context changes are committed.
    """

    def __init__(self, executor_factory: Optional[Callable[[], Any]] = None) -> None:
        self.executor_factory = executor_factory
        self._entries: Dict[str, SessionEntry] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def _new_entry(self, session_id: str) -> SessionEntry:
        executor = self.executor_factory() if self.executor_factory else None
        return SessionEntry(session=WorkflowSession(session_id=session_id), executor=executor)

    def get(self, session_id: str) -> Optional[WorkflowSession]:
        entry = self._entries.get(session_id)
        return entry.session if entry else None

    def get_or_create(self, session_id: Optional[str] = None) -> WorkflowSession:
        session_id = session_id or str(uuid.uuid4())
        entry = self._entries.get(session_id)
        if entry is None:
            entry = self._new_entry(session_id)
            self._entries[session_id] = entry
            print(f"[SESSION] Created session {session_id}")
        return entry.session

    def entry(self, session_id: str) -> SessionEntry:
        self.get_or_create(session_id)
        return self._entries[session_id]

    def lock_for(self, session_id: str) -> asyncio.Lock:
        return self.entry(session_id).lock

    def executor_for(self, session_id: str) -> Any:
        return self.entry(session_id).executor

    def save(self, session: WorkflowSession) -> None:
        """Store an updated session object (sessions are replaced, not patched)."""
        self.entry(session.session_id).session = session

    async def restart(self, session_id: str) -> WorkflowSession:
        """Replace the session with a fresh one; the lock object is kept."""
        entry = self.entry(session_id)
        if entry.executor is not None and getattr(entry.executor, "connected", False):
            await entry.executor.disconnect()
        entry.session = WorkflowSession(session_id=session_id)
        print(f"[SESSION] Restarted session {session_id}")
        return entry.session

    def clear(self) -> None:
        self._entries.clear()
