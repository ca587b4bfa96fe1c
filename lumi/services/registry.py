"""
Lumi — Session Registry

Maps session_id → TutorSession. One session per control socket.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .session import TutorSession

logger = logging.getLogger("lumi.registry")


class SessionRegistry:
    """Maps session_id → TutorSession. Accessed from the event loop only."""

    def __init__(self) -> None:
        self._sessions: Dict[str, TutorSession] = {}

    def add(self, session: TutorSession) -> TutorSession:
        if session.session_id in self._sessions:
            raise ValueError(f"Session {session.session_id} already registered")
        self._sessions[session.session_id] = session
        logger.info(f"SessionRegistry: added {session.session_id} (total: {len(self._sessions)})")
        return session

    async def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._sessions)})")
        return True

    async def close_all(self) -> None:
        for sid in list(self._sessions.keys()):
            await self.remove(sid)

    def get(self, session_id: str) -> Optional[TutorSession]:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def all_sessions(self) -> Dict[str, TutorSession]:
        return dict(self._sessions)
