"""Session registry — the set of sessions eligible for broadcast.

Learn: This is the only shared mutable state in the relay. Every insert,
remove and snapshot takes the same asyncio.Lock, and fan-out iterates a
snapshot (a plain list copy), so a session joining or leaving mid-broadcast
can't corrupt the iteration or shift delivery onto the wrong session.

Each RelayServer owns its own registry — no module-level singleton — so
several relays can run side by side in one process (tests do exactly that).
"""

import asyncio
from typing import Optional

from pricerelay.realtime.session import ClientSession


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, ClientSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session: object) -> bool:
        return isinstance(session, ClientSession) and session.id in self._sessions

    def get(self, session_id: str) -> Optional[ClientSession]:
        return self._sessions.get(session_id)

    async def add(self, session: ClientSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session

    async def remove(self, session: ClientSession) -> bool:
        """Drop a session. Returns False if it was already gone."""
        async with self._lock:
            return self._sessions.pop(session.id, None) is not None

    async def snapshot(self) -> list[ClientSession]:
        async with self._lock:
            return list(self._sessions.values())
