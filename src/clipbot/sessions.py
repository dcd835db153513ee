from __future__ import annotations

import time
from collections.abc import Callable
from typing import Generic, TypeVar

import anyio

from .logging import get_logger
from .model import MergeState, Session, StateT, TrimState

logger = get_logger(__name__)

ResultT = TypeVar("ResultT")

DEFAULT_SESSION_TTL_S = 30 * 60
DEFAULT_SWEEP_INTERVAL_S = 5 * 60


class SessionStore(Generic[StateT]):
    """Per-user sessions of one job kind, behind a single lock.

    Every read-modify-write goes through :meth:`update` so two events for
    the same user cannot lose each other's changes.
    """

    __slots__ = ("_name", "_sessions", "_lock", "_clock")

    def __init__(self, name: str, *, clock: Callable[[], float] = time.monotonic):
        self._name = name
        self._sessions: dict[int, Session[StateT]] = {}
        self._lock = anyio.Lock()
        self._clock = clock

    async def create(
        self, user_id: int, state: StateT
    ) -> tuple[Session[StateT], Session[StateT] | None]:
        session = Session(state=state, created_at=self._clock())
        async with self._lock:
            previous = self._sessions.get(user_id)
            self._sessions[user_id] = session
        if previous is not None:
            logger.info("session.replaced", kind=self._name, user_id=user_id)
        return session, previous

    async def get(self, user_id: int) -> Session[StateT] | None:
        async with self._lock:
            return self._sessions.get(user_id)

    async def update(
        self,
        user_id: int,
        mutator: Callable[[Session[StateT]], ResultT],
    ) -> ResultT | None:
        """Run ``mutator`` on the live session under the lock.

        Returns ``None`` without calling it when the user has no session.
        """
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            return mutator(session)

    async def delete(
        self, user_id: int, *, session: Session[StateT] | None = None
    ) -> bool:
        async with self._lock:
            current = self._sessions.get(user_id)
            if current is None:
                return False
            if session is not None and current is not session:
                return False
            del self._sessions[user_id]
            return True

    async def sweep(self, max_age_s: float) -> int:
        now = self._clock()
        async with self._lock:
            stale = [
                user_id
                for user_id, session in self._sessions.items()
                if now - session.created_at > max_age_s
            ]
            for user_id in stale:
                del self._sessions[user_id]
        if stale:
            logger.info("session.sweep.removed", kind=self._name, count=len(stale))
        return len(stale)


class SessionRegistry:
    __slots__ = ("trim", "merge")

    def __init__(
        self,
        *,
        trim: SessionStore[TrimState] | None = None,
        merge: SessionStore[MergeState] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.trim: SessionStore[TrimState] = trim or SessionStore("trim", clock=clock)
        self.merge: SessionStore[MergeState] = merge or SessionStore(
            "merge", clock=clock
        )

    async def sweep(self, max_age_s: float) -> int:
        # one store at a time; the two locks are never held together
        removed = await self.merge.sweep(max_age_s)
        removed += await self.trim.sweep(max_age_s)
        return removed

    async def drop_user(self, user_id: int) -> bool:
        dropped_merge = await self.merge.delete(user_id)
        dropped_trim = await self.trim.delete(user_id)
        return dropped_merge or dropped_trim


async def run_session_sweeper(
    registry: SessionRegistry,
    *,
    interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
    max_age_s: float = DEFAULT_SESSION_TTL_S,
) -> None:
    while True:
        await anyio.sleep(interval_s)
        await registry.sweep(max_age_s)
