from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from anyio.abc import TaskGroup

from .logging import get_logger

logger = get_logger(__name__)

EventT = TypeVar("EventT")


class UserScheduler(Generic[EventT]):
    """Handles events one at a time per user, many users at once.

    The first event for an idle user starts a worker in the task group; the
    worker drains that user's queue in arrival order and exits when it is
    empty.
    """

    def __init__(
        self,
        *,
        task_group: TaskGroup,
        handler: Callable[[EventT], Awaitable[None]],
    ) -> None:
        self._task_group = task_group
        self._handler = handler
        self._queues: dict[int, deque[EventT]] = {}

    def enqueue(self, user_id: int, event: EventT) -> None:
        queue = self._queues.get(user_id)
        if queue is not None:
            queue.append(event)
            return
        self._queues[user_id] = deque([event])
        self._task_group.start_soon(self._drain, user_id)

    def pending(self, user_id: int) -> int:
        queue = self._queues.get(user_id)
        return len(queue) if queue is not None else 0

    @property
    def active_users(self) -> int:
        return len(self._queues)

    async def _drain(self, user_id: int) -> None:
        queue = self._queues[user_id]
        try:
            while queue:
                event = queue[0]
                try:
                    await self._handler(event)
                except Exception as exc:
                    logger.exception(
                        "scheduler.handler.failed",
                        user_id=user_id,
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                finally:
                    queue.popleft()
        finally:
            del self._queues[user_id]
