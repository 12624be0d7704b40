from __future__ import annotations

import logging

from .types import TaskSpec

logger = logging.getLogger(__name__)


class HandlerQueue:
    """Pending handlers for one host in one play.

    A handler is queued at most once, in the order it was first notified,
    and only by tasks that actually changed something.
    """

    def __init__(self, handlers: list[TaskSpec]):
        self.handlers = handlers
        self._pending: list[TaskSpec] = []

    def notify(self, names: list[str], changed: bool) -> list[str]:
        if not changed or not names:
            return []
        queued: list[str] = []
        for name in names:
            for handler in self._matching(name):
                if any(handler is pending for pending in self._pending):
                    continue
                self._pending.append(handler)
                queued.append(handler.name)
        if queued:
            logger.debug("handlers queued: %s", ", ".join(queued))
        return queued

    def drain(self) -> list[TaskSpec]:
        """Hand back the queued handlers and clear the queue."""

        pending, self._pending = self._pending, []
        return pending

    @property
    def pending(self) -> list[str]:
        return [handler.name for handler in self._pending]

    def _matching(self, name: str) -> list[TaskSpec]:
        return [h for h in self.handlers if h.name == name or name in h.listen]
