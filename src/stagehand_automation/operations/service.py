from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

STATE_ALIASES = {"running": "started"}

# reported change -> systemctl verb
TRANSITIONS = {
    "enabled": "enable",
    "disabled": "disable",
    "started": "start",
    "stopped": "stop",
    "restarted": "restart",
    "reloaded": "reload",
}


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable)

    def probe(self, executor: Executor, query: str, unit: str) -> bool:
        """Answer a read-only ``is-active``/``is-enabled`` query."""

        result = executor.run([self.executable, query, unit], check=False, mutable=False)
        return result.returncode == 0

    def act(self, executor: Executor, verb: str, unit: str) -> None:
        executor.run([self.executable, verb, unit])


class ServiceOperation(Operation):
    """Manage systemd units: boot-time enablement and the running state.

    ``started``/``stopped`` and ``enabled`` are probed first and only acted on
    when they differ; ``restarted`` and ``reloaded`` always act.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        state = spec.get("state")
        self._state = STATE_ALIASES.get(state, state) if state is not None else None
        if self._state not in {None, "started", "stopped", "restarted", "reloaded"}:
            raise ValueError("service state must be 'started', 'stopped', 'restarted' or 'reloaded'")
        if coerce_bool(spec.get("restart", False)):
            self._state = "restarted"
        self.systemctl = SystemCtl()

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not self.systemctl.available(executor):
            raise RuntimeError("systemctl is not available on this host")

        changes = self._pending_changes(executor)
        for change in changes:
            verb = TRANSITIONS[change]
            logger.debug("service=%s host=%s action=%s", self.name, host.name, verb)
            if not executor.dry_run:
                self.systemctl.act(executor, verb, self.name)

        detail = ", ".join(changes) if changes else "noop"
        return ActionResult(
            host=host.name, action="service", changed=bool(changes), details=detail, resource=self.name
        )

    def _pending_changes(self, executor: Executor) -> list[str]:
        changes: list[str] = []
        if self._enabled is not None:
            enabled = self.systemctl.probe(executor, "is-enabled", self.name)
            if enabled != self._enabled:
                changes.append("enabled" if self._enabled else "disabled")
        if self._state in {"started", "stopped"}:
            active = self.systemctl.probe(executor, "is-active", self.name)
            if active != (self._state == "started"):
                changes.append(self._state)
        elif self._state is not None:
            changes.append(self._state)
        return changes
