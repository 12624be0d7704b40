from __future__ import annotations

import logging
from typing import Any, Optional

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

RULES = {"allow", "deny", "reject", "limit"}
STATES = {"enabled", "disabled", "reloaded", "reset"}


class UfwOperation(Operation):
    """Manage Uncomplicated Firewall rules and the firewall state."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        rule = spec.get("rule")
        self.rule = str(rule) if rule is not None else None
        if self.rule is not None and self.rule not in RULES:
            raise ValueError(f"ufw rule must be one of {', '.join(sorted(RULES))}")
        state = spec.get("state")
        self.state = str(state) if state is not None else None
        if self.state is not None and self.state not in STATES:
            raise ValueError(f"ufw state must be one of {', '.join(sorted(STATES))}")
        if self.rule is None and self.state is None:
            raise ValueError("ufw operation requires a rule or a state")
        port = spec.get("port") or spec.get("to_port")
        self.port = str(port) if port is not None else None
        proto = spec.get("proto")
        self.proto = str(proto) if proto not in {None, "any"} else None
        self.from_ip = spec.get("from_ip") or spec.get("src")
        self.delete = bool(coerce_bool(spec.get("delete", False)))
        if self.rule is not None and self.port is None and self.from_ip is None:
            raise ValueError("ufw rule requires a port or from_ip")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not executor.which("ufw"):
            raise RuntimeError("ufw is not available on this host")
        changes: list[str] = []
        if self.rule is not None:
            change = self._apply_rule(executor)
            if change:
                changes.append(change)
        if self.state is not None:
            change = self._apply_state(executor)
            if change:
                changes.append(change)
        detail = ", ".join(changes) if changes else "noop"
        return ActionResult(
            host=host.name,
            action="ufw",
            changed=bool(changes),
            details=detail,
            resource=self._resource(),
        )

    def _apply_rule(self, executor: Executor) -> Optional[str]:
        words = self.rule_words()
        present = self.render_rule() in self._added_rules(executor)
        if self.delete:
            if not present:
                return None
            logger.debug("Deleting ufw rule %s", " ".join(words))
            executor.run(["ufw", "delete", *words])
            return f"deleted {' '.join(words)}"
        if present:
            return None
        logger.debug("Adding ufw rule %s", " ".join(words))
        executor.run(["ufw", *words])
        return f"added {' '.join(words)}"

    def _apply_state(self, executor: Executor) -> Optional[str]:
        if self.state == "reloaded":
            executor.run(["ufw", "reload"])
            return "reloaded"
        if self.state == "reset":
            executor.run(["ufw", "--force", "reset"])
            return "reset"
        active = self._is_active(executor)
        if self.state == "enabled" and not active:
            executor.run(["ufw", "--force", "enable"])
            return "enabled"
        if self.state == "disabled" and active:
            executor.run(["ufw", "disable"])
            return "disabled"
        return None

    def rule_words(self) -> list[str]:
        if self.rule is None:
            raise ValueError("ufw rule words need a rule")
        if self.from_ip is None:
            target = self.port if self.proto is None else f"{self.port}/{self.proto}"
            return [self.rule, str(target)]
        words = [self.rule, "from", str(self.from_ip), "to", "any"]
        if self.port is not None:
            words += ["port", self.port]
        if self.proto is not None:
            words += ["proto", self.proto]
        return words

    def render_rule(self) -> str:
        return "ufw " + " ".join(self.rule_words())

    @staticmethod
    def _added_rules(executor: Executor) -> set[str]:
        result = executor.run(["ufw", "show", "added"], check=False, mutable=False)
        return {line.strip() for line in result.stdout.splitlines() if line.startswith("ufw ")}

    @staticmethod
    def _is_active(executor: Executor) -> bool:
        result = executor.run(["ufw", "status"], check=False, mutable=False)
        first = result.stdout.strip().splitlines()[:1]
        return bool(first) and first[0].strip() == "Status: active"

    def _resource(self) -> Optional[str]:
        if self.rule is not None:
            return " ".join(self.rule_words())
        return self.state
