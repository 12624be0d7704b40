from __future__ import annotations

from typing import Any

from .base import Operation
from ..executors import Executor
from ..facts import FactGatherer
from ..types import ActionResult, HostConfig


class SetupOperation(Operation):
    """Publish distribution facts for later conditions."""

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        facts = FactGatherer(executor).gather()
        detail = f"{facts.get('distribution') or 'unknown'} {facts.get('distribution_version', '')}".strip()
        return ActionResult(host=host.name, action="setup", changed=False, details=detail, facts=facts)


class PackageFactsOperation(Operation):
    """Publish the installed packages as ``ansible_facts.packages``."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.manager = str(spec.get("manager") or "auto")
        if self.manager not in {"auto", "apt", "rpm"}:
            raise ValueError("package_facts manager must be 'auto', 'apt' or 'rpm'")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        packages = FactGatherer(executor).packages(self.manager)
        return ActionResult(
            host=host.name,
            action="package_facts",
            changed=False,
            details=f"{len(packages)} packages",
            facts={"packages": packages},
        )
