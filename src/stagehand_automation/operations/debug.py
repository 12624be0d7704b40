from __future__ import annotations

from typing import Any

from .base import Operation
from ..executors import Executor
from ..templating import Templar
from ..types import ActionResult, HostConfig


class DebugOperation(Operation):
    """Report a message or a variable without touching the host."""

    wants_variables = True

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.var = spec.get("var")
        self.message = str(spec.get("msg", "Hello world!"))
        self.variables = spec.get("_vars") or {}

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.var:
            value = Templar(self.variables).evaluate(str(self.var))
            detail = f"{self.var} = {value!r}"
        else:
            detail = self.message
        return ActionResult(host=host.name, action="debug", changed=False, details=detail)
