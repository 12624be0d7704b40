"""
Example plugin module for Stagehand.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and playbooks can use a new action called
`say_hello` that reports a greeting without making system changes.
"""

from stagehand_automation.operations.base import Operation
from stagehand_automation.types import ActionResult, HostConfig


class SayHelloOperation(Operation):
    def __init__(self, spec: dict):
        super().__init__(spec)
        self.message = spec.get("message", "hello")

    def apply(self, host: HostConfig, executor) -> ActionResult:
        detail = f"greeting for {host.name}: {self.message}"
        return ActionResult(host=host.name, action="say_hello", changed=False, details=detail)


def register_operations(registry) -> None:
    registry["say_hello"] = SayHelloOperation
