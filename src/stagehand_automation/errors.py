from __future__ import annotations


class StagehandError(Exception):
    """Base class for errors raised by the engine itself."""


class PlaybookError(StagehandError, ValueError):
    """Raised when a playbook cannot be loaded or validated."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None):
        super().__init__(message)
        self.line = line
        self.column = column


class InventoryError(StagehandError, ValueError):
    """Raised for malformed inventories or unresolvable host patterns."""


class TemplateError(StagehandError):
    """Raised when a template or expression cannot be rendered."""


class HostUnreachable(StagehandError):
    """Raised by executors when the target cannot be contacted."""

    def __init__(self, host: str, reason: str):
        super().__init__(f"{host} unreachable: {reason}")
        self.host = host
        self.reason = reason
