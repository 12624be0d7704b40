from __future__ import annotations

from typing import Any, Mapping, Optional

from .types import HostConfig


class HostContext:
    """Variable scope owned by the worker that drives one host.

    Facts and registered results live for the whole run; play variables are
    swapped at the start of every play. Nothing here is shared between hosts,
    so concurrent hosts never race on it.
    """

    def __init__(
        self,
        host: HostConfig,
        inventory_vars: Mapping[str, Any],
        magic: Mapping[str, Any],
    ):
        self.host = host
        self.inventory_vars = dict(inventory_vars)
        self.magic = dict(magic)
        self.play_vars: dict[str, Any] = {}
        self.facts: dict[str, Any] = {}
        self.registered: dict[str, Any] = {}
        self.failed = False
        self.unreachable = False

    @property
    def active(self) -> bool:
        return not (self.failed or self.unreachable)

    def begin_play(self, play_vars: Mapping[str, Any]) -> None:
        self.play_vars = dict(play_vars)

    def add_facts(self, facts: Mapping[str, Any]) -> None:
        self.facts.update(facts)

    def register(self, name: str, value: Any) -> None:
        self.registered[name] = value

    def variables(self, extra: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """Build the lookup scope, lowest precedence first."""

        scope: dict[str, Any] = dict(self.inventory_vars)
        scope.update(self.magic)
        scope["ansible_facts"] = dict(self.facts)
        scope.update({f"ansible_{key}": value for key, value in self.facts.items()})
        scope.update(self.play_vars)
        scope.update(self.registered)
        if extra:
            scope.update(extra)
        return scope
