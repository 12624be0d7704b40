from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    port: int = 22
    user: Optional[str] = None
    private_key: Optional[str] = None
    groups: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskSpec:
    name: str
    action: Optional[str] = None
    args: dict[str, Any] = field(default_factory=dict)
    loop: Any = None
    flatten_loop: bool = False
    loop_label: Optional[str] = None
    loop_var: str = "item"
    index_var: Optional[str] = None
    when: list[Any] = field(default_factory=list)
    register: Optional[str] = None
    notify: list[str] = field(default_factory=list)
    failed_when: list[Any] = field(default_factory=list)
    changed_when: list[Any] = field(default_factory=list)
    ignore_errors: bool = False
    become: Optional[bool] = None
    vars: dict[str, Any] = field(default_factory=dict)
    retries: int = 0
    delay: float = 0.0
    until: list[Any] = field(default_factory=list)
    block: list["TaskSpec"] = field(default_factory=list)
    rescue: list["TaskSpec"] = field(default_factory=list)
    always: list["TaskSpec"] = field(default_factory=list)
    listen: list[str] = field(default_factory=list)

    @property
    def is_block(self) -> bool:
        return self.action is None


@dataclass
class PlaySpec:
    name: str
    hosts: str
    tasks: list[TaskSpec]
    handlers: list[TaskSpec] = field(default_factory=list)
    become: bool = False
    vars: dict[str, Any] = field(default_factory=dict)
    gather_facts: bool = True
    any_errors_fatal: bool = False
    force_handlers: bool = False


@dataclass
class Playbook:
    plays: list[PlaySpec]
    path: Optional[str] = None


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    rc: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    facts: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False
    task: Optional[str] = None

    def as_registered(self) -> dict[str, Any]:
        """Shape the result the way later conditions expect to read it."""

        data: dict[str, Any] = {
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "msg": self.details,
        }
        if self.rc is not None:
            data["rc"] = self.rc
        if self.stdout or self.stderr or self.rc is not None:
            data["stdout"] = self.stdout
            data["stdout_lines"] = self.stdout.splitlines()
            data["stderr"] = self.stderr
            data["stderr_lines"] = self.stderr.splitlines()
        if self.facts:
            data["ansible_facts"] = dict(self.facts)
        return data


@dataclass
class TaskOutcome:
    host: str
    task: str
    action: str
    results: list[ActionResult] = field(default_factory=list)
    loop_items: Optional[list[Any]] = None
    failed: bool = False
    unreachable: bool = False
    ignored: bool = False

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results if not r.skipped)

    @property
    def skipped(self) -> bool:
        return bool(self.results) and all(r.skipped for r in self.results)

    def as_registered(self) -> dict[str, Any]:
        if self.loop_items is None:
            data = self.results[0].as_registered() if self.results else {"skipped": True}
            data["failed"] = self.failed
            return data
        items = []
        for item, result in zip(self.loop_items, self.results):
            entry = result.as_registered()
            entry["item"] = item
            items.append(entry)
        return {
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": items,
            "msg": "All items completed",
        }
