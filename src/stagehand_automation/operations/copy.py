from __future__ import annotations

from pathlib import Path
from typing import Any

from .base import Operation, coerce_bool, parse_mode
from ..executors import Executor, content_checksum
from ..types import ActionResult, HostConfig


class CopyOperation(Operation):
    """Write exact content to a destination file.

    The desired bytes come from ``content`` or from a controller-side ``src``
    file. The write happens only when the SHA-256 of the destination differs.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_dest = spec.get("dest") or spec.get("path")
        if not raw_dest:
            raise ValueError("copy operation requires a dest")
        self.dest = Path(str(raw_dest))
        has_content = "content" in spec and spec["content"] is not None
        self.src = spec.get("src")
        if has_content == bool(self.src):
            raise ValueError("copy operation requires exactly one of content or src")
        self.content = str(spec["content"]) if has_content else None
        self.mode = parse_mode(spec.get("mode"))
        self.owner = spec.get("owner")
        self.group = spec.get("group")
        self.force = coerce_bool(spec.get("force", True))
        self.playbook_dir = spec.get("_playbook_dir")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        content = self._desired_content()
        if not self.force and executor.exists(self.dest):
            return self._result(host, False, "noop (exists, force=no)")
        changed, detail = executor.write_file(self.dest, content=content, mode=self.mode)
        if self.owner is not None or self.group is not None:
            owner = None if self.owner is None else str(self.owner)
            group = None if self.group is None else str(self.group)
            chown_changed, chown_detail = executor.set_ownership(self.dest, owner=owner, group=group)
            if chown_changed:
                changed = True
                detail = chown_detail if detail == "noop" else f"{detail}, {chown_detail}"
        if changed:
            detail = f"{detail} (sha256={content_checksum(content)[:12]})"
        return self._result(host, changed, detail)

    def _desired_content(self) -> str:
        if self.content is not None:
            return self.content
        src = Path(str(self.src)).expanduser()
        if not src.is_absolute() and self.playbook_dir is not None:
            src = Path(str(self.playbook_dir)) / src
        return src.read_text(encoding="utf-8")

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name, action="copy", changed=changed, details=detail, resource=str(self.dest)
        )
