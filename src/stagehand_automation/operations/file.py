from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import Operation, parse_mode
from ..executors import Executor
from ..types import ActionResult, HostConfig


class FileOperation(Operation):
    """Ensure paths exist as files, directories or links, or are absent."""

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest") or spec.get("name")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.link_target = spec.get("src") or spec.get("link_target")
        default_state = "link" if self.link_target else "file"
        self.state = str(spec.get("state", default_state))
        if self.state not in {"file", "absent", "directory", "touch", "link"}:
            raise ValueError(
                "file operation state must be 'file', 'absent', 'directory', 'touch', or 'link'"
            )
        if self.state == "link" and not self.link_target:
            raise ValueError("file operation state=link requires src")
        self.mode = parse_mode(spec.get("mode"))
        self.owner = self._optional_str(spec.get("owner"))
        self.group = self._optional_str(spec.get("group"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.state == "absent":
            removed = executor.remove_path(self.path)
            detail = "removed" if removed else "noop"
            return self._result(host, removed, detail)
        if self.state == "link":
            return self._apply_symlink(host, executor)
        if self.state == "directory":
            changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        elif self.state == "touch":
            changed = executor.touch(self.path)
            detail = "touched" if changed else "noop"
            if self.mode is not None:
                changed, detail = self._apply_mode(executor, changed, detail)
        else:
            if not executor.exists(self.path):
                raise FileNotFoundError(f"{self.path} does not exist")
            changed, detail = self._apply_mode(executor, False, "noop")
        changed, detail = self._apply_ownership(executor, changed, detail)
        return self._result(host, changed, detail)

    def _apply_symlink(self, host: HostConfig, executor: Executor) -> ActionResult:
        target = str(self.link_target)
        if executor.read_link(self.path) == target:
            return self._result(host, False, "noop")
        executor.symlink(self.path, target)
        return self._result(host, True, f"link->{target}")

    def _apply_mode(self, executor: Executor, changed: bool, detail: str) -> tuple[bool, str]:
        if self.mode is None or executor.file_mode(self.path) == self.mode:
            return changed, detail
        executor.run(["chmod", f"{self.mode:04o}", str(self.path)])
        mode_detail = f"mode->{self.mode:04o}"
        return True, mode_detail if detail == "noop" else f"{detail}, {mode_detail}"

    def _apply_ownership(self, executor: Executor, changed: bool, detail: str) -> tuple[bool, str]:
        if self.owner is None and self.group is None:
            return changed, detail
        chown_changed, chown_detail = executor.set_ownership(
            self.path, owner=self.owner, group=self.group
        )
        if chown_changed:
            changed = True
            detail = f"{detail}, {chown_detail}" if detail and detail != "noop" else chown_detail
        return changed, detail

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name, action="file", changed=changed, details=detail, resource=str(self.path)
        )

    @staticmethod
    def _optional_str(value: Optional[object]) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None
