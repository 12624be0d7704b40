from __future__ import annotations

from pathlib import Path
from typing import Any
import re

from .base import Operation, coerce_bool, parse_mode
from ..executors import Executor
from ..types import ActionResult, HostConfig

SOURCES_DIR = Path("/etc/apt/sources.list.d")


class AptRepositoryOperation(Operation):
    """Manage an apt source line under /etc/apt/sources.list.d."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_repo = spec.get("repo")
        if not raw_repo:
            raise ValueError("apt_repository requires a repo")
        self.repo = " ".join(str(raw_repo).split())
        if not self.repo.startswith(("deb ", "deb-src ")):
            raise ValueError("apt_repository repo must start with 'deb' or 'deb-src'")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("apt_repository state must be 'present' or 'absent'")
        filename = spec.get("filename") or self._default_filename(self.repo)
        self.path = Path(spec.get("path") or SOURCES_DIR / f"{filename}.list")
        self.update_cache = bool(coerce_bool(spec.get("update_cache", True)))
        self.mode = parse_mode(spec.get("mode", "0644"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        current = executor.read_file(self.path)
        lines = current.splitlines() if current is not None else []
        normalized = [" ".join(line.split()) for line in lines]

        if self.state == "absent":
            if self.repo not in normalized:
                return self._result(host, False, "noop")
            kept = [line for line, norm in zip(lines, normalized) if norm != self.repo]
            if any(line.strip() and not line.strip().startswith("#") for line in kept):
                executor.write_file(self.path, content="\n".join(kept) + "\n", mode=self.mode)
            else:
                executor.remove_path(self.path)
            self._refresh(executor)
            return self._result(host, True, "removed")

        if self.repo in normalized:
            return self._result(host, False, "noop")
        content = "\n".join([*lines, self.repo]) + "\n"
        executor.write_file(self.path, content=content, mode=self.mode)
        self._refresh(executor)
        detail = "added, cache-updated" if self.update_cache else "added"
        return self._result(host, True, detail)

    def _refresh(self, executor: Executor) -> None:
        if self.update_cache:
            executor.run(["apt-get", "update", "-q"], env={"DEBIAN_FRONTEND": "noninteractive"})

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name,
            action="apt_repository",
            changed=changed,
            details=detail,
            resource=str(self.path),
        )

    @staticmethod
    def _default_filename(repo: str) -> str:
        for part in repo.split()[1:]:
            if "://" in part:
                location = part.split("://", 1)[1]
                return re.sub(r"[^A-Za-z0-9]+", "_", location).strip("_")
        raise ValueError("apt_repository cannot derive a filename from repo; set filename")
