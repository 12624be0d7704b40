from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import re

from .base import Operation, coerce_bool, parse_mode
from ..executors import Executor
from ..types import ActionResult, HostConfig


class LineInFileOperation(Operation):
    """Ensure a single line is present in (or absent from) a text file.

    With ``regexp`` the last matching line is replaced by ``line``. Without a
    match the line is inserted according to ``insertafter``/``insertbefore``
    unless an identical line already exists.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError("lineinfile operation requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("lineinfile state must be 'present' or 'absent'")
        regexp = spec.get("regexp") or spec.get("regex")
        self.regexp = _compile(str(regexp), "regexp") if regexp else None
        line = spec.get("line")
        self.line = None if line is None else str(line)
        if self.state == "present" and self.line is None:
            raise ValueError("lineinfile requires a line when state=present")
        if self.state == "absent" and self.line is None and self.regexp is None:
            raise ValueError("lineinfile requires a line or regexp when state=absent")
        self.insertafter = spec.get("insertafter")
        self.insertbefore = spec.get("insertbefore")
        if self.insertafter and self.insertbefore:
            raise ValueError("lineinfile accepts only one of insertafter/insertbefore")
        for option in ("insertafter", "insertbefore"):
            anchor = spec.get(option)
            if anchor and anchor not in {"BOF", "EOF"}:
                _compile(str(anchor), option)
        self.create = bool(coerce_bool(spec.get("create", False)))
        self.mode = parse_mode(spec.get("mode"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        current = executor.read_file(self.path)
        if current is None:
            if self.state == "absent":
                return self._result(host, False, "noop")
            if not self.create:
                raise FileNotFoundError(f"{self.path} does not exist and create is not set")
            current = ""
        lines = current.splitlines()

        if self.state == "absent":
            kept = [ln for ln in lines if not self._matches_for_removal(ln)]
            removed = len(lines) - len(kept)
            if not removed:
                return self._result(host, False, "noop")
            executor.write_file(self.path, content=_join(kept), mode=self.mode)
            return self._result(host, True, f"removed {removed} line(s)")

        new_lines, detail = self._converge(lines)
        if new_lines is None:
            if self.mode is not None:
                changed, mode_detail = executor.write_file(self.path, content=current, mode=self.mode)
                return self._result(host, changed, mode_detail)
            return self._result(host, False, "noop")
        executor.write_file(self.path, content=_join(new_lines), mode=self.mode)
        return self._result(host, True, detail)

    def _converge(self, lines: list[str]) -> tuple[Optional[list[str]], str]:
        if self.line is None:
            raise ValueError("lineinfile requires a line when state=present")
        if self.regexp is not None:
            matches = [idx for idx, ln in enumerate(lines) if self.regexp.search(ln)]
            if matches:
                idx = matches[-1]
                if lines[idx] == self.line:
                    return None, "noop"
                updated = list(lines)
                updated[idx] = self.line
                return updated, "line replaced"
        if self.line in lines:
            return None, "noop"
        updated = list(lines)
        updated.insert(self._insert_index(lines), self.line)
        return updated, "line added"

    def _insert_index(self, lines: list[str]) -> int:
        if self.insertbefore:
            if self.insertbefore == "BOF":
                return 0
            found = _last_match(lines, str(self.insertbefore))
            return found if found is not None else len(lines)
        if self.insertafter and self.insertafter != "EOF":
            found = _last_match(lines, str(self.insertafter))
            return found + 1 if found is not None else len(lines)
        return len(lines)

    def _matches_for_removal(self, line: str) -> bool:
        if self.regexp is not None:
            return bool(self.regexp.search(line))
        return line == self.line

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name,
            action="lineinfile",
            changed=changed,
            details=detail,
            resource=str(self.path),
        )


def _last_match(lines: list[str], pattern: str) -> Optional[int]:
    regex = re.compile(pattern)
    found = None
    for idx, line in enumerate(lines):
        if regex.search(line):
            found = idx
    return found


def _join(lines: list[str]) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def _compile(pattern: str, option: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"lineinfile {option} {pattern!r} is not a valid regular expression: {exc}") from exc
