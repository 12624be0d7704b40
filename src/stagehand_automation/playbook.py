"""Loading of YAML playbooks into plays, tasks and handlers."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any, Optional

import yaml

from . import operations
from .errors import PlaybookError
from .operations.base import coerce_bool
from .types import PlaySpec, Playbook, TaskSpec

logger = logging.getLogger(__name__)

LINE_KEY = "__line__"

PLAY_KEYS = {
    "name",
    "hosts",
    "become",
    "vars",
    "tasks",
    "handlers",
    "gather_facts",
    "any_errors_fatal",
    "force_handlers",
}

TASK_KEYWORDS = {
    "name",
    "loop",
    "with_items",
    "with_list",
    "loop_control",
    "when",
    "register",
    "notify",
    "failed_when",
    "changed_when",
    "ignore_errors",
    "become",
    "vars",
    "retries",
    "delay",
    "until",
    "block",
    "rescue",
    "always",
    "listen",
}

FREE_FORM_ACTIONS = {"command", "shell"}


class _LineLoader(yaml.SafeLoader):
    """SafeLoader that remembers the source line of every mapping."""

    def construct_mapping(self, node, deep=False):  # type: ignore[override]
        mapping = super().construct_mapping(node, deep=deep)
        mapping[LINE_KEY] = node.start_mark.line + 1
        return mapping


def _strip_lines(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_lines(v) for k, v in value.items() if k != LINE_KEY}
    if isinstance(value, list):
        return [_strip_lines(v) for v in value]
    return value


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


class PlaybookLoader:
    """Parses playbook documents and validates every action up front."""

    def load(self, path: Path) -> Playbook:
        path = Path(path)
        try:
            text = path.read_text()
        except FileNotFoundError:
            raise PlaybookError(f"{path}: playbook not found") from None
        try:
            playbook = self.parse_text(text, base_dir=path.parent)
        except PlaybookError as exc:
            location = f"{exc.line}" if exc.line is not None else "?"
            raise PlaybookError(f"{path}:{location} {exc}", line=exc.line, column=exc.column) from None
        playbook.path = str(path)
        return playbook

    def parse_text(self, text: str, base_dir: Optional[Path] = None) -> Playbook:
        try:
            data = yaml.load(text, Loader=_LineLoader)  # noqa: S506
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            line = mark.line + 1 if mark is not None else None
            column = mark.column + 1 if mark is not None else None
            problem = getattr(exc, "problem", None) or str(exc)
            raise PlaybookError(f"invalid YAML: {problem}", line=line, column=column) from None
        if data is None:
            return Playbook(plays=[])
        if not isinstance(data, list):
            raise PlaybookError("a playbook must be a list of plays", line=1)
        base = str(base_dir) if base_dir is not None else None
        plays = [self._parse_play(raw, index, base) for index, raw in enumerate(data, start=1)]
        return Playbook(plays=plays)

    def _parse_play(self, raw: Any, index: int, base_dir: Optional[str]) -> PlaySpec:
        if not isinstance(raw, dict):
            raise PlaybookError(f"play {index} must be a mapping")
        line = raw.get(LINE_KEY)
        unknown = set(raw) - PLAY_KEYS - {LINE_KEY}
        if unknown:
            raise PlaybookError(f"play {index} has unsupported keys: {', '.join(sorted(unknown))}", line=line)
        hosts = raw.get("hosts")
        if not hosts:
            raise PlaybookError(f"play {index} is missing 'hosts'", line=line)
        if isinstance(hosts, list):
            hosts = ",".join(str(h) for h in hosts)
        name = str(raw.get("name") or hosts)
        tasks = [
            self._parse_task(task, f"{index}.{pos}", base_dir)
            for pos, task in enumerate(_as_list(raw.get("tasks")), start=1)
        ]
        handlers = [
            self._parse_task(task, f"{index}.h{pos}", base_dir)
            for pos, task in enumerate(_as_list(raw.get("handlers")), start=1)
        ]
        play = PlaySpec(
            name=name,
            hosts=str(hosts),
            tasks=tasks,
            handlers=handlers,
            become=bool(coerce_bool(raw.get("become", False))),
            vars=_strip_lines(raw.get("vars") or {}),
            gather_facts=bool(coerce_bool(raw.get("gather_facts", True))),
            any_errors_fatal=bool(coerce_bool(raw.get("any_errors_fatal", False))),
            force_handlers=bool(coerce_bool(raw.get("force_handlers", False))),
        )
        self._check_notifications(play, line)
        return play

    def _parse_task(self, raw: Any, task_index: str, base_dir: Optional[str]) -> TaskSpec:
        if not isinstance(raw, dict):
            raise PlaybookError(f"task {task_index} must be a mapping")
        line = raw.get(LINE_KEY)
        action_keys = [key for key in raw if key not in TASK_KEYWORDS and key != LINE_KEY]
        name = raw.get("name")

        if "block" in raw:
            if action_keys:
                raise PlaybookError(
                    f"task {task_index} mixes a block with action '{action_keys[0]}'", line=line
                )
            task = TaskSpec(name=str(name or f"block-{task_index}"))
            task.block = self._parse_children(raw.get("block"), f"{task_index}.b", base_dir)
            task.rescue = self._parse_children(raw.get("rescue"), f"{task_index}.r", base_dir)
            task.always = self._parse_children(raw.get("always"), f"{task_index}.a", base_dir)
        else:
            if not action_keys:
                raise PlaybookError(f"task {task_index} has no action", line=line)
            if len(action_keys) > 1:
                raise PlaybookError(
                    f"task {task_index} has conflicting actions: {', '.join(action_keys)}", line=line
                )
            raw_action = action_keys[0]
            action = operations.canonical_action(raw_action)
            if action not in operations.OPERATION_REGISTRY:
                raise PlaybookError(f"task {task_index} uses unknown action '{raw_action}'", line=line)
            args = self._parse_args(action, raw[raw_action], task_index, line)
            if base_dir is not None:
                args.setdefault("_playbook_dir", base_dir)
            task = TaskSpec(name=str(name or action), action=action, args=args)

        self._apply_keywords(task, raw, task_index, line)
        return task

    def _parse_children(self, value: Any, prefix: str, base_dir: Optional[str]) -> list[TaskSpec]:
        return [
            self._parse_task(child, f"{prefix}{pos}", base_dir)
            for pos, child in enumerate(_as_list(value), start=1)
        ]

    @staticmethod
    def _parse_args(action: str, value: Any, task_index: str, line: Optional[int]) -> dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, dict):
            return _strip_lines(value)
        if isinstance(value, str):
            if action in FREE_FORM_ACTIONS:
                return {"_raw_params": value}
            args: dict[str, Any] = {}
            for token in shlex.split(value):
                key, sep, val = token.partition("=")
                if not sep:
                    raise PlaybookError(
                        f"task {task_index} argument '{token}' is not key=value", line=line
                    )
                args[key] = val
            return args
        raise PlaybookError(f"task {task_index} arguments must be a mapping or string", line=line)

    @staticmethod
    def _apply_keywords(task: TaskSpec, raw: dict[str, Any], task_index: str, line: Optional[int]) -> None:
        if "loop" in raw:
            task.loop = _strip_lines(raw["loop"])
        elif "with_list" in raw:
            task.loop = _strip_lines(raw["with_list"])
        elif "with_items" in raw:
            # flattened one level after rendering
            task.loop = _strip_lines(raw["with_items"])
            task.flatten_loop = True
        loop_control = raw.get("loop_control") or {}
        if not isinstance(loop_control, dict):
            raise PlaybookError(f"task {task_index} loop_control must be a mapping", line=line)
        if loop_control.get("label") is not None:
            task.loop_label = str(loop_control["label"])
        task.loop_var = str(loop_control.get("loop_var") or "item")
        if loop_control.get("index_var"):
            task.index_var = str(loop_control["index_var"])

        task.when = _as_list(raw.get("when"))
        task.failed_when = _as_list(raw.get("failed_when"))
        task.changed_when = _as_list(raw.get("changed_when"))
        task.until = _as_list(raw.get("until"))
        task.notify = [str(name) for name in _as_list(raw.get("notify"))]
        task.listen = [str(name) for name in _as_list(raw.get("listen"))]
        if raw.get("register") is not None:
            task.register = str(raw["register"])
        task.ignore_errors = bool(coerce_bool(raw.get("ignore_errors", False)))
        if "become" in raw:
            task.become = coerce_bool(raw["become"])
        task.vars = _strip_lines(raw.get("vars") or {})
        try:
            task.retries = int(raw.get("retries", 0) or 0)
            task.delay = float(raw.get("delay", 0) or 0)
        except (TypeError, ValueError):
            raise PlaybookError(f"task {task_index} retries/delay must be numeric", line=line) from None
        if task.until and not task.retries:
            task.retries = 3

    @staticmethod
    def _check_notifications(play: PlaySpec, line: Optional[int]) -> None:
        known: set[str] = set()
        for handler in play.handlers:
            known.add(handler.name)
            known.update(handler.listen)

        def _walk(tasks: list[TaskSpec]) -> None:
            for task in tasks:
                for name in task.notify:
                    if name not in known:
                        raise PlaybookError(
                            f"task '{task.name}' notifies unknown handler '{name}'", line=line
                        )
                _walk(task.block)
                _walk(task.rescue)
                _walk(task.always)

        _walk(play.tasks)
        _walk(play.handlers)
