from __future__ import annotations

import logging
import subprocess
import time
from typing import Any, Mapping, Optional

from .context import HostContext
from .errors import HostUnreachable, TemplateError
from .executors import Executor
from .operations import OPERATION_REGISTRY, Operation
from .templating import Templar
from .types import ActionResult, TaskOutcome, TaskSpec

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Applies one declared task to one host.

    Expands the loop, evaluates ``when`` per item, renders arguments,
    dispatches to the registered operation and applies the
    ``failed_when``/``changed_when``/``until`` overrides before registering
    the outcome in the host context.
    """

    def __init__(self, context: HostContext, executor: Executor, *, become: bool = False):
        self.context = context
        self.executor = executor
        self.become = become

    def run(self, task: TaskSpec, inherited_vars: Optional[Mapping[str, Any]] = None) -> TaskOutcome:
        if task.action is None:
            raise RuntimeError(f"block '{task.name}' must be expanded before it is run")
        extra = dict(inherited_vars or {})
        extra.update(task.vars)
        base_vars = self.context.variables(extra)
        outcome = TaskOutcome(host=self.context.host.name, task=task.name, action=task.action)

        if task.loop is None:
            outcome.results.append(self._run_once(task, base_vars, label=None))
        else:
            try:
                items = self._loop_items(task, base_vars)
            except TemplateError as exc:
                outcome.results.append(self._failure(task, str(exc)))
                outcome.failed = True
                return self._finish(task, outcome)
            outcome.loop_items = items
            for index, item in enumerate(items):
                item_vars = dict(base_vars)
                item_vars[task.loop_var] = item
                item_vars["loop"] = {
                    "index": index + 1,
                    "index0": index,
                    "first": index == 0,
                    "last": index == len(items) - 1,
                    "length": len(items),
                }
                if task.index_var:
                    item_vars[task.index_var] = index
                label = self._label(task, item_vars, item)
                outcome.results.append(self._run_once(task, item_vars, label=label))

        outcome.failed = any(r.failed for r in outcome.results)
        if outcome.failed and task.ignore_errors:
            outcome.ignored = True
        return self._finish(task, outcome)

    def _finish(self, task: TaskSpec, outcome: TaskOutcome) -> TaskOutcome:
        if task.register:
            self.context.register(task.register, outcome.as_registered())
        logger.debug(
            "task=%r host=%s changed=%s failed=%s skipped=%s",
            task.name,
            outcome.host,
            outcome.changed,
            outcome.failed,
            outcome.skipped,
        )
        return outcome

    def _loop_items(self, task: TaskSpec, variables: dict[str, Any]) -> list[Any]:
        items = Templar(variables).render(task.loop)
        if isinstance(items, dict):
            return [{"key": k, "value": v} for k, v in items.items()]
        if not isinstance(items, list):
            raise TemplateError(f"loop must resolve to a list, got {type(items).__name__}")
        if task.flatten_loop:
            flattened: list[Any] = []
            for item in items:
                flattened.extend(item if isinstance(item, list) else [item])
            return flattened
        return items

    @staticmethod
    def _label(task: TaskSpec, variables: dict[str, Any], item: Any) -> str:
        if task.loop_label is None:
            return str(item)
        try:
            return str(Templar(variables).render(task.loop_label))
        except TemplateError:
            return str(item)

    def _run_once(self, task: TaskSpec, variables: dict[str, Any], *, label: Optional[str]) -> ActionResult:
        templar = Templar(variables)
        try:
            if not templar.all_true(task.when):
                return ActionResult(
                    host=self.context.host.name,
                    action=task.action or "",
                    changed=False,
                    details="skipped (conditional result was false)",
                    skipped=True,
                    resource=label,
                    task=task.name,
                )
            args = templar.render(task.args)
        except TemplateError as exc:
            return self._failure(task, str(exc), label)

        operation_cls = OPERATION_REGISTRY.get(task.action or "")
        if operation_cls is None:
            return self._failure(task, f"unknown operation '{task.action}'", label)
        if getattr(operation_cls, "wants_variables", False):
            args["_vars"] = variables
        try:
            operation: Operation = operation_cls(args)
        except Exception as exc:  # noqa: BLE001
            return self._failure(task, f"invalid arguments: {exc}", label)

        self.executor.become = self.become if task.become is None else bool(task.become)
        attempts = max(task.retries, 0) + 1
        attempt = 1
        while True:
            result = self._apply(task, operation)
            if label is not None:
                result.resource = label
            result.task = task.name
            try:
                self._apply_overrides(task, result, variables)
                done = self._until_satisfied(task, result, variables)
            except TemplateError as exc:
                return self._failure(task, str(exc), label)
            if done or attempt >= attempts:
                break
            logger.info(
                "task=%r host=%s retrying (%s/%s)", task.name, self.context.host.name, attempt, task.retries
            )
            if task.delay:
                time.sleep(task.delay)
            attempt += 1
        if result.facts and not result.failed:
            self.context.add_facts(result.facts)
        return result

    def _apply(self, task: TaskSpec, operation: Operation) -> ActionResult:
        host = self.context.host
        try:
            return operation.apply(host, self.executor)
        except HostUnreachable:
            raise
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or exc.stdout or "").strip()
            first = stderr.splitlines()[0] if stderr else ""
            detail = f"rc={exc.returncode}: {first}" if first else f"rc={exc.returncode}"
            logger.error("action=%s host=%s failed: %s", task.action, host.name, detail)
            return ActionResult(
                host=host.name,
                action=task.action or "",
                changed=False,
                details=detail,
                failed=True,
                rc=exc.returncode,
                stdout=exc.stdout or "",
                stderr=exc.stderr or "",
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s host=%s failed: %s", task.action, host.name, exc, exc_info=True)
            return ActionResult(
                host=host.name,
                action=task.action or "",
                changed=False,
                details=str(exc),
                failed=True,
            )

    def _result_scope(self, task: TaskSpec, result: ActionResult, variables: dict[str, Any]) -> Templar:
        scope = dict(variables)
        if task.register:
            scope[task.register] = result.as_registered()
        return Templar(scope)

    def _apply_overrides(self, task: TaskSpec, result: ActionResult, variables: dict[str, Any]) -> None:
        if task.changed_when:
            result.changed = self._result_scope(task, result, variables).all_true(task.changed_when)
        if task.failed_when:
            failed = self._result_scope(task, result, variables).all_true(task.failed_when)
            if result.failed and not failed:
                result.details = f"{result.details} (failure suppressed)"
            elif failed and not result.failed:
                result.details = f"{result.details} (failed_when matched)"
            result.failed = failed

    def _until_satisfied(self, task: TaskSpec, result: ActionResult, variables: dict[str, Any]) -> bool:
        if task.until:
            return self._result_scope(task, result, variables).all_true(task.until)
        return not result.failed

    def _failure(self, task: TaskSpec, detail: str, label: Optional[str] = None) -> ActionResult:
        logger.error("task=%r host=%s failed: %s", task.name, self.context.host.name, detail)
        return ActionResult(
            host=self.context.host.name,
            action=task.action or "",
            changed=False,
            details=detail,
            failed=True,
            resource=label,
            task=task.name,
        )
