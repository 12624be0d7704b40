from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Optional

from .context import HostContext
from .errors import HostUnreachable
from .executors import Executor, LocalExecutor, SSHExecutor
from .handlers import HandlerQueue
from .inventory import Inventory
from .secrets import SecretResolver, contains_secrets
from .task_executor import TaskExecutor
from .types import ActionResult, HostConfig, PlaySpec, Playbook, TaskOutcome, TaskSpec

logger = logging.getLogger(__name__)

GATHER_FACTS_TASK = TaskSpec(name="Gathering Facts", action="setup")
CONNECT_TASK = TaskSpec(name="Connecting", action="connect")


@dataclass
class HostRecap:
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    rescued: int = 0
    ignored: int = 0


@dataclass
class RunResult:
    results: list[ActionResult] = field(default_factory=list)
    recap: dict[str, HostRecap] = field(default_factory=dict)
    failed_hosts: list[str] = field(default_factory=list)
    unreachable_hosts: list[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def failures(self) -> list[ActionResult]:
        return [result for result in self.results if result.failed]

    @property
    def exit_code(self) -> int:
        return 2 if self.failed_hosts or self.unreachable_hosts else 0


class _HostRun:
    """Mutable state of one host while it works through one play."""

    def __init__(self, context: HostContext, play: PlaySpec, recap: HostRecap):
        self.context = context
        self.play = play
        self.recap = recap
        self.queue = HandlerQueue(play.handlers)
        self.results: list[ActionResult] = []
        self.last_failure: Optional[TaskOutcome] = None
        self.task_executor: Optional[TaskExecutor] = None


class PlaybookRunner:
    """Runs plays in order, fanning each play out over its target hosts."""

    def __init__(
        self,
        playbook: Playbook,
        inventory: Inventory,
        *,
        dry_run: bool = False,
        forks: int = 5,
        any_errors_fatal: bool = False,
        force_handlers: bool = False,
        run_timeout: Optional[float] = None,
        limit: Optional[str] = None,
        executor_factory: Optional[Callable[[HostConfig], Executor]] = None,
        progress_callback: Optional[Callable[[HostConfig, TaskSpec], None]] = None,
        secret_resolver: Optional[SecretResolver] = None,
        remote_user: Optional[str] = None,
        private_key: Optional[str] = None,
        ssh_timeout: float = 30.0,
        host_key_checking: bool = True,
    ):
        self.playbook = playbook
        self.inventory = inventory
        self.dry_run = dry_run
        self.forks = max(1, forks)
        self.any_errors_fatal = any_errors_fatal
        self.force_handlers = force_handlers
        self.run_timeout = run_timeout
        self.limit = limit
        self.executor_factory = executor_factory or self._executor_for
        self.progress_callback = progress_callback
        self.secret_resolver = secret_resolver or SecretResolver()
        self.remote_user = remote_user
        self.private_key = private_key
        self.ssh_timeout = ssh_timeout
        self.host_key_checking = host_key_checking

        self._stop = threading.Event()
        self._deadline: Optional[float] = None
        self._contexts: dict[str, HostContext] = {}
        self._executors: dict[str, Executor] = {}
        self._lock = threading.Lock()

    def stop(self) -> None:
        """Stop issuing new tasks; tasks already running are allowed to finish."""

        self._stop.set()

    def run(self) -> RunResult:
        outcome = RunResult()
        if self.run_timeout:
            self._deadline = time.monotonic() + self.run_timeout
        limited = set(self.inventory.resolve(self.limit)) if self.limit else None
        try:
            for play in self.playbook.plays:
                if self._should_stop():
                    logger.warning("run stopped before play %r", play.name)
                    break
                targets = [name for name in self.inventory.resolve(play.hosts) if limited is None or name in limited]
                for name in targets:
                    self._context(name)
                    outcome.recap.setdefault(name, HostRecap())
                active = [name for name in targets if self._contexts[name].active]
                if not active:
                    logger.info("play=%r matched no active hosts", play.name)
                    continue
                logger.info("play=%r hosts=%s", play.name, ",".join(active))
                self._run_play(play, active, outcome)
        finally:
            self._close_executors()
        outcome.interrupted = self._stop.is_set()
        for name, context in self._contexts.items():
            if context.unreachable:
                outcome.unreachable_hosts.append(name)
            elif context.failed:
                outcome.failed_hosts.append(name)
        return outcome

    def _run_play(self, play: PlaySpec, hosts: list[str], outcome: RunResult) -> None:
        play_vars = self.secret_resolver.resolve(play.vars) if contains_secrets(play.vars) else dict(play.vars)
        snapshot = self._hostvars_snapshot()
        runs = {}
        for name in hosts:
            context = self._contexts[name]
            context.magic["hostvars"] = snapshot
            context.begin_play(play_vars)
            runs[name] = _HostRun(context, play, outcome.recap[name])

        pool = ThreadPoolExecutor(max_workers=min(self.forks, len(hosts)), thread_name_prefix="stagehand")
        try:
            futures = [pool.submit(self._run_host, runs[name]) for name in hosts]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                logger.warning("interrupted; waiting for in-flight tasks to finish")
                self._stop.set()
                for future in futures:
                    future.result()
        finally:
            pool.shutdown(wait=True)

        for name in hosts:
            outcome.results.extend(runs[name].results)

    def _run_host(self, run: _HostRun) -> None:
        context = run.context
        host = context.host
        try:
            executor = self._connect(host)
        except HostUnreachable as exc:
            self._mark_unreachable(run, CONNECT_TASK, exc)
            return
        run.task_executor = TaskExecutor(context, executor, become=run.play.become)

        if run.play.gather_facts:
            outcome = self._run_task(run, GATHER_FACTS_TASK, {})
            if outcome.failed:
                self._fail_host(run)
                return

        if not self._run_tasks(run, run.play.tasks, {}):
            self._fail_host(run)

        force = self.force_handlers or run.play.force_handlers
        if context.unreachable or (context.failed and not force):
            if run.queue.pending:
                logger.info("host=%s skipping handlers: %s", host.name, ", ".join(run.queue.pending))
            return
        self._flush_handlers(run)

    def _flush_handlers(self, run: _HostRun) -> None:
        """Run queued handlers, including ones notified by other handlers.

        Each handler runs at most once per flush, so notification cycles end.
        """

        flushed: set[int] = set()
        while run.queue.pending:
            for handler in run.queue.drain():
                if id(handler) in flushed:
                    continue
                flushed.add(id(handler))
                if self._should_stop():
                    return
                outcome = self._run_task(run, handler, {})
                if outcome.failed and not outcome.ignored:
                    self._fail_host(run)
                    return

    def _run_tasks(self, run: _HostRun, tasks: list[TaskSpec], inherited: dict[str, Any]) -> bool:
        """Run ``tasks`` in order; ``False`` means the host failed."""

        for task in tasks:
            if self._should_stop() or run.context.unreachable:
                return not run.context.unreachable
            if task.is_block:
                if not self._run_block(run, task, inherited):
                    return False
                continue
            outcome = self._run_task(run, task, inherited)
            if outcome.failed and not outcome.ignored:
                return False
        return True

    def _run_block(self, run: _HostRun, block: TaskSpec, inherited: dict[str, Any]) -> bool:
        scope = dict(inherited)
        scope.update(block.vars)
        ok = self._run_tasks(run, [_inherit(block, child) for child in block.block], scope)
        if not ok and block.rescue and not run.context.unreachable:
            run.recap.rescued += 1
            failed = run.last_failure
            rescue_scope = dict(scope)
            if failed is not None:
                # a rescued failure is reported as rescued, not failed
                run.recap.failed -= 1
                rescue_scope["ansible_failed_task"] = {"name": failed.task, "action": failed.action}
                rescue_scope["ansible_failed_result"] = failed.as_registered()
                run.last_failure = None
            ok = self._run_tasks(run, [_inherit(block, child) for child in block.rescue], rescue_scope)
        if block.always and not run.context.unreachable:
            always_ok = self._run_tasks(run, [_inherit(block, child) for child in block.always], scope)
            ok = ok and always_ok
        return ok

    def _run_task(self, run: _HostRun, task: TaskSpec, inherited: dict[str, Any]) -> TaskOutcome:
        host = run.context.host
        if self.progress_callback:
            self.progress_callback(host, task)
        if run.task_executor is None:
            raise RuntimeError(f"host {host.name} has no task executor")
        try:
            outcome = run.task_executor.run(task, inherited)
        except HostUnreachable as exc:
            return self._mark_unreachable(run, task, exc)

        run.results.extend(outcome.results)
        recap = run.recap
        if outcome.skipped:
            recap.skipped += 1
        elif outcome.failed and outcome.ignored:
            recap.ignored += 1
        elif outcome.failed:
            recap.failed += 1
            run.last_failure = outcome
        else:
            recap.ok += 1
            if outcome.changed:
                recap.changed += 1

        if not outcome.failed or outcome.ignored:
            run.queue.notify(task.notify, outcome.changed)
        if outcome.failed and not outcome.ignored and self._errors_fatal(run.play):
            logger.error("host=%s failed task %r with any_errors_fatal set; stopping run", host.name, task.name)
            self._stop.set()
        return outcome

    def _mark_unreachable(self, run: _HostRun, task: TaskSpec, exc: HostUnreachable) -> TaskOutcome:
        host = run.context.host
        logger.error("host=%s unreachable: %s", host.name, exc.reason)
        run.context.unreachable = True
        run.recap.unreachable += 1
        result = ActionResult(
            host=host.name,
            action=task.action or "connect",
            changed=False,
            details=f"unreachable: {exc.reason}",
            failed=True,
            task=task.name,
        )
        run.results.append(result)
        if self._errors_fatal(run.play):
            self._stop.set()
        return TaskOutcome(
            host=host.name,
            task=task.name,
            action=result.action,
            results=[result],
            failed=True,
            unreachable=True,
        )

    def _fail_host(self, run: _HostRun) -> None:
        if not run.context.unreachable:
            run.context.failed = True
            logger.warning("host=%s failed in play %r; excluded from later plays", run.context.host.name, run.play.name)

    def _errors_fatal(self, play: PlaySpec) -> bool:
        return self.any_errors_fatal or play.any_errors_fatal

    def _should_stop(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline and not self._stop.is_set():
            logger.warning("run_timeout of %ss reached; no further tasks will start", self.run_timeout)
            self._stop.set()
        return self._stop.is_set()

    def _context(self, name: str) -> HostContext:
        context = self._contexts.get(name)
        if context is None:
            inventory_vars = self.inventory.host_variables(name)
            if contains_secrets(inventory_vars):
                inventory_vars = self.secret_resolver.resolve(inventory_vars)
            magic = {
                "inventory_hostname": name,
                "inventory_hostname_short": name.split(".")[0],
                "group_names": sorted(self.inventory.host_groups(name)),
                "groups": self.inventory.groups_mapping(),
                "playbook_dir": _playbook_dir(self.playbook),
            }
            context = HostContext(self.inventory.hosts[name], inventory_vars, magic)
            self._contexts[name] = context
        return context

    def _hostvars_snapshot(self) -> dict[str, dict[str, Any]]:
        snapshot: dict[str, dict[str, Any]] = {}
        for name in self.inventory.hosts:
            context = self._contexts.get(name)
            if context is None:
                snapshot[name] = self.inventory.host_variables(name)
                continue
            scope = context.variables()
            scope.pop("hostvars", None)
            snapshot[name] = scope
        return snapshot

    def _connect(self, host: HostConfig) -> Executor:
        with self._lock:
            executor = self._executors.get(host.name)
            if executor is None:
                executor = self.executor_factory(host)
                self._executors[host.name] = executor
        executor.connect()
        return executor

    def _close_executors(self) -> None:
        for executor in self._executors.values():
            try:
                executor.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("closing executor for %s failed: %s", executor.host.name, exc)
        self._executors.clear()

    def _executor_for(self, host: HostConfig) -> Executor:
        if host.connection == "local":
            return LocalExecutor(host, dry_run=self.dry_run)
        if host.connection == "ssh":
            return SSHExecutor(
                host,
                dry_run=self.dry_run,
                user=self.remote_user,
                private_key=self.private_key,
                timeout=self.ssh_timeout,
                host_key_checking=self.host_key_checking,
            )
        raise ValueError(f"Unknown connection type '{host.connection}'")


def _inherit(block: TaskSpec, child: TaskSpec) -> TaskSpec:
    """Copy ``child`` with the conditions and flags it inherits from ``block``."""

    return replace(
        child,
        when=list(block.when) + list(child.when),
        become=child.become if child.become is not None else block.become,
        ignore_errors=child.ignore_errors or block.ignore_errors,
    )


def _playbook_dir(playbook: Playbook) -> Optional[str]:
    if not playbook.path:
        return None
    return str(Path(playbook.path).resolve().parent)
