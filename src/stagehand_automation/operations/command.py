from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
import logging
import shlex

from .base import Operation
from ..executors import CommandResult, Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


class CommandOperation(Operation):
    """Run a command on the target and capture its rc, stdout and stderr.

    Commands are opaque to the engine, so a successful run reports
    ``changed=False``; playbooks mark real mutations with ``changed_when``.
    """

    action = "command"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_command = spec.get("_raw_params") or spec.get("cmd") or spec.get("argv")
        if not raw_command:
            raise ValueError(f"{self.action} operation requires a command")
        self.raw_command = raw_command
        self.creates = Path(str(spec["creates"])) if spec.get("creates") else None
        self.removes = Path(str(spec["removes"])) if spec.get("removes") else None
        self.cwd = Path(str(spec["chdir"])) if spec.get("chdir") else None
        self.stdin = None if spec.get("stdin") is None else str(spec["stdin"])
        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        self.timeout = self._normalize_timeout(spec.get("timeout"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        command = self._normalize_command(self.raw_command)

        if self.creates is not None:
            creates_path = self._resolve_path(self.creates)
            if executor.exists(creates_path):
                detail = f"skipped (creates {creates_path})"
                return self._result(host, detail, rc=0)

        if self.removes is not None:
            removes_path = self._resolve_path(self.removes)
            if not executor.exists(removes_path):
                detail = f"skipped (removes {removes_path})"
                return self._result(host, detail, rc=0)

        result = executor.run(
            command,
            check=False,
            mutable=True,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
            input=self.stdin,
        )

        if result.returncode != 0:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "%s failed rc=%s cmd=%s",
                    self.action,
                    result.returncode,
                    self._format_command(command),
                )
            return self._result(host, self._error_detail(result), result=result, failed=True)

        detail = "dry-run" if executor.dry_run else f"ran (rc={result.returncode})"
        return self._result(host, detail, result=result)

    def _result(
        self,
        host: HostConfig,
        detail: str,
        *,
        result: Optional[CommandResult] = None,
        rc: Optional[int] = None,
        failed: bool = False,
    ) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=self.action,
            changed=False,
            details=detail,
            failed=failed,
            resource=self._format_command(self._normalize_command(self.raw_command)),
            rc=result.returncode if result is not None else rc,
            stdout=result.stdout if result is not None else "",
            stderr=result.stderr if result is not None else "",
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path

    def _normalize_command(self, value: Any) -> list[str]:
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError(f"{self.action} command must be a string or list")

    @staticmethod
    def _format_command(command: Sequence[str]) -> str:
        text = " ".join(command)
        return (text[:77] + "...") if len(text) > 80 else text

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        """``rc=N`` plus the first line of stderr (or stdout), truncated."""

        output = (result.stderr or "").strip() or (result.stdout or "").strip()
        if not output:
            return f"rc={result.returncode}"
        line = output.splitlines()[0]
        if len(line) > 160:
            line = line[:157] + "..."
        return f"rc={result.returncode}: {line}"


class ShellOperation(CommandOperation):
    """Run a command through ``/bin/sh`` so pipes and redirects work."""

    action = "shell"

    def _normalize_command(self, value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return ["sh", "-c", " ".join(str(v) for v in value)]
        raise ValueError("shell command must be a string or list")
