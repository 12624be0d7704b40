from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .runner import RunResult
from .types import ActionResult

logger = logging.getLogger(__name__)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def _result_entry(result: ActionResult) -> dict[str, Any]:
    entry = {
        "host": result.host,
        "task": result.task,
        "action": result.action,
        "resource": result.resource,
        "changed": result.changed,
        "failed": result.failed,
        "skipped": result.skipped,
        "details": result.details,
    }
    if result.rc is not None:
        entry["rc"] = result.rc
    if result.stderr:
        entry["stderr"] = result.stderr
    return entry


def build_report(run: RunResult, *, playbook: Optional[str] = None) -> dict[str, Any]:
    """Summarise a run host by host, failures first-class."""

    return {
        "playbook": playbook,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "exit_code": run.exit_code,
        "interrupted": run.interrupted,
        "recap": {host: asdict(recap) for host, recap in run.recap.items()},
        "failed_hosts": list(run.failed_hosts),
        "unreachable_hosts": list(run.unreachable_hosts),
        "failures": [_result_entry(result) for result in run.failures],
        "results": [_result_entry(result) for result in run.results],
    }


def write_report(path: Path, run: RunResult, *, playbook: Optional[str] = None) -> None:
    data = _normalize_value(build_report(run, playbook=playbook))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))
    try:
        os.chmod(path, 0o600)
    except OSError:
        logger.debug("Unable to chmod report file %s", path, exc_info=True)
    logger.info("run report written to %s", path)
