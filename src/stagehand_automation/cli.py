from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, StagehandConfig, load_config
from .errors import InventoryError, PlaybookError
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .playbook import PlaybookLoader
from .report import write_report
from .runner import HostRecap, PlaybookRunner
from .secrets import SecretError
from .types import ActionResult, HostConfig, TaskSpec

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand playbook runner")
    parser.add_argument(
        "playbook",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a YAML playbook (default from config or /etc/stagehand/site.yml)",
    )
    parser.add_argument(
        "-i",
        "--inventory",
        type=Path,
        help="TOML inventory file (default from config, else a single local host)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to stagehand config file (default: /etc/stagehand/main.conf)",
    )
    parser.add_argument("--check", action="store_true", help="Report what would change without changing it")
    parser.add_argument("--limit", help="Further restrict every play to hosts matching this pattern")
    parser.add_argument("--forks", type=int, help="Number of hosts driven in parallel")
    parser.add_argument("--report", type=Path, help="Write a JSON run report to this path")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: from config, else INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        configure_logging(args.log_level or "INFO")
        print(colorize(f"Config load failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    configure_logging(args.log_level or cfg.log_level or "INFO")
    _apply_aws_env(cfg)

    try:
        _load_plugins(cfg)
    except Exception as exc:  # noqa: BLE001
        print(colorize(f"Plugin load failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    playbook_path = args.playbook or cfg.playbook
    inventory_path = args.inventory or cfg.inventory
    try:
        inventory = InventoryLoader().load(inventory_path)
        playbook = PlaybookLoader().load(playbook_path)
    except InventoryError as exc:
        print(colorize(f"Inventory validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    except PlaybookError as exc:
        print(colorize(f"Playbook validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    runner = PlaybookRunner(
        playbook,
        inventory,
        dry_run=args.check,
        forks=args.forks or cfg.forks,
        any_errors_fatal=cfg.any_errors_fatal,
        force_handlers=cfg.force_handlers,
        run_timeout=cfg.run_timeout,
        limit=args.limit,
        progress_callback=print_progress,
        remote_user=cfg.remote_user,
        private_key=cfg.private_key,
        ssh_timeout=cfg.ssh_timeout,
        host_key_checking=cfg.host_key_checking,
    )
    try:
        run = runner.run()
    except (InventoryError, SecretError) as exc:
        _clear_progress()
        print(colorize(f"Run aborted: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in run.results:
        _clear_progress()
        summary.add(result)
        if not should_display_result(result, effective_level):
            continue
        print(format_result(result))

    _clear_progress()
    print()
    for host, recap in run.recap.items():
        print(format_recap(host, recap))
    if run.interrupted:
        print(colorize("Run stopped before completion", Ansi.ORANGE))
    print(summary.render(check=args.check))

    report_path = args.report or cfg.report_file
    if report_path:
        write_report(report_path, run, playbook=str(playbook_path))

    return run.exit_code


def format_result(result: ActionResult) -> str:
    status = "changed" if result.changed else "ok"
    color: Optional[str] = None
    if result.failed:
        if result.details.startswith("unreachable:"):
            status = "unreachable"
            color = Ansi.ORANGE
        else:
            status = "failed"
            color = Ansi.RED
    elif result.skipped:
        status = "skipped"
        color = Ansi.CYAN
    elif result.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def format_recap(host: str, recap: HostRecap) -> str:
    line = (
        f"{host:<20} : ok={recap.ok} changed={recap.changed} unreachable={recap.unreachable} "
        f"failed={recap.failed} skipped={recap.skipped} rescued={recap.rescued} ignored={recap.ignored}"
    )
    if recap.failed or recap.unreachable:
        return colorize(line, Ansi.RED)
    if recap.changed:
        return colorize(line, Ansi.YELLOW)
    return colorize(line, Ansi.GREEN)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def print_progress(host: HostConfig, task: TaskSpec) -> None:
    global _last_progress_len
    resource = _progress_resource(task.args)
    suffix = f"[{resource}]" if resource else ""
    line = f"{host.name}::{task.action}{suffix} pending..."
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _progress_resource(data: dict) -> Optional[str]:
    for key in ("name", "path", "dest", "repo", "rule", "_raw_params", "cmd"):
        value = data.get(key)
        if isinstance(value, (list, tuple)) and value:
            rendered = ", ".join(str(p) for p in value[:3])
            if len(value) > 3:
                rendered += ", ..."
            return rendered
        if value:
            return str(value)
    return None


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


def _load_plugins(cfg: StagehandConfig) -> None:
    """Import plugin files and modules and let them extend the registry."""

    for directory in cfg.plugin_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("plugin directory %s does not exist", directory)
            continue
        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            spec = importlib.util.spec_from_file_location(f"stagehand_plugins.{path.stem}", path)
            if spec is None or spec.loader is None:
                logger.warning("cannot load plugin file %s", path)
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            _register_plugin(module, str(path))
    for name in cfg.plugin_modules:
        _register_plugin(importlib.import_module(name), name)


def _register_plugin(module, origin: str) -> None:
    hook = getattr(module, "register_operations", None)
    if hook is None:
        logger.warning("plugin %s has no register_operations()", origin)
        return
    before = set(OPERATION_REGISTRY)
    hook(OPERATION_REGISTRY)
    added = sorted(set(OPERATION_REGISTRY) - before)
    logger.debug("plugin=%s operations=%s", origin, ",".join(added))


def _apply_aws_env(cfg: StagehandConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


class Summary:
    def __init__(self) -> None:
        self.changes = 0
        self.skipped = 0
        self.failures = 0
        self.hosts: set[str] = set()

    def add(self, result: ActionResult) -> None:
        self.hosts.add(result.host)
        if result.failed:
            self.failures += 1
        elif result.skipped:
            self.skipped += 1
        elif result.changed:
            self.changes += 1

    def render(self, check: bool = False) -> str:
        parts = [
            f"Hosts: {len(self.hosts)}",
            f"Changes: {self.changes}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        if check:
            text += " (check mode)"
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
