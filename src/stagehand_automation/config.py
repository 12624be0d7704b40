from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_PLAYBOOK = Path("/etc/stagehand/site.yml")


@dataclass
class StagehandConfig:
    playbook: Path = DEFAULT_PLAYBOOK
    inventory: Optional[Path] = None
    forks: int = 5
    any_errors_fatal: bool = False
    force_handlers: bool = False
    run_timeout: Optional[float] = None
    report_file: Optional[Path] = None
    remote_user: Optional[str] = None
    private_key: Optional[str] = None
    ssh_timeout: float = 30.0
    host_key_checking: bool = True
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)
    log_level: Optional[str] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    inventory = defaults.get("inventory")
    report_file = defaults.get("report_file")
    run_timeout = defaults.get("run_timeout")
    private_key = defaults.get("private_key")
    return StagehandConfig(
        playbook=Path(defaults.get("playbook", DEFAULT_PLAYBOOK)),
        inventory=Path(inventory) if inventory else None,
        forks=int(defaults.get("forks", 5)),
        any_errors_fatal=bool(defaults.get("any_errors_fatal", False)),
        force_handlers=bool(defaults.get("force_handlers", False)),
        run_timeout=float(run_timeout) if run_timeout else None,
        report_file=Path(report_file) if report_file else None,
        remote_user=str(defaults["remote_user"]) if defaults.get("remote_user") else None,
        private_key=str(Path(private_key).expanduser()) if private_key else None,
        ssh_timeout=float(defaults.get("ssh_timeout", 30.0)),
        host_key_checking=bool(defaults.get("host_key_checking", True)),
        plugin_dirs=[Path(p) for p in _as_list(defaults.get("plugin_dirs"))],
        plugin_modules=[str(m) for m in _as_list(defaults.get("plugin_modules"))],
        log_level=str(defaults["log_level"]) if defaults.get("log_level") else None,
        aws_region=str(defaults["aws_region"]) if defaults.get("aws_region") else None,
        aws_profile=str(defaults["aws_profile"]) if defaults.get("aws_profile") else None,
    )
