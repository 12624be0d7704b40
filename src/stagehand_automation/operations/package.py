from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import logging

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

STATE_ALIASES = {"installed": "present", "removed": "absent"}


class PackageOperation(Operation):
    """Install or remove packages using the detected package manager."""

    default_manager: Optional[str] = None

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("pkg") or spec.get("packages")
        if isinstance(packages, str):
            self.packages = [p.strip() for p in packages.split(",") if p.strip()]
        else:
            self.packages = [str(p) for p in (packages or [])]
        self.update_cache = bool(coerce_bool(spec.get("update_cache", False)))
        if not self.packages and not self.update_cache:
            raise ValueError("package operation requires at least one package")
        state = str(spec.get("state", "present"))
        self.state = STATE_ALIASES.get(state, state)
        if self.state not in {"present", "absent", "latest"}:
            raise ValueError("package operation state must be 'present', 'absent' or 'latest'")
        self.preferred_manager = spec.get("manager") or self.default_manager

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        manager = PackageManagerFactory.create(self.preferred_manager, executor)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages
        )
        notes: list[str] = []
        if self.update_cache:
            manager.refresh(executor)
            notes.append("cache-updated")
        changed = False
        if self.packages:
            if self.state == "present":
                changed, details = manager.ensure_present(executor, self.packages)
            elif self.state == "latest":
                changed, details = manager.ensure_latest(executor, self.packages)
            else:
                changed, details = manager.ensure_absent(executor, self.packages)
            notes.append(details)
        detail_msg = " ".join([f"manager={manager.name}", *notes])
        return ActionResult(
            host=host.name,
            action="package",
            changed=changed,
            details=detail_msg,
            resource=",".join(self.packages) or None,
        )


class AptOperation(PackageOperation):
    default_manager = "apt"


class DnfOperation(PackageOperation):
    default_manager = "dnf"


class YumOperation(PackageOperation):
    default_manager = "yum"


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
        ("pacman", "pacman", lambda: PacmanPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str) and preferred.lower() != "auto":
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            if executor.which(binary):
                return factory()
        raise RuntimeError("No supported package manager found on PATH")


class PackageManager:
    name = "generic"

    def ensure_present(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        needed = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not needed:
            return False, "already-installed"
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def ensure_latest(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        packages = list(packages)
        missing = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        stale = [pkg for pkg in packages if pkg not in missing and self.is_upgradable(executor, pkg)]
        if not missing and not stale:
            return False, "already-latest"
        self.install(executor, missing + stale)
        parts = []
        if missing:
            parts.append(f"installed={','.join(missing)}")
        if stale:
            parts.append(f"upgraded={','.join(stale)}")
        return True, " ".join(parts)

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        removable = [pkg for pkg in packages if self.is_installed(executor, pkg)]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"

    def refresh(self, executor: Executor) -> None:
        raise NotImplementedError

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError

    def is_upgradable(self, executor: Executor, package: str) -> bool:
        return False


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and result.stdout.strip().endswith(" installed")


APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class AptPackageManager(PackageManager):
    name = "apt"

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update", "-q"], env=APT_ENV)

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", "-q", *packages], env=APT_ENV)

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", "-q", *packages], env=APT_ENV)

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)

    def is_upgradable(self, executor: Executor, package: str) -> bool:
        result = executor.run(["apt-get", "-s", "install", "--only-upgrade", package], check=False, mutable=False)
        return f"Inst {package} " in result.stdout


class DnfPackageManager(PackageManager):
    name = "dnf"

    def refresh(self, executor: Executor) -> None:
        executor.run([self.name, "makecache", "-q"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False, mutable=False)
        return result.returncode == 0

    def is_upgradable(self, executor: Executor, package: str) -> bool:
        # check-update exits 100 when updates are available
        result = executor.run([self.name, "check-update", "-q", package], check=False, mutable=False)
        return result.returncode == 100


class YumPackageManager(DnfPackageManager):
    name = "yum"


class PacmanPackageManager(PackageManager):
    name = "pacman"

    def refresh(self, executor: Executor) -> None:
        executor.run(["pacman", "-Sy", "--noconfirm"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["pacman", "-S", "--noconfirm", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["pacman", "-R", "--noconfirm", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["pacman", "-Qi", package], check=False, mutable=False)
        return result.returncode == 0
