import re
import shlex
from pathlib import Path
from typing import Optional

import pytest

from stagehand_automation.executors import CommandResult, Executor, content_checksum
from stagehand_automation.types import HostConfig

UBUNTU_OS_RELEASE = """NAME="Ubuntu"
VERSION_ID="22.04"
ID=ubuntu
ID_LIKE=debian
VERSION_CODENAME=jammy
"""

DEFAULT_SERVICES = (
    "ssh",
    "fail2ban",
    "nginx",
    "elasticsearch",
    "logstash",
    "kibana",
    "filebeat",
)


class SimulatedHost:
    """In-memory model of an Ubuntu host answering the commands operations run."""

    def __init__(
        self,
        name: str = "local",
        *,
        packages=(),
        services: Optional[dict] = None,
        ufw_active: bool = False,
        files: Optional[dict] = None,
        events: Optional[list] = None,
    ):
        self.name = name
        self.packages = set(packages)
        self.services = {svc: {"active": False, "enabled": False} for svc in DEFAULT_SERVICES}
        self.services.update(services or {})
        self.ufw_active = ufw_active
        self.ufw_rules: list[str] = []
        self.files: dict[str, str] = dict(files or {})
        self.modes: dict[str, int] = {}
        self.dirs: set[str] = set()
        self.commands: list[list[str]] = []
        self.events = events if events is not None else []
        self.binaries = {"systemctl", "ufw", "apt-get", "dpkg-query", "sh"}

    def handle(self, command: list[str], input: Optional[str] = None) -> CommandResult:
        self.commands.append(command)
        self.events.append((self.name, " ".join(command)))
        head = command[0] if command else ""
        if head == "sh" and command[1:2] == ["-c"]:
            return self.handle_script(command, command[2])
        handler = {
            "systemctl": self._systemctl,
            "ufw": self._ufw,
            "dpkg-query": self._dpkg_query,
            "apt-get": self._apt_get,
            "cat": self._cat,
            "uname": lambda cmd: self._ok(cmd, "x86_64\n" if "-m" in cmd else "5.15.0\n"),
            "hostname": lambda cmd: self._ok(cmd, f"{self.name}\n"),
            "grep": self._grep,
            "chmod": self._chmod,
        }.get(head)
        if handler is None:
            return self._ok(command)
        return handler(command)

    def handle_script(self, command: list[str], script: str) -> CommandResult:
        words = shlex.split(script)
        if words and words[0] in {"systemctl", "grep", "ufw"}:
            result = self.handle(words)
            return CommandResult(command, result.stdout, result.stderr, result.returncode)
        return self._ok(command)

    @staticmethod
    def _ok(command, stdout: str = "") -> CommandResult:
        return CommandResult(command, stdout, "", 0)

    def _systemctl(self, command: list[str]) -> CommandResult:
        verb, name = command[1], command[2]
        service = self.services.get(name)
        if service is None:
            return CommandResult(command, "", f"Unit {name}.service could not be found.", 4 if verb == "status" else 5)
        if verb == "is-active":
            return CommandResult(command, "", "", 0 if service["active"] else 3)
        if verb == "is-enabled":
            return CommandResult(command, "", "", 0 if service["enabled"] else 1)
        if verb == "status":
            return CommandResult(command, f"{name}.service", "", 0 if service["active"] else 3)
        if verb in {"start", "restart", "reload"}:
            service["active"] = True
        elif verb == "stop":
            service["active"] = False
        elif verb == "enable":
            service["enabled"] = True
        elif verb == "disable":
            service["enabled"] = False
        return self._ok(command)

    def _ufw(self, command: list[str]) -> CommandResult:
        args = command[1:]
        if args == ["show", "added"]:
            lines = ["Added user rules (see 'ufw status' for running firewall):", *self.ufw_rules]
            return self._ok(command, "\n".join(lines) + "\n")
        if args == ["status"]:
            return self._ok(command, f"Status: {'active' if self.ufw_active else 'inactive'}\n")
        if args == ["--force", "enable"]:
            self.ufw_active = True
        elif args == ["disable"]:
            self.ufw_active = False
        elif args and args[0] in {"allow", "deny", "reject", "limit"}:
            self.ufw_rules.append("ufw " + " ".join(args))
        return self._ok(command)

    def _dpkg_query(self, command: list[str]) -> CommandResult:
        if command[-1].startswith("${Package}"):
            lines = [f"{pkg}\t1.0\tinstall ok installed" for pkg in sorted(self.packages)]
            return self._ok(command, "\n".join(lines) + "\n")
        package = command[-1]
        if package in self.packages:
            return self._ok(command, "install ok installed")
        return CommandResult(command, "", f"dpkg-query: no packages found matching {package}", 1)

    def _apt_get(self, command: list[str]) -> CommandResult:
        names = [word for word in command[2:] if not word.startswith("-")]
        if command[1] == "install":
            self.packages.update(names)
        elif command[1] == "remove":
            self.packages.difference_update(names)
        return self._ok(command)

    def _cat(self, command: list[str]) -> CommandResult:
        if command[1] == "/etc/os-release":
            return self._ok(command, UBUNTU_OS_RELEASE)
        content = self.files.get(command[1])
        if content is None:
            return CommandResult(command, "", "No such file or directory", 1)
        return self._ok(command, content)

    def _grep(self, command: list[str]) -> CommandResult:
        pattern, path = command[-2], command[-1]
        content = self.files.get(path)
        if content is None:
            return CommandResult(command, "", f"grep: {path}: No such file or directory", 2)
        found = re.search(pattern, content, re.MULTILINE) is not None
        return CommandResult(command, "", "", 0 if found else 1)

    def _chmod(self, command: list[str]) -> CommandResult:
        self.modes[command[2]] = int(command[1], 8)
        return self._ok(command)


class FakeExecutor(Executor):
    """Executor backed by a ``SimulatedHost`` instead of a real machine."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False, sim: Optional[SimulatedHost] = None):
        super().__init__(host, dry_run=dry_run)
        self.sim = sim or SimulatedHost(host.name)
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def _execute(self, command, *, env, cwd, timeout, input):  # type: ignore[override]
        return self.sim.handle(command, input)

    def which(self, binary: str) -> bool:
        return binary in self.sim.binaries

    def read_file(self, path: Path) -> Optional[str]:
        return self.sim.files.get(str(path))

    def checksum(self, path: Path) -> Optional[str]:
        content = self.sim.files.get(str(path))
        return None if content is None else content_checksum(content)

    def file_mode(self, path: Path) -> Optional[int]:
        return self.sim.modes.get(str(path))

    def exists(self, path: Path) -> bool:
        return str(path) in self.sim.files or str(path) in self.sim.dirs

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        reasons = []
        if self.checksum(path) != content_checksum(content):
            reasons.append("content")
            if not self.dry_run:
                self.sim.files[str(path)] = content
                self.sim.events.append((self.sim.name, f"write {path}"))
        if mode is not None and self.sim.modes.get(str(path)) != mode:
            reasons.append(f"mode->{mode:04o}")
            if not self.dry_run:
                self.sim.modes[str(path)] = mode
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        reasons = []
        if str(path) not in self.sim.dirs:
            reasons.append("created")
            if not self.dry_run:
                self.sim.dirs.add(str(path))
        if mode is not None and self.sim.modes.get(str(path)) != mode:
            reasons.append(f"mode->{mode:04o}")
            if not self.dry_run:
                self.sim.modes[str(path)] = mode
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def remove_path(self, path: Path) -> bool:
        existed = self.exists(path)
        if existed and not self.dry_run:
            self.sim.files.pop(str(path), None)
            self.sim.dirs.discard(str(path))
        return existed

    def set_ownership(self, path: Path, *, owner: Optional[str], group: Optional[str]) -> tuple[bool, str]:
        if owner in {None, "root"} and group in {None, "root"}:
            return False, "noop"
        return True, f"owner->{owner}"

    def read_link(self, path: Path) -> Optional[str]:
        return None

    def symlink(self, path: Path, target: str) -> None:
        self.sim.files[str(path)] = f"-> {target}"

    def touch(self, path: Path) -> bool:
        if self.exists(path):
            return False
        if not self.dry_run:
            self.sim.files[str(path)] = ""
        return True


@pytest.fixture
def sim() -> SimulatedHost:
    return SimulatedHost("local")


@pytest.fixture
def fake_executor(sim) -> FakeExecutor:
    return FakeExecutor(HostConfig(name="local"), sim=sim)


@pytest.fixture
def make_sim():
    return SimulatedHost


@pytest.fixture
def make_executor():
    return FakeExecutor
