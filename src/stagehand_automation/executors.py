from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union
import grp
import hashlib
import logging
import os
import pwd
import shlex
import shutil
import socket
import stat
import subprocess

import paramiko

from .errors import HostUnreachable
from .types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Executor:
    """Base executor abstraction used by operations."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run
        self.become = False

    def connect(self) -> None:
        """Open the connection to the target, raising ``HostUnreachable``."""

    def close(self) -> None:
        """Release any connection held for the target."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        result = self._execute(cmd_list, env=env, cwd=cwd, timeout=timeout, input=input)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                cmd_list,
                result.stdout,
                result.stderr,
            )
        return result

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
        input: Optional[str],
    ) -> CommandResult:
        raise NotImplementedError

    def which(self, binary: str) -> bool:
        raise NotImplementedError

    # File primitives -----------------------------------------------------
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def checksum(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def file_mode(self, path: Path) -> Optional[int]:
        raise NotImplementedError

    def exists(self, path: Path) -> bool:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        raise NotImplementedError

    def read_link(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def symlink(self, path: Path, target: str) -> None:
        raise NotImplementedError

    def touch(self, path: Path) -> bool:
        raise NotImplementedError


class ShellExecutor(Executor):
    """Executor whose file primitives are POSIX commands sent through ``run``.

    They honour ``become`` and dry-run the way ordinary commands do.
    """

    def _probe(self, *command: str) -> CommandResult:
        return self.run(list(command), check=False, mutable=False)

    def which(self, binary: str) -> bool:
        return self._probe("sh", "-c", f"command -v {shlex.quote(binary)}").returncode == 0

    def read_file(self, path: Path) -> Optional[str]:
        result = self._probe("cat", str(path))
        if result.returncode != 0:
            return None
        return result.stdout

    def checksum(self, path: Path) -> Optional[str]:
        result = self._probe("sha256sum", str(path))
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def exists(self, path: Path) -> bool:
        target = shlex.quote(str(path))
        return self._probe("sh", "-c", f"test -e {target} || test -L {target}").returncode == 0

    def file_mode(self, path: Path) -> Optional[int]:
        result = self._probe("stat", "-c", "%a", str(path))
        if result.returncode != 0:
            return None
        return int(result.stdout.strip(), 8)

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        changed = False
        reasons: list[str] = []
        if self.checksum(path) != content_checksum(content):
            changed = True
            reasons.append("content")
            target = shlex.quote(str(path))
            parent = shlex.quote(str(path.parent))
            self.run(["sh", "-c", f"mkdir -p {parent} && cat > {target}"], input=content)
        if mode is not None:
            existing_mode = self.file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                self.run(["chmod", f"{mode:04o}", str(path)])
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        changed = False
        reasons: list[str] = []
        is_dir = self._probe("test", "-d", str(path)).returncode == 0
        if not is_dir:
            changed = True
            if self.exists(path):
                reasons.append("replaced-non-dir")
                self.run(["rm", "-f", str(path)])
            else:
                reasons.append("created")
            self.run(["mkdir", "-p", str(path)])
        if mode is not None:
            existing_mode = self.file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                self.run(["chmod", f"{mode:04o}", str(path)])
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def remove_path(self, path: Path) -> bool:
        if not self.exists(path):
            return False
        self.run(["rm", "-rf", str(path)])
        return True

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        result = self._probe("stat", "-c", "%U:%G", str(path))
        current_owner, _, current_group = result.stdout.strip().partition(":")
        reasons: list[str] = []
        if owner is not None and current_owner != str(owner):
            reasons.append(f"owner->{owner}")
        if group is not None and current_group != str(group):
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        spec = f"{owner or ''}:{group or ''}".rstrip(":")
        self.run(["chown", spec, str(path)])
        return True, ", ".join(reasons)

    def read_link(self, path: Path) -> Optional[str]:
        result = self._probe("readlink", str(path))
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def symlink(self, path: Path, target: str) -> None:
        self.run(["ln", "-sfn", target, str(path)])

    def touch(self, path: Path) -> bool:
        if self.exists(path):
            return False
        self.run(["touch", str(path)])
        return True


class LocalExecutor(ShellExecutor):
    """Executor that acts directly on the local host.

    Without root, ``become`` sends writes through ``sudo`` as shell commands
    and reads fall back to them when permission is denied.
    """

    @property
    def escalated(self) -> bool:
        return self.become and os.geteuid() != 0

    def _execute(self, command, *, env, cwd, timeout, input):  # type: ignore[override]
        if self.escalated:
            command = ["sudo", "-n", "--", *command]
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        proc = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            input=input,
        )
        return CommandResult(command, proc.stdout, proc.stderr, proc.returncode)

    def which(self, binary: str) -> bool:
        return shutil.which(binary) is not None

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except PermissionError:
            if self.escalated:
                return super().read_file(path)
            raise
        except FileNotFoundError:
            return None

    def checksum(self, path: Path) -> Optional[str]:
        try:
            return hashlib.sha256(path.read_bytes()).hexdigest()
        except PermissionError:
            if self.escalated:
                return super().checksum(path)
            raise
        except (FileNotFoundError, IsADirectoryError):
            return None

    def exists(self, path: Path) -> bool:
        return path.exists() or path.is_symlink()

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        if self.escalated:
            return super().write_file(path, content=content, mode=mode)
        changed = False
        reasons: list[str] = []

        if self.checksum(path) != content_checksum(content):
            changed = True
            reasons.append("content")
            if not self.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")

        if mode is not None:
            existing_mode = self.file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                if not self.dry_run:
                    # ``chmod`` fails if the file is absent, so guard it.
                    if path.exists():
                        os.chmod(path, mode)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        if self.escalated:
            return super().ensure_directory(path, mode=mode)
        changed = False
        reasons: list[str] = []

        if not path.exists():
            changed = True
            reasons.append("created")
            if not self.dry_run:
                path.mkdir(parents=True, exist_ok=True)
        elif not path.is_dir():
            changed = True
            reasons.append("replaced-non-dir")
            if not self.dry_run:
                self.remove_path(path)
                path.mkdir(parents=True, exist_ok=True)

        if mode is not None:
            existing_mode = self.file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                if not self.dry_run:
                    if path.exists():
                        os.chmod(path, mode)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def remove_path(self, path: Path) -> bool:
        if self.escalated:
            return super().remove_path(path)
        if not self.exists(path):
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        if self.escalated:
            return super().set_ownership(path, owner=owner, group=group)
        uid = _resolve_uid(owner)
        gid = _resolve_gid(group)
        try:
            current = path.lstat()
        except FileNotFoundError:
            # Dry runs may not have created the path yet.
            return (uid is not None or gid is not None), "owner"
        reasons: list[str] = []
        if uid is not None and current.st_uid != uid:
            reasons.append(f"owner->{owner}")
        if gid is not None and current.st_gid != gid:
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        if not self.dry_run:
            os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)
        return True, ", ".join(reasons)

    def read_link(self, path: Path) -> Optional[str]:
        try:
            if path.is_symlink():
                return os.readlink(path)
        except OSError:
            return None
        return None

    def symlink(self, path: Path, target: str) -> None:
        if self.escalated:
            return super().symlink(path, target)
        if self.dry_run:
            return
        self.remove_path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, path)

    def touch(self, path: Path) -> bool:
        if self.escalated:
            return super().touch(path)
        if path.exists():
            return False
        if not self.dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()
        return True

    def file_mode(self, path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None


class SSHExecutor(ShellExecutor):
    """Executor that drives a remote host over SSH."""

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        user: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: float = 30.0,
        host_key_checking: bool = True,
    ):
        super().__init__(host, dry_run=dry_run)
        self.user = host.user or user
        self.private_key = host.private_key or private_key
        self.timeout = timeout
        self.host_key_checking = host_key_checking
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        if self._client is not None:
            return
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.host_key_checking:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        address = self.host.address or self.host.name
        logger.debug("ssh connect host=%s address=%s:%s", self.host.name, address, self.host.port)
        try:
            client.connect(
                hostname=address,
                port=self.host.port,
                username=self.user,
                key_filename=self.private_key,
                timeout=self.timeout,
            )
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise HostUnreachable(self.host.name, str(exc)) from exc
        self._client = client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _execute(self, command, *, env, cwd, timeout, input):  # type: ignore[override]
        self.connect()
        if self._client is None:
            raise HostUnreachable(self.host.name, "ssh session is not connected")
        line = self._compose(command, env=env, cwd=cwd)
        try:
            stdin, stdout, stderr = self._client.exec_command(line, timeout=timeout)
            if input is not None:
                stdin.write(input)
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.error) as exc:
            self.close()
            raise HostUnreachable(self.host.name, str(exc)) from exc
        return CommandResult(command, out, err, rc)

    def _compose(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> str:
        script = shlex.join(command)
        if env:
            assignments = " ".join(shlex.quote(f"{k}={v}") for k, v in env.items())
            script = f"env {assignments} {script}"
        if cwd is not None:
            script = f"cd {shlex.quote(str(cwd))} && {script}"
        line = f"sh -c {shlex.quote(script)}"
        if self.become and self.user != "root":
            line = f"sudo -n -- {line}"
        return line


def _resolve_uid(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return pwd.getpwnam(text).pw_uid
        except KeyError:
            raise ValueError(f"unknown user '{text}'")


def _resolve_gid(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return grp.getgrnam(text).gr_gid
        except KeyError:
            raise ValueError(f"unknown group '{text}'")
