"""Read-only queries describing the current state of a target host."""

from __future__ import annotations

import logging
import shlex
from typing import Any

from .executors import Executor

logger = logging.getLogger(__name__)

DISTRIBUTION_NAMES = {
    "ubuntu": "Ubuntu",
    "debian": "Debian",
    "centos": "CentOS",
    "rhel": "RedHat",
    "fedora": "Fedora",
    "rocky": "Rocky",
    "almalinux": "AlmaLinux",
    "amzn": "Amazon",
    "arch": "Archlinux",
}

OS_FAMILIES = {
    "ubuntu": "Debian",
    "debian": "Debian",
    "centos": "RedHat",
    "rhel": "RedHat",
    "fedora": "RedHat",
    "rocky": "RedHat",
    "almalinux": "RedHat",
    "amzn": "RedHat",
    "arch": "Archlinux",
}


def parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


def distribution_facts(os_release: dict[str, str]) -> dict[str, Any]:
    dist_id = os_release.get("ID", "").lower()
    like = os_release.get("ID_LIKE", "").lower().split()
    family = OS_FAMILIES.get(dist_id)
    if family is None:
        family = next((OS_FAMILIES[item] for item in like if item in OS_FAMILIES), "")
    version = os_release.get("VERSION_ID", "")
    return {
        "distribution": DISTRIBUTION_NAMES.get(dist_id, os_release.get("NAME", dist_id)),
        "distribution_version": version,
        "distribution_major_version": version.split(".")[0] if version else "",
        "distribution_release": os_release.get("VERSION_CODENAME", ""),
        "os_family": family,
    }


class FactGatherer:
    """Collects facts through an executor without changing the host."""

    def __init__(self, executor: Executor):
        self.executor = executor

    def gather(self) -> dict[str, Any]:
        facts: dict[str, Any] = {"system": "Linux"}
        release = self._read("cat", "/etc/os-release")
        facts.update(distribution_facts(parse_os_release(release)))
        facts["architecture"] = self._read("uname", "-m").strip()
        facts["hostname"] = self._read("hostname").strip()
        facts["kernel"] = self._read("uname", "-r").strip()
        logger.debug(
            "facts host=%s distribution=%s version=%s",
            self.executor.host.name,
            facts["distribution"],
            facts["distribution_version"],
        )
        return facts

    def packages(self, manager: str = "auto") -> dict[str, list[dict[str, str]]]:
        if manager == "auto":
            if self.executor.which("dpkg-query"):
                manager = "apt"
            elif self.executor.which("rpm"):
                manager = "rpm"
            else:
                raise RuntimeError("No supported package database found (dpkg or rpm)")
        if manager == "apt":
            output = self._read("dpkg-query", "-W", "-f", "${Package}\t${Version}\t${Status}\n")
            return _parse_dpkg(output)
        if manager == "rpm":
            output = self._read("rpm", "-qa", "--qf", "%{NAME}\t%{VERSION}-%{RELEASE}\n")
            return _parse_rpm(output)
        raise ValueError(f"Unknown package manager '{manager}'")

    def _read(self, *command: str) -> str:
        result = self.executor.run(list(command), check=False, mutable=False)
        if result.returncode != 0:
            logger.debug("fact query %s failed rc=%s", command[0], result.returncode)
            return ""
        return result.stdout


def _parse_dpkg(output: str) -> dict[str, list[dict[str, str]]]:
    packages: dict[str, list[dict[str, str]]] = {}
    for line in output.splitlines():
        fields = line.split("\t")
        if len(fields) < 3 or not fields[2].endswith(" installed"):
            continue
        name, version = fields[0], fields[1]
        packages.setdefault(name, []).append({"name": name, "version": version, "source": "apt"})
    return packages


def _parse_rpm(output: str) -> dict[str, list[dict[str, str]]]:
    packages: dict[str, list[dict[str, str]]] = {}
    for line in output.splitlines():
        name, _, version = line.partition("\t")
        if not name:
            continue
        packages.setdefault(name, []).append({"name": name, "version": version, "source": "rpm"})
    return packages
