from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import InventoryError
from .types import HostConfig

logger = logging.getLogger(__name__)

PATTERN_SPLIT_RE = re.compile(r"[,:]")


@dataclass
class Inventory:
    hosts: dict[str, HostConfig]
    groups: dict[str, list[str]] = field(default_factory=dict)
    group_vars: dict[str, dict[str, Any]] = field(default_factory=dict)

    def groups_mapping(self) -> dict[str, list[str]]:
        mapping = {"all": list(self.hosts)}
        mapping.update({name: list(members) for name, members in self.groups.items()})
        grouped = {member for members in self.groups.values() for member in members}
        mapping["ungrouped"] = [name for name in self.hosts if name not in grouped]
        return mapping

    def host_groups(self, name: str) -> list[str]:
        return [group for group, members in self.groups.items() if name in members]

    def host_variables(self, name: str) -> dict[str, Any]:
        """Merge ``all`` group vars, then group vars, then the host's own."""

        host = self.hosts[name]
        merged: dict[str, Any] = dict(self.group_vars.get("all", {}))
        for group in self.host_groups(name):
            merged.update(self.group_vars.get(group, {}))
        merged.update(host.variables)
        return merged

    def resolve(self, pattern: str) -> list[str]:
        """Return host names matching ``pattern`` in inventory order.

        Terms are separated by commas or colons. ``all`` and ``*`` match every
        host, ``!term`` removes hosts and ``&term`` keeps only the intersection.
        A term may name a host, a group or be a shell-style wildcard.
        """

        terms = [term.strip() for term in PATTERN_SPLIT_RE.split(pattern or "") if term.strip()]
        if not terms:
            raise InventoryError("empty host pattern")
        selected: set[str] = set()
        intersections: list[set[str]] = []
        exclusions: set[str] = set()
        for term in terms:
            if term.startswith("!"):
                exclusions |= self._match_term(term[1:])
            elif term.startswith("&"):
                intersections.append(self._match_term(term[1:]))
            else:
                selected |= self._match_term(term)
        for subset in intersections:
            selected &= subset
        selected -= exclusions
        return [name for name in self.hosts if name in selected]

    def _match_term(self, term: str) -> set[str]:
        if term in {"all", "*"}:
            return set(self.hosts)
        if term in self.hosts:
            return {term}
        if term in self.groups:
            return set(self.groups[term])
        if any(ch in term for ch in "*?["):
            matched = {name for name in self.hosts if fnmatch.fnmatch(name, term)}
            for group, members in self.groups.items():
                if fnmatch.fnmatch(group, term):
                    matched |= set(members)
            return matched
        logger.warning("Host pattern term '%s' matched no hosts or groups", term)
        return set()


class InventoryLoader:
    """Loads inventories from TOML files."""

    def load(self, path: Optional[Path]) -> Inventory:
        if path is None:
            return self._build({}, {})
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text())
        except FileNotFoundError:
            raise InventoryError(f"{path}: inventory file not found") from None
        except tomllib.TOMLDecodeError as exc:
            raise InventoryError(f"{path}: {exc}") from None
        return self._build(data.get("hosts", {}), data.get("groups", {}))

    def _build(self, host_data: dict[str, Any], group_data: dict[str, Any]) -> Inventory:
        if not host_data:
            host_data = {"local": {"connection": "local"}}
        groups: dict[str, list[str]] = {}
        group_vars: dict[str, dict[str, Any]] = {}
        for name, payload in group_data.items():
            if not isinstance(payload, dict):
                raise InventoryError(f"group '{name}' must be a table")
            members = payload.get("hosts", [])
            if isinstance(members, str):
                members = [members]
            groups[name] = [str(member) for member in members]
            group_vars[name] = dict(payload.get("variables", {}))

        hosts: dict[str, HostConfig] = {}
        for name, payload in host_data.items():
            hosts[name] = self._parse_host(name, payload)
            for group in hosts[name].groups:
                members = groups.setdefault(group, [])
                if name not in members:
                    members.append(name)

        if "all" in groups:
            group_vars.setdefault("all", {})
            del groups["all"]
        for group, members in groups.items():
            unknown = [member for member in members if member not in hosts]
            if unknown:
                raise InventoryError(f"group '{group}' references unknown hosts: {', '.join(unknown)}")
        for name, host in hosts.items():
            host.groups = [group for group, members in groups.items() if name in members]
        return Inventory(hosts=hosts, groups=groups, group_vars=group_vars)

    @staticmethod
    def _parse_host(name: str, payload: dict[str, Any]) -> HostConfig:
        if not isinstance(payload, dict):
            raise InventoryError(f"host '{name}' must be a table")
        connection = str(payload.get("connection", "local"))
        if connection not in {"local", "ssh"}:
            raise InventoryError(f"host '{name}' has unknown connection type '{connection}'")
        groups = payload.get("groups", [])
        if isinstance(groups, str):
            groups = [groups]
        return HostConfig(
            name=name,
            connection=connection,
            address=payload.get("address"),
            port=int(payload.get("port", 22)),
            user=payload.get("user"),
            private_key=payload.get("private_key"),
            groups=[str(group) for group in groups],
            variables=dict(payload.get("variables", {})),
        )
