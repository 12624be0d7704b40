from .apt_repository import AptRepositoryOperation
from .base import Operation
from .command import CommandOperation, ShellOperation
from .copy import CopyOperation
from .debug import DebugOperation
from .facts import PackageFactsOperation, SetupOperation
from .file import FileOperation
from .lineinfile import LineInFileOperation
from .package import AptOperation, DnfOperation, PackageOperation, YumOperation
from .service import ServiceOperation
from .template import TemplateOperation
from .ufw import UfwOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "apt": AptOperation,
    "dnf": DnfOperation,
    "yum": YumOperation,
    "service": ServiceOperation,
    "ufw": UfwOperation,
    "lineinfile": LineInFileOperation,
    "copy": CopyOperation,
    "template": TemplateOperation,
    "file": FileOperation,
    "command": CommandOperation,
    "shell": ShellOperation,
    "apt_repository": AptRepositoryOperation,
    "package_facts": PackageFactsOperation,
    "setup": SetupOperation,
    "debug": DebugOperation,
}

# Collection prefixes accepted in front of action names in playbooks.
ACTION_PREFIXES = (
    "ansible.builtin.",
    "ansible.legacy.",
    "ansible.posix.",
    "community.general.",
)

ACTION_ALIASES = {
    "systemd": "service",
    "systemd_service": "service",
    "gather_facts": "setup",
}


def canonical_action(name: str) -> str:
    """Map a playbook action name to its registry key (unchecked)."""

    for prefix in ACTION_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return ACTION_ALIASES.get(name, name)


__all__ = [
    "Operation",
    "AptOperation",
    "AptRepositoryOperation",
    "CommandOperation",
    "CopyOperation",
    "DebugOperation",
    "DnfOperation",
    "FileOperation",
    "LineInFileOperation",
    "PackageFactsOperation",
    "PackageOperation",
    "ServiceOperation",
    "SetupOperation",
    "ShellOperation",
    "TemplateOperation",
    "UfwOperation",
    "YumOperation",
    "OPERATION_REGISTRY",
    "canonical_action",
]
