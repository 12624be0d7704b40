"""Stagehand playbook convergence engine."""

from .inventory import InventoryLoader
from .playbook import PlaybookLoader
from .runner import PlaybookRunner

__all__ = ["PlaybookRunner", "PlaybookLoader", "InventoryLoader"]
