from __future__ import annotations

from pathlib import Path
from typing import Any

from .copy import CopyOperation
from ..templating import Templar


class TemplateOperation(CopyOperation):
    """Render a controller-side Jinja2 template and write it like ``copy``."""

    wants_variables = True

    def __init__(self, spec: dict[str, Any]):
        if not spec.get("src"):
            raise ValueError("template operation requires a src")
        super().__init__(spec)
        self.variables = spec.get("_vars") or {}

    def _desired_content(self) -> str:
        src = Path(str(self.src)).expanduser()
        if not src.is_absolute() and self.playbook_dir is not None:
            candidates = [Path(str(self.playbook_dir)) / "templates" / src, Path(str(self.playbook_dir)) / src]
            src = next((path for path in candidates if path.exists()), candidates[-1])
        text = src.read_text(encoding="utf-8")
        return str(Templar(self.variables).render_string(text))

    def _result(self, host, changed, detail):  # type: ignore[override]
        result = super()._result(host, changed, detail)
        result.action = "template"
        return result
