"""Template rendering and conditional evaluation for task parameters.

Task arguments are rendered strictly: referencing an undefined variable is an
error. Conditions are evaluated null-safely: an undefined lookup is false in a
boolean context, ``is defined`` on it is false, and attribute or index access
on it yields another undefined value instead of raising.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Mapping

import jinja2
import yaml

from .errors import TemplateError

logger = logging.getLogger(__name__)

SINGLE_EXPRESSION_RE = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on", "y"}
    return bool(value)


def _regex_replace(value: Any, pattern: str, replacement: str = "") -> str:
    return re.sub(pattern, replacement, str(value))


def _result_flag(flag: str):
    def test(value: Any) -> bool:
        if not isinstance(value, Mapping):
            return False
        return bool(value.get(flag, False))

    return test


def _build_environment(undefined: type[jinja2.Undefined]) -> jinja2.Environment:
    env = jinja2.Environment(undefined=undefined, autoescape=False, keep_trailing_newline=True)
    env.filters.update(
        {
            "bool": _to_bool,
            "to_json": json.dumps,
            "to_yaml": lambda value: yaml.safe_dump(value, default_flow_style=False),
            "regex_replace": _regex_replace,
            "basename": os.path.basename,
            "dirname": os.path.dirname,
        }
    )
    env.tests.update(
        {
            "changed": _result_flag("changed"),
            "failed": _result_flag("failed"),
            "skipped": _result_flag("skipped"),
            "succeeded": lambda value: isinstance(value, Mapping) and not value.get("failed", False),
        }
    )
    return env


_STRICT_ENV = _build_environment(jinja2.StrictUndefined)
_CONDITIONAL_ENV = _build_environment(jinja2.ChainableUndefined)


def is_template(value: Any) -> bool:
    return isinstance(value, str) and ("{{" in value or "{%" in value)


class Templar:
    """Renders values against one host's variable snapshot."""

    def __init__(self, variables: Mapping[str, Any]):
        self.variables = variables

    def render(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.render_string(value)
        if isinstance(value, dict):
            return {key: self.render(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render(item) for item in value]
        return value

    def render_string(self, text: str) -> Any:
        if not is_template(text):
            return text
        match = SINGLE_EXPRESSION_RE.match(text)
        if match and "{%" not in text:
            # A lone expression keeps its native type, so ports stay ints.
            return self.evaluate(match.group("expr"))
        try:
            return _STRICT_ENV.from_string(text).render(self.variables)
        except jinja2.TemplateError as exc:
            raise TemplateError(f"failed to render {text!r}: {exc}") from exc

    def evaluate(self, expression: str) -> Any:
        try:
            compiled = _STRICT_ENV.compile_expression(expression.strip(), undefined_to_none=False)
            result = compiled(self.variables)
            if isinstance(result, jinja2.Undefined):
                result._fail_with_undefined_error()
        except (jinja2.TemplateError, TypeError, ValueError) as exc:
            raise TemplateError(f"failed to evaluate {expression!r}: {exc}") from exc
        return result

    def condition(self, expression: Any) -> bool:
        if isinstance(expression, bool):
            return expression
        if expression is None:
            return False
        if not isinstance(expression, str):
            return bool(expression)
        text = expression.strip()
        match = SINGLE_EXPRESSION_RE.match(text)
        if match:
            text = match.group("expr").strip()
        try:
            compiled = _CONDITIONAL_ENV.compile_expression(text, undefined_to_none=False)
            result = compiled(self.variables)
        except jinja2.UndefinedError as exc:
            logger.debug("condition %r resolved false: %s", text, exc)
            return False
        except (jinja2.TemplateError, TypeError, ValueError) as exc:
            raise TemplateError(f"invalid conditional {text!r}: {exc}") from exc
        if isinstance(result, jinja2.Undefined):
            return False
        if isinstance(result, str):
            return _to_bool(result)
        return bool(result)

    def all_true(self, expressions: list[Any]) -> bool:
        return all(self.condition(expr) for expr in expressions)
