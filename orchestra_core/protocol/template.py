"""Protocol — Template resolution engine.

Resolves ``{{var.NAME}}`` and ``{{env.NAME}}`` expressions in step
parameters before dispatch.

Template syntax:
    {{var.<name>}}             Playbook / run variable
    {{var.<name>.<field>}}     Field of a mapping-valued variable
    {{env.<VAR_NAME>}}         OS environment variable
"""

from __future__ import annotations

import os
import re
from typing import Any, Mapping

from orchestra_core.exceptions import TemplateResolutionError
from orchestra_core.protocol.constants import (
    TEMPLATE_CLOSE,
    TEMPLATE_OPEN,
    TEMPLATE_PREFIX_ENV,
    TEMPLATE_PREFIX_VAR,
)

_TEMPLATE_RE = re.compile(
    re.escape(TEMPLATE_OPEN)
    + r"\s*(\w+)\.([\w-]+)(?:\.([\w-]+))?\s*"
    + re.escape(TEMPLATE_CLOSE)
)


class TemplateResolver:
    """Resolves template expressions in step parameters.

    Usage::

        resolver = TemplateResolver(variables={"env_name": "lab"})
        resolved = resolver.resolve({"workspace": "{{var.env_name}}"})
        # {"workspace": "lab"}
    """

    def __init__(
        self,
        variables: Mapping[str, Any] | None = None,
        allow_env: bool = True,
    ) -> None:
        self._variables: Mapping[str, Any] = variables or {}
        self._allow_env = allow_env

    def resolve(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Return a new dict with all template expressions resolved.

        Raises:
            TemplateResolutionError: A template could not be resolved.
        """
        return {k: self._resolve_value(v) for k, v in params.items()}

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(item) for item in value]
        return value

    def _resolve_string(self, value: str) -> Any:
        """Resolve all template expressions in a string.

        If the entire string is a single template, the resolved value keeps
        its type.  Embedded templates are stringified and concatenated.
        """
        matches = list(_TEMPLATE_RE.finditer(value))
        if not matches:
            return value

        if len(matches) == 1 and matches[0].group(0) == value:
            m = matches[0]
            return self._resolve_expression(m.group(1), m.group(2), m.group(3), original=value)

        result = value
        for match in matches:
            resolved = self._resolve_expression(
                match.group(1), match.group(2), match.group(3), original=match.group(0)
            )
            result = result.replace(match.group(0), str(resolved))
        return result

    def _resolve_expression(
        self, prefix: str, ref: str, field: str | None, original: str
    ) -> Any:
        if prefix == TEMPLATE_PREFIX_VAR:
            return self._resolve_variable(ref, field, original)
        if prefix == TEMPLATE_PREFIX_ENV:
            return self._resolve_env(ref, original)
        raise TemplateResolutionError(
            original, f"Unknown template prefix '{prefix}'. Supported: var, env."
        )

    def _resolve_variable(self, name: str, field: str | None, original: str) -> Any:
        if name not in self._variables:
            raise TemplateResolutionError(
                original,
                f"Variable '{name}' is not defined. "
                f"Available variables: {sorted(self._variables.keys())}",
            )
        value = self._variables[name]
        if field is None:
            return value
        if not isinstance(value, Mapping):
            raise TemplateResolutionError(
                original, f"Variable '{name}' is not a mapping; cannot access field '{field}'."
            )
        if field not in value:
            raise TemplateResolutionError(
                original,
                f"Variable '{name}' has no field '{field}'. "
                f"Available fields: {sorted(value.keys())}",
            )
        return value[field]

    def _resolve_env(self, var_name: str, original: str) -> str:
        if not self._allow_env:
            raise TemplateResolutionError(
                original, "Environment variable access is disabled for this run."
            )
        value = os.environ.get(var_name)
        if value is None:
            raise TemplateResolutionError(
                original, f"Environment variable '{var_name}' is not set."
            )
        return value
