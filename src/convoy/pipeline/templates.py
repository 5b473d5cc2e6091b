"""Variable expansion for pipeline values.

Resolves ``$NAME`` and ``${NAME}`` references in strings against a flat
variable mapping, the way a POSIX shell would for simple parameters.

Supports:
    - Braced and bare references: ``${CI_JOB_NAME}_$CI_COMMIT_REF_NAME``
    - ``$$`` as a literal dollar sign
    - Recursive expansion of dicts and lists
    - Layered variable maps where later layers may reference earlier ones

Unknown variables expand to the empty string. Expansion is single-pass:
values substituted in are not expanded again.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger("convoy.pipeline.templates")

# $$ | ${NAME} | $NAME
_VARIABLE_RE = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class VariableExpander:
    """Expands variable references against a mapping.

    Usage::

        expander = VariableExpander({"CI_JOB_NAME": "build", "CI_COMMIT_REF_NAME": "master"})
        expander.expand("${CI_JOB_NAME}_${CI_COMMIT_REF_NAME}")
        # → "build_master"
    """

    def __init__(self, variables: Mapping[str, str] | None = None):
        self._variables = dict(variables or {})

    @property
    def variables(self) -> dict[str, str]:
        return dict(self._variables)

    def expand(self, value: Any) -> Any:
        """Expand references in a value.

        - Strings have ``$NAME`` / ``${NAME}`` substituted.
        - Dicts have their values recursively expanded.
        - Lists have their items recursively expanded.
        - Other types are returned as-is.
        """
        if isinstance(value, str):
            return self._expand_string(value)
        if isinstance(value, dict):
            return {k: self.expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.expand(item) for item in value]
        return value

    def _expand_string(self, text: str) -> str:
        if "$" not in text:
            return text

        def _replacer(m: re.Match) -> str:
            if m.group(0) == "$$":
                return "$"
            name = m.group(1) or m.group(2)
            if name not in self._variables:
                logger.debug("Variable '%s' is not defined, expanding to empty string", name)
                return ""
            return str(self._variables[name])

        return _VARIABLE_RE.sub(_replacer, text)


def build_variables(layers: Iterable[Mapping[str, str]]) -> dict[str, str]:
    """Merge variable layers in order; each layer may reference earlier ones.

    ``[{"PROJECT": "substrate"}, {"CACHE": "/ci-cache/${PROJECT}"}]`` gives
    ``{"PROJECT": "substrate", "CACHE": "/ci-cache/substrate"}``.
    """
    merged: dict[str, str] = {}
    for layer in layers:
        expander = VariableExpander(merged)
        resolved = {name: expander.expand(str(value)) for name, value in layer.items()}
        merged.update(resolved)
    return merged
