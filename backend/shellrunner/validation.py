"""
Validation and rendering of job parameters into PowerShell named arguments.
Values are passed as literals only; nothing from a job's params is ever
evaluated as script text except through the explicit Invoke-Script action.
"""
import math
import re
from typing import Any, Optional

from .errors import InvalidParameters

PARAM_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")
INT64_MIN, INT64_MAX = -(2 ** 63), 2 ** 63 - 1


def ps_quote(value: str) -> str:
    """Single-quoted PowerShell literal; embedded quotes are doubled."""
    # PowerShell also treats typographic quotes as string delimiters
    escaped = re.sub(r"(['‘’‚‛])", r"\1\1", value)
    return f"'{escaped}'"


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, int):
        if not INT64_MIN <= value <= INT64_MAX:
            raise InvalidParameters(f"Integer out of range: {value}")
        return repr(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidParameters(f"Non-finite number not supported: {value}")
        return repr(value)
    if isinstance(value, str):
        return ps_quote(value)
    raise InvalidParameters(f"Unsupported parameter value type: {type(value).__name__}")


class ParamValidator:
    """
    Checks job params against an optional allow-list and renders them as
    ``-Name value`` pairs. Example:
        {"Identity": "alice@contoso.com", "ResultSize": 10, "Archive": True}
        -> -Identity 'alice@contoso.com' -ResultSize 10 -Archive:$true
    """

    def __init__(self, allowed: Optional[set[str]] = None):
        self.allowed = allowed

    def render(self, params: dict) -> str:
        if not isinstance(params, dict):
            raise InvalidParameters("params must be an object")
        parts: list[str] = []
        for name, value in params.items():
            if not isinstance(name, str) or not PARAM_NAME.match(name):
                raise InvalidParameters(f"Invalid parameter name: {name!r}")
            if self.allowed is not None and name not in self.allowed:
                raise InvalidParameters(f"Parameter not allowed: {name}")
            if value is None:
                continue
            if isinstance(value, bool):
                # switch parameters need the colon form
                parts.append(f"-{name}:{_literal(value)}")
            elif isinstance(value, (list, tuple)):
                if not value:
                    raise InvalidParameters(f"Empty list for parameter: {name}")
                if any(isinstance(v, (list, tuple, dict)) for v in value):
                    raise InvalidParameters(f"Nested values not supported for parameter: {name}")
                parts.append(f"-{name} " + ",".join(_literal(v) for v in value))
            else:
                parts.append(f"-{name} {_literal(value)}")
        return " ".join(parts)
