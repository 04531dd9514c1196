"""Template expression resolver.

Parameters are either literal values or template strings containing
``{{ expr }}`` placeholders. Expressions are Jinja expressions evaluated in
an immutable sandbox against a per-item context:

- ``$json``: payload of the current item
- ``$execution``: run metadata (id, mode, workflow_id, started_at)
- ``$now``: current UTC time, ISO formatted

Only the helpers in ``ALLOWED_CALLABLES`` and a short list of filters may be
called; method calls, unknown names and unsafe attributes are rejected.
Operators that can grow values without bound (``**``, ``*``, ``+``, ``%``)
are checked before they run, so one template cannot stall the event loop.

Missing dict keys and out-of-range indexes evaluate to ``None`` rather than
failing, so templates over partially populated payloads degrade gracefully.
Reading a property of ``null`` is an error.
"""

from __future__ import annotations

import functools
import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from jinja2 import TemplateSyntaxError, nodes
from jinja2.exceptions import SecurityError, UndefinedError
from jinja2.parser import Parser
from jinja2.sandbox import ImmutableSandboxedEnvironment

from flowforge.core.errors import ExpressionError
from flowforge.core.models import ExecutionItem, utc_now

logger = logging.getLogger(__name__)

# Maximum expression length to prevent abuse
MAX_EXPRESSION_LENGTH = 1000
# Upper bounds for values built by operators
MAX_INT_BITS = 10_000
MAX_SEQUENCE_LENGTH = 100_000

ERROR_MARKER = "[Error]"

_SPAN = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)
# Quoted strings are matched first so "$json" inside a literal stays as written
_DOLLAR_TOKEN = re.compile(
    r"""("(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*')|\$([A-Za-z_][A-Za-z0-9_]*)"""
)
_DOLLAR_PREFIX = "_dollar_"

ALLOWED_CALLABLES = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sorted": sorted,
}

_SAFE_FILTERS = (
    "abs",
    "capitalize",
    "default",
    "first",
    "float",
    "int",
    "join",
    "last",
    "length",
    "list",
    "lower",
    "reverse",
    "round",
    "sort",
    "string",
    "title",
    "tojson",
    "trim",
    "unique",
    "upper",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _int_bits(value: Any) -> int:
    return abs(value).bit_length() if isinstance(value, int) else 0


class ExpressionEnvironment(ImmutableSandboxedEnvironment):
    """Sandbox that only knows the expression helpers and bounds operator growth."""

    intercepted_binops = frozenset({"+", "*", "**", "%"})

    def __init__(self) -> None:
        super().__init__()
        self.globals.clear()
        self.globals.update(ALLOWED_CALLABLES)
        self.globals["null"] = None
        self.filters = {name: self.filters[name] for name in _SAFE_FILTERS}

    def getattr(self, obj: Any, attribute: str) -> Any:
        # Payloads are JSON: dotted access reads keys, never dict methods
        if isinstance(obj, Mapping):
            return obj.get(attribute)
        if obj is None:
            raise UndefinedError(f"Cannot read '{attribute}' of null")
        return super().getattr(obj, attribute)

    def getitem(self, obj: Any, argument: Any) -> Any:
        if isinstance(obj, Mapping):
            return obj.get(argument)
        if obj is None:
            raise UndefinedError(f"Cannot read '{argument}' of null")
        if isinstance(obj, (list, tuple, str)) and isinstance(argument, int):
            try:
                return obj[argument]
            except IndexError:
                return None
        return super().getitem(obj, argument)

    def call(self, context: Any, obj: Any, *args: Any, **kwargs: Any) -> Any:
        if not any(obj is helper for helper in ALLOWED_CALLABLES.values()):
            raise SecurityError("Only built-in helper functions may be called")
        return super().call(context, obj, *args, **kwargs)

    def call_binop(self, context: Any, operator: str, left: Any, right: Any) -> Any:
        if operator == "**":
            if isinstance(left, int) and isinstance(right, int) and right > 0:
                if abs(left) > 1 and _int_bits(left) * right > MAX_INT_BITS:
                    raise SecurityError(f"Power result exceeds {MAX_INT_BITS} bits")
        elif operator == "*":
            _check_product(left, right)
        elif operator == "+":
            if isinstance(left, str) != isinstance(right, str):
                # String concatenation with non-strings, as templates expect
                return _to_text(left) + _to_text(right)
        elif operator == "%" and isinstance(left, str):
            raise SecurityError("String formatting with '%' is not supported")
        return super().call_binop(context, operator, left, right)


def _sequence_size(value: Any) -> int:
    """Items in value, counting nested strings and lists."""
    if isinstance(value, str):
        return len(value)
    if isinstance(value, (list, tuple)):
        return len(value) + sum(_sequence_size(v) for v in value)
    return 0


def _check_product(left: Any, right: Any) -> None:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if _sequence_size(seq) * count > MAX_SEQUENCE_LENGTH:
                raise SecurityError(f"Repeated value exceeds {MAX_SEQUENCE_LENGTH} items")
            return
    if _int_bits(left) + _int_bits(right) > MAX_INT_BITS:
        raise SecurityError(f"Product exceeds {MAX_INT_BITS} bits")


_ENV = ExpressionEnvironment()


def rewrite_dollar_names(expression: str) -> str:
    """Turn ``$name`` references into identifiers, leaving string literals alone."""
    return _DOLLAR_TOKEN.sub(
        lambda m: m.group(1) if m.group(1) else _DOLLAR_PREFIX + m.group(2), expression
    )


@functools.lru_cache(maxsize=512)
def _compile(source: str):
    compiled = _ENV.compile_expression(source, undefined_to_none=True)
    parsed = Parser(_ENV, source, state="variable").parse_expression()
    names = frozenset(n.name for n in parsed.find_all(nodes.Name))
    return compiled, names


def build_context(
    item: ExecutionItem | None,
    execution: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the evaluation context for one item."""
    return {
        "$json": item.payload if item is not None else {},
        "$execution": dict(execution or {}),
        "$now": utc_now().isoformat(),
    }


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate a single expression (without braces) against context.

    Raises:
        ExpressionError: If the expression is invalid, unsafe or fails to evaluate
    """
    expression = expression.strip()
    if not expression:
        raise ExpressionError("Expression cannot be empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )

    try:
        compiled, names = _compile(rewrite_dollar_names(expression))
    except TemplateSyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.message}") from e

    variables = {
        _DOLLAR_PREFIX + key[1:]: value for key, value in context.items() if key.startswith("$")
    }
    for name in sorted(names):
        if name not in variables and name not in _ENV.globals:
            shown = "$" + name[len(_DOLLAR_PREFIX):] if name.startswith(_DOLLAR_PREFIX) else name
            raise ExpressionError(f"Unknown variable: '{shown}'")

    try:
        return compiled(**variables)
    except SecurityError as e:
        raise ExpressionError(f"Expression not allowed: {e}") from e
    except UndefinedError as e:
        raise ExpressionError(str(e)) from e
    except Exception as e:
        raise ExpressionError(f"Evaluation error: {e}") from e


def resolve(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve a parameter value against context.

    Non-strings and strings without ``{{`` pass through unchanged. A string
    that is exactly one placeholder keeps the native result type; otherwise
    each placeholder is interpolated as text. Failures never propagate: a
    whole-string placeholder yields ``None`` and an embedded one yields
    ``[Error]``.
    """
    if not isinstance(value, str) or "{{" not in value:
        return value

    spans = list(_SPAN.finditer(value))
    if not spans:
        return value

    stripped = value.strip()
    if len(spans) == 1 and spans[0].group(0) == stripped:
        try:
            return evaluate(spans[0].group(1), context)
        except ExpressionError as e:
            logger.debug(f"Expression '{stripped}' failed: {e}")
            return None

    def _replace(match: re.Match) -> str:
        try:
            return _to_text(evaluate(match.group(1), context))
        except ExpressionError as e:
            logger.debug(f"Expression '{match.group(0)}' failed: {e}")
            return ERROR_MARKER

    return _SPAN.sub(_replace, value)


def resolve_params(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve templates recursively through dicts and lists."""
    if isinstance(value, dict):
        return {k: resolve_params(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_params(v, context) for v in value]
    return resolve(value, context)


def lookup_path(data: Any, path: str) -> tuple[bool, Any]:
    """Follow a dotted path (``a.b.0.c``) through dicts and lists.

    Returns (found, value).
    """
    if not path:
        return False, None
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, default=str)
    return str(value)
