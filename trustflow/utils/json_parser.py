"""Parsing of model output into caller-declared object shapes.

Model replies are free text that is usually, but not always, a JSON object.
``parse_json_object`` reads the text into a ``ParseResult`` and
``enforce`` merges a successful parse over a default shape so the returned
mapping always has exactly the default's keys.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any, Dict, Generic, Mapping, Optional, TypeVar

from trustflow.core.exceptions import SchemaViolation
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    """Either a parsed value or the reason parsing failed."""

    value: Optional[T] = None
    error: Optional[SchemaViolation] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_object(text: Any) -> ParseResult[Dict[str, Any]]:
    """Parse text as a single JSON object.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Leading/trailing whitespace

    Arrays, scalars and anything that is not valid JSON are reported as a
    ``SchemaViolation`` rather than raised.

    Args:
        text: Raw model output

    Returns:
        ParseResult holding the parsed dict or the violation
    """
    if not isinstance(text, str) or not text.strip():
        return ParseResult(error=SchemaViolation("Model output is empty"))

    cleaned = _strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, RecursionError) as e:
        return ParseResult(
            error=SchemaViolation(f"Model output is not valid JSON: {e}", original_error=e)
        )

    if not isinstance(parsed, dict):
        return ParseResult(
            error=SchemaViolation(
                f"Model output is a JSON {type(parsed).__name__}, expected an object"
            )
        )
    return ParseResult(value=parsed)


def _compatible(default: Any, candidate: Any) -> bool:
    """Whether ``candidate`` may replace ``default`` without changing its type."""
    if default is None:
        return True
    if isinstance(default, bool):
        return isinstance(candidate, bool)
    if isinstance(default, (int, float)):
        return isinstance(candidate, (int, float)) and not isinstance(candidate, bool)
    if isinstance(default, str):
        return isinstance(candidate, str)
    if isinstance(default, (list, tuple)):
        return isinstance(candidate, list)
    if isinstance(default, Mapping):
        return isinstance(candidate, dict)
    return isinstance(candidate, type(default))


def merge_with_defaults(parsed: Mapping[str, Any], default_shape: Mapping[str, Any]) -> Dict[str, Any]:
    """Shallow-merge ``parsed`` over ``default_shape``.

    Keys outside the default shape are dropped, missing keys keep their
    default, and values whose type does not match the default are ignored.
    """
    merged: Dict[str, Any] = {}
    for key, default in default_shape.items():
        if key in parsed and _compatible(default, parsed[key]):
            merged[key] = parsed[key]
        else:
            merged[key] = copy.deepcopy(default)
    return merged


def enforce(raw_text: Any, default_shape: Mapping[str, Any]) -> Dict[str, Any]:
    """Read ``raw_text`` as an object with exactly ``default_shape``'s keys.

    Never raises. On any parse failure the default shape is returned
    unchanged (as a copy, so callers cannot mutate the shared default).
    """
    result = parse_json_object(raw_text)
    if not result.ok:
        LOGGER.warning(
            f"Falling back to default shape: {result.error}",
            extra={"response": str(raw_text)[:500]},
        )
        return copy.deepcopy(dict(default_shape))

    dropped = set(result.value) - set(default_shape)
    if dropped:
        LOGGER.debug(f"Dropping unexpected keys from model output: {sorted(dropped)}")
    return merge_with_defaults(result.value, default_shape)
