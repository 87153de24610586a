"""Check raw capability output against an expected payload shape.

``validate`` never raises for bad input: unparseable text comes back as a
``ValidationError`` of kind ``syntax`` and well-formed JSON that does not fit
the shape as kind ``shape``. Upstream both become the same ``Failed`` outcome,
the kind is only kept for logging.
"""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

import pydantic
import structlog
from pydantic import TypeAdapter

from taskpilot.pipeline.outcome import Failed

log = structlog.get_logger()

T = TypeVar("T")

Normalizer = Callable[[Any], Any]

_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


@dataclass(frozen=True)
class Validated(Generic[T]):
    value: T


@dataclass(frozen=True)
class ValidationError:
    kind: Literal["syntax", "shape"]
    detail: str

    def to_failed(self, step: str = "") -> Failed:
        return Failed(
            reason="The AI service returned a response that could not be understood.",
            category="malformed_response",
            step=step,
        )


def strip_code_fences(raw_text: str) -> str:
    """Models in JSON mode still sometimes wrap output in a markdown fence."""
    match = _FENCE_RE.match(raw_text)
    return match.group(1) if match else raw_text


def _adapter(shape: "type[T] | TypeAdapter[T] | Any") -> TypeAdapter[T]:
    if isinstance(shape, TypeAdapter):
        return shape
    return TypeAdapter(shape)


def parse_json(raw_text: str) -> Validated[Any] | ValidationError:
    if not isinstance(raw_text, str) or not raw_text.strip():
        return ValidationError(kind="syntax", detail="empty response")
    try:
        return Validated(json.loads(strip_code_fences(raw_text)))
    except json.JSONDecodeError as e:
        return ValidationError(kind="syntax", detail=f"{e.msg} at line {e.lineno} column {e.colno}")
    except RecursionError:
        return ValidationError(kind="syntax", detail="nesting too deep")
    except ValueError as e:
        return ValidationError(kind="syntax", detail=str(e))


def validate(
    raw_text: str,
    shape: "type[T] | TypeAdapter[T] | Any",
    normalize: Normalizer | None = None,
) -> Validated[T] | ValidationError:
    parsed = parse_json(raw_text)
    if isinstance(parsed, ValidationError):
        log.warning("validation_failed", sub_reason=parsed.kind, detail=parsed.detail)
        return parsed

    data = parsed.value
    if normalize is not None:
        try:
            data = normalize(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            log.warning("validation_failed", sub_reason="shape", detail=str(e))
            return ValidationError(kind="shape", detail=f"normalization failed: {e}")

    try:
        value = _adapter(shape).validate_python(data)
    except pydantic.ValidationError as e:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        log.warning("validation_failed", sub_reason="shape", detail=detail)
        return ValidationError(kind="shape", detail=detail)

    return Validated(value)
