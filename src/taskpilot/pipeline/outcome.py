"""Terminal results of a pipeline invocation.

Every pipeline invocation ends in exactly one of these variants. The ``status``
field is the discriminator, so an ``Outcome`` can be serialized to JSON and
parsed back with ``OUTCOME_ADAPTER`` without ambiguity.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

FailureCategory = Literal["capability_unreachable", "malformed_response", "internal"]


class _OutcomeBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class Success(_OutcomeBase):
    status: Literal["success"] = "success"
    payload: Any = None


class NeedsClarification(_OutcomeBase):
    status: Literal["needs_clarification"] = "needs_clarification"
    message: str
    suggestions: list[str] = Field(default_factory=list)


class Partial(_OutcomeBase):
    status: Literal["partial"] = "partial"
    payload: Any = None
    missing_fields: list[str] = Field(default_factory=list)
    message: str = ""
    suggestions: list[str] = Field(default_factory=list)


class Rejected(_OutcomeBase):
    status: Literal["rejected"] = "rejected"
    reason: str


class Failed(_OutcomeBase):
    status: Literal["failed"] = "failed"
    reason: str
    category: FailureCategory = "internal"
    step: str = ""


Outcome = Annotated[
    Success | NeedsClarification | Partial | Rejected | Failed,
    Field(discriminator="status"),
]

OUTCOME_TYPES = (Success, NeedsClarification, Partial, Rejected, Failed)

OUTCOME_ADAPTER: TypeAdapter[Outcome] = TypeAdapter(Outcome)


def is_outcome(value: object) -> bool:
    return isinstance(value, OUTCOME_TYPES)
