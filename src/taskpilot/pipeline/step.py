"""Steps: the named units a pipeline is composed of.

A step receives the accumulated ``PipelineContext`` and returns either an
extended context or a terminal outcome. The factories below cover the four
kinds every domain pipeline is built from:

* ``extraction_step``: one completion call whose JSON answer is validated
  against a domain result union and interpreted into context fields or an
  outcome.
* ``retrieval_step``: nearest-neighbor lookup appended under
  ``retrieved_context``. Lookup failures degrade to an empty list.
* ``rule_step`` / ``lookup_step``: pure synchronous derivations, no port call.
  ``guard_step`` is the same shape but may stop the pipeline.
* ``generation_step``: a completion over the whole context validated against
  the final payload shape, with an optional raw-text fallback policy.

Port errors never escape a step; they come back as ``Failed``.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import TypeAdapter

from taskpilot.errors import CapabilityError
from taskpilot.pipeline.context import ContextKey, PipelineContext
from taskpilot.pipeline.outcome import Failed, Outcome, is_outcome
from taskpilot.pipeline.validator import Normalizer, ValidationError, validate
from taskpilot.ports.base import EmbedAndSearch, SearchHit, TextCompletion, VisionCompletion, with_timeout

log = structlog.get_logger()

StepResult = PipelineContext | Outcome
StepFn = Callable[[PipelineContext], Awaitable[StepResult]]
PortCall = Callable[[PipelineContext], Awaitable[str]]

RETRIEVED_CONTEXT: ContextKey[list[Any]] = ContextKey("retrieved_context")

UNREACHABLE_REASON = "The AI service is currently unavailable. Please try again later."


@dataclass(frozen=True)
class Step:
    name: str
    run: StepFn
    requires: frozenset[str] = field(default_factory=frozenset)
    provides: frozenset[str] = field(default_factory=frozenset)


def _keys(keys: "tuple[ContextKey[Any] | str, ...] | list[ContextKey[Any] | str]") -> frozenset[str]:
    return frozenset(str(k) for k in keys)


def _apply(ctx: PipelineContext, step: str, result: "Mapping[str, Any] | Outcome") -> StepResult:
    if is_outcome(result):
        return result  # type: ignore[return-value]
    return ctx.extend(step, **result)  # type: ignore[arg-type]


async def call_port(step: str, call: PortCall, ctx: PipelineContext, timeout: float | None) -> str | Failed:
    try:
        return await with_timeout(call(ctx), timeout, step)
    except CapabilityError as e:
        log.error("step_port_error", step=step, category=e.category, error=str(e))
        return Failed(reason=UNREACHABLE_REASON, category=e.category, step=step)
    except Exception as e:
        log.error("step_port_error", step=step, category="capability_unreachable", error=repr(e))
        return Failed(reason=UNREACHABLE_REASON, category="capability_unreachable", step=step)


def text_call(
    completion: TextCompletion,
    prompt: Callable[[PipelineContext], str],
    system: Callable[[PipelineContext], str | None] | None = None,
    json_mode: bool = True,
) -> PortCall:
    async def _call(ctx: PipelineContext) -> str:
        return await completion.complete(
            prompt(ctx), system=system(ctx) if system else None, json_mode=json_mode
        )

    return _call


def vision_call(
    completion: VisionCompletion,
    prompt: Callable[[PipelineContext], str],
    image_key: "ContextKey[bytes] | str" = "image",
    media_type_key: "ContextKey[str] | str" = "media_type",
) -> PortCall:
    async def _call(ctx: PipelineContext) -> str:
        return await completion.complete_vision(
            prompt(ctx), ctx[str(image_key)], ctx.get(media_type_key, "image/jpeg")
        )

    return _call


def extraction_step(
    name: str,
    call: PortCall,
    shape: Any,
    interpret: Callable[[PipelineContext, Any], "Mapping[str, Any] | Outcome"],
    *,
    normalize: Normalizer | None = None,
    timeout: float | None = None,
    requires: tuple = (),
    provides: tuple = (),
) -> Step:
    adapter = shape if isinstance(shape, TypeAdapter) else TypeAdapter(shape)

    async def run(ctx: PipelineContext) -> StepResult:
        raw = await call_port(name, call, ctx, timeout)
        if isinstance(raw, Failed):
            return raw
        checked = validate(raw, adapter, normalize)
        if isinstance(checked, ValidationError):
            log.warning("step_validation_failed", step=name, sub_reason=checked.kind)
            return checked.to_failed(name)
        return _apply(ctx, name, interpret(ctx, checked.value))

    return Step(name=name, run=run, requires=_keys(requires), provides=_keys(provides))


def retrieval_step(
    search: EmbedAndSearch,
    query: Callable[[PipelineContext], str],
    *,
    name: str = "retrieve",
    k: int = 5,
    where: Callable[[PipelineContext, SearchHit], bool] | None = None,
    limit: int | None = None,
    transform: Callable[[SearchHit], Any] | None = None,
    key: "ContextKey[Any] | str" = RETRIEVED_CONTEXT,
    timeout: float | None = None,
    requires: tuple = (),
) -> Step:
    async def run(ctx: PipelineContext) -> StepResult:
        text = query(ctx)
        try:
            hits = await with_timeout(search.search(text, k), timeout, name)
        except Exception as e:
            log.warning("retrieval_degraded", step=name, error=repr(e))
            hits = []

        if where is not None:
            hits = [h for h in hits if where(ctx, h)]
        if limit is not None:
            hits = hits[:limit]
        if not hits:
            log.info("retrieval_empty", step=name, query=text)

        items = [transform(h) if transform else h.text for h in hits]
        return ctx.extend(name, **{str(key): items})

    return Step(name=name, run=run, requires=_keys(requires), provides=frozenset({str(key)}))


def rule_step(
    name: str,
    derive: Callable[[PipelineContext], Mapping[str, Any]],
    *,
    requires: tuple = (),
    provides: tuple = (),
) -> Step:
    """Wrap a pure synchronous derivation as a step. It always continues the pipeline."""

    async def run(ctx: PipelineContext) -> StepResult:
        return ctx.extend(name, **derive(ctx))

    return Step(name=name, run=run, requires=_keys(requires), provides=_keys(provides))


def guard_step(
    name: str,
    decide: Callable[[PipelineContext], "Mapping[str, Any] | Outcome"],
    *,
    requires: tuple = (),
    provides: tuple = (),
) -> Step:
    """Like ``rule_step``, but ``decide`` may end the pipeline with an outcome."""

    async def run(ctx: PipelineContext) -> StepResult:
        return _apply(ctx, name, decide(ctx))

    return Step(name=name, run=run, requires=_keys(requires), provides=_keys(provides))


def completion_step(
    name: str,
    call: PortCall,
    key: "ContextKey[str] | str",
    *,
    timeout: float | None = None,
    requires: tuple = (),
) -> Step:
    """Append a free-text completion to the context unvalidated."""

    async def run(ctx: PipelineContext) -> StepResult:
        raw = await call_port(name, call, ctx, timeout)
        if isinstance(raw, Failed):
            return raw
        return ctx.extend(name, **{str(key): raw})

    return Step(name=name, run=run, requires=_keys(requires), provides=frozenset({str(key)}))


def lookup_step(
    name: str,
    source: "ContextKey[Any] | str",
    table: Mapping[Any, Any],
    key: "ContextKey[Any] | str",
    *,
    default: Any = None,
    refine: Callable[[PipelineContext, Any], Any] | None = None,
) -> Step:
    """Map a context field through a fixed table. Unknown values get ``default``."""

    def derive(ctx: PipelineContext) -> Mapping[str, Any]:
        value = table.get(ctx[str(source)], default)
        if refine is not None:
            value = refine(ctx, value)
        return {str(key): value}

    return rule_step(name, derive, requires=(source,), provides=(key,))


def generation_step(
    name: str,
    completion: TextCompletion,
    prompt: Callable[[PipelineContext], str],
    shape: Any,
    key: "ContextKey[Any] | str",
    *,
    system: Callable[[PipelineContext], str | None] | None = None,
    normalize: Normalizer | None = None,
    fallback: Callable[[PipelineContext, str], Any] | None = None,
    timeout: float | None = None,
    requires: tuple = (),
) -> Step:
    """Generate the final payload from the whole context.

    With ``fallback`` set, a response that fails validation is replaced by
    ``fallback(ctx, raw_text)`` instead of ending the pipeline as ``Failed``.
    """
    adapter = shape if isinstance(shape, TypeAdapter) else TypeAdapter(shape)
    call = text_call(completion, prompt, system, json_mode=True)

    async def run(ctx: PipelineContext) -> StepResult:
        raw = await call_port(name, call, ctx, timeout)
        if isinstance(raw, Failed):
            return raw
        checked = validate(raw, adapter, normalize)
        if isinstance(checked, ValidationError):
            if fallback is None:
                return checked.to_failed(name)
            log.warning("generation_fallback", step=name, sub_reason=checked.kind)
            return ctx.extend(name, **{str(key): fallback(ctx, raw), f"{key}_degraded": True})
        return ctx.extend(name, **{str(key): checked.value, f"{key}_degraded": False})

    return Step(
        name=name,
        run=run,
        requires=_keys(requires),
        provides=frozenset({str(key), f"{key}_degraded"}),
    )
