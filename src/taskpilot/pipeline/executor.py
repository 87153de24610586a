import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from taskpilot.errors import ContextOverwriteError
from taskpilot.pipeline.context import ContextKey, PipelineContext, StepRecord
from taskpilot.pipeline.events import Listener, PipelineEvent, emit
from taskpilot.pipeline.outcome import Failed, Outcome, Success, is_outcome
from taskpilot.pipeline.step import Step

log = structlog.get_logger()

STEP_CRASHED_REASON = "Something went wrong while processing this request."


class Pipeline:
    """Ordered, immutable chain of steps run sequentially against one context.

    The first step that returns an outcome ends the run; later steps never
    start. If every step returns a context, the final context is wrapped in
    ``Success`` (through ``result`` when given). A step that raises ends the
    run as ``Failed``; overwriting context keys or returning something other
    than a context or an outcome is a wiring defect and raises.
    """

    def __init__(
        self,
        name: str,
        steps: Iterable[Step],
        *,
        inputs: Iterable["ContextKey[Any] | str"] = (),
        result: Callable[[PipelineContext], Any] | None = None,
        listeners: Iterable[Listener] = (),
    ) -> None:
        self.name = name
        self.steps: tuple[Step, ...] = tuple(steps)
        self.inputs = frozenset(str(k) for k in inputs)
        self._result = result
        self._listeners: tuple[Listener, ...] = tuple(listeners)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        available = set(self.inputs)
        for step in self.steps:
            missing = step.requires - available
            if missing:
                raise ValueError(
                    f"Pipeline '{self.name}': step '{step.name}' requires {sorted(missing)} "
                    "which no earlier step provides"
                )
            available |= step.provides

    def with_listener(self, listener: Listener) -> "Pipeline":
        """Return a new pipeline that also reports to ``listener``."""
        return Pipeline(
            self.name,
            self.steps,
            inputs=self.inputs,
            result=self._result,
            listeners=self._listeners + (listener,),
        )

    async def invoke(
        self,
        initial: "PipelineContext | Mapping[str, Any]",
        *,
        listeners: Iterable[Listener] = (),
    ) -> Outcome:
        ctx = initial if isinstance(initial, PipelineContext) else PipelineContext.start(**initial)
        missing = self.inputs - set(ctx)
        if missing:
            raise ValueError(f"Pipeline '{self.name}' missing input fields: {sorted(missing)}")

        observers = self._listeners + tuple(listeners)
        total = len(self.steps)

        for index, step in enumerate(self.steps, start=1):
            await emit(
                observers,
                PipelineEvent("step_started", self.name, step.name, index, total),
            )
            log.debug("step_started", pipeline=self.name, step=step.name, index=index, total=total)
            start = time.monotonic()
            try:
                result = await step.run(ctx)
            except ContextOverwriteError:
                raise
            except Exception as e:
                log.exception(
                    "step_crashed", pipeline=self.name, step=step.name, error=f"{type(e).__name__}: {e}"
                )
                result = Failed(reason=STEP_CRASHED_REASON, category="internal", step=step.name)
            duration_ms = (time.monotonic() - start) * 1000

            if is_outcome(result):
                if isinstance(result, Failed):
                    log.warning(
                        "step_failed",
                        pipeline=self.name,
                        step=step.name,
                        category=result.category,
                    )
                log.info(
                    "pipeline_short_circuit",
                    pipeline=self.name,
                    step=step.name,
                    status=result.status,
                    duration_ms=round(duration_ms, 1),
                )
                await emit(
                    observers,
                    PipelineEvent(
                        "step_completed", self.name, step.name, index, total, result.status, duration_ms
                    ),
                )
                await self._finish(observers, result.status)
                return result

            if not isinstance(result, PipelineContext):
                raise TypeError(
                    f"Step '{step.name}' returned {type(result).__name__}, "
                    "expected PipelineContext or an Outcome"
                )
            _check_append_only(step.name, ctx, result)

            ctx = result.record(StepRecord(step=step.name, status="ok", duration_ms=duration_ms))
            log.info("step_completed", pipeline=self.name, step=step.name, duration_ms=round(duration_ms, 1))
            await emit(
                observers,
                PipelineEvent("step_completed", self.name, step.name, index, total, "ok", duration_ms),
            )

        payload = self._result(ctx) if self._result is not None else ctx.to_dict()
        await self._finish(observers, "success")
        return Success(payload=payload)

    async def _finish(self, observers: tuple[Listener, ...], status: str) -> None:
        await emit(observers, PipelineEvent("pipeline_completed", self.name, status=status))

    def __len__(self) -> int:
        return len(self.steps)

    def __repr__(self) -> str:
        return f"Pipeline(name={self.name!r}, steps={[s.name for s in self.steps]})"


def _check_append_only(step: str, before: PipelineContext, after: PipelineContext) -> None:
    changed = [k for k in before if k not in after or after[k] is not before[k]]
    if changed:
        raise ContextOverwriteError(step, changed)
