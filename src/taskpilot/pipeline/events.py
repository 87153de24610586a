import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Literal

import structlog

log = structlog.get_logger()

EventType = Literal["step_started", "step_completed", "pipeline_completed"]


@dataclass(frozen=True)
class PipelineEvent:
    type: EventType
    pipeline: str
    step: str = ""
    index: int = 0
    total: int = 0
    status: str = ""
    duration_ms: float = 0.0


Listener = Callable[[PipelineEvent], "Awaitable[None] | None"]


async def emit(listeners: Iterable[Listener], event: PipelineEvent) -> None:
    """Deliver an event to every listener. A failing listener never stops the pipeline."""
    for listener in listeners:
        try:
            result = listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.error("listener_failed", event_type=event.type, step=event.step, error=str(e))
