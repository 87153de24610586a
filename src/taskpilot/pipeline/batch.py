import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from taskpilot.pipeline.context import PipelineContext
from taskpilot.pipeline.executor import Pipeline
from taskpilot.pipeline.outcome import Failed, Outcome

log = structlog.get_logger()


async def run_all(
    pipeline: Pipeline,
    contexts: "Iterable[PipelineContext | Mapping[str, Any]]",
    *,
    concurrency: int | None = None,
) -> list[Outcome]:
    """Invoke ``pipeline`` once per context concurrently, keeping input order.

    One invocation failing, even by raising, never cancels or drops its
    siblings: a crashed invocation is reported as ``Failed`` at its index.
    ``concurrency`` caps how many invocations are in flight at once.
    """
    semaphore = asyncio.Semaphore(concurrency) if concurrency else None

    async def _one(index: int, ctx: "PipelineContext | Mapping[str, Any]") -> Outcome:
        try:
            if semaphore is None:
                return await pipeline.invoke(ctx)
            async with semaphore:
                return await pipeline.invoke(ctx)
        except Exception as e:
            log.error(
                "batch_item_crashed",
                pipeline=pipeline.name,
                index=index,
                error=f"{type(e).__name__}: {e}",
            )
            return Failed(reason="This item could not be processed.", category="internal")

    items = list(contexts)
    log.info("batch_started", pipeline=pipeline.name, size=len(items), concurrency=concurrency)
    outcomes = await asyncio.gather(*(_one(i, ctx) for i, ctx in enumerate(items)))
    log.info(
        "batch_completed",
        pipeline=pipeline.name,
        succeeded=sum(1 for o in outcomes if o.status == "success"),
        size=len(items),
    )
    return list(outcomes)
