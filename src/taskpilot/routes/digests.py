import asyncio
import json
import time
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from taskpilot.domains.digest import UserProfile, digest_context
from taskpilot.pipeline.batch import run_all
from taskpilot.pipeline.events import PipelineEvent
from taskpilot.pipeline.executor import STEP_CRASHED_REASON
from taskpilot.pipeline.outcome import Failed
from taskpilot.routes.responses import outcome_response
from taskpilot.schemas.digest import BatchItem, BatchMetadata, BatchResponse, DigestRequest
from taskpilot.services.container import Services, get_services

log = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["digests"])


def _summary(user: UserProfile) -> dict[str, Any]:
    return {"id": user.id, "name": user.name, "userType": user.user_type}


def _format_event(event: str, data: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


@router.get("/personas")
async def list_personas(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {"users": [p.model_dump(by_alias=True, exclude_none=True) for p in services.store.personas]}


@router.get("/personas/{user_id}")
async def get_persona(user_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    return {"user": services.store.get_persona(user_id).model_dump(by_alias=True, exclude_none=True)}


@router.post("/digests")
async def generate_digest(
    body: DigestRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    user = services.store.get_persona(body.user_id)
    start = time.monotonic()
    outcome = await services.digest.invoke(digest_context(user, services.store.activity))
    log.info(
        "digest_generated",
        user_id=user.id,
        user_type=user.user_type,
        status=outcome.status,
        duration_ms=round((time.monotonic() - start) * 1000, 1),
    )
    return outcome_response(outcome)


@router.post("/digests/batch")
async def generate_digest_batch(services: Services = Depends(get_services)) -> BatchResponse:
    personas = services.store.personas
    start = time.monotonic()
    outcomes = await run_all(
        services.digest,
        [digest_context(p, services.store.activity) for p in personas],
        concurrency=services.batch_concurrency,
    )
    succeeded = sum(1 for o in outcomes if o.status == "success")
    return BatchResponse(
        results=[
            BatchItem(user=_summary(p), outcome=o.model_dump(mode="json"))
            for p, o in zip(personas, outcomes)
        ],
        metadata=BatchMetadata(
            total_time_ms=round((time.monotonic() - start) * 1000, 1),
            success_count=succeeded,
            failure_count=len(outcomes) - succeeded,
        ),
    )


async def _progress_stream(services: Services, user: UserProfile) -> AsyncIterator[bytes]:
    queue: asyncio.Queue[PipelineEvent | None] = asyncio.Queue()
    run = asyncio.create_task(
        services.digest.invoke(
            digest_context(user, services.store.activity), listeners=[queue.put]
        )
    )
    run.add_done_callback(lambda _: queue.put_nowait(None))

    while (event := await queue.get()) is not None:
        yield _format_event(event.type, asdict(event))

    try:
        outcome = run.result()
    except Exception:
        log.exception("digest_stream_crashed", user_id=user.id)
        outcome = Failed(reason=STEP_CRASHED_REASON, category="internal")
    yield _format_event("result", outcome.model_dump(mode="json"))


@router.get("/digests/{user_id}/stream", response_class=StreamingResponse)
async def stream_digest(user_id: str, services: Services = Depends(get_services)) -> StreamingResponse:
    user = services.store.get_persona(user_id)
    return StreamingResponse(
        _progress_stream(services, user),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
