from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from taskpilot.domains.tasks import TaskQuery, filter_tasks
from taskpilot.routes.responses import outcome_response
from taskpilot.schemas.query import NaturalQueryBody
from taskpilot.services.container import Services, get_services

log = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["tasks"])


@router.get("/tasks")
async def list_tasks(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {"data": [t.model_dump(by_alias=True, exclude_none=True) for t in services.store.tasks]}


@router.get("/users")
async def list_users(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {"data": [u.model_dump() for u in services.store.users]}


@router.post("/query/traditional")
async def traditional_query(
    query: TaskQuery,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    tasks = filter_tasks(services.store.tasks, query)
    return {
        "query": query.model_dump(by_alias=True, exclude_none=True),
        "data": [t.model_dump(by_alias=True, exclude_none=True) for t in tasks],
        "count": len(tasks),
    }


@router.post("/query/natural")
async def natural_query(
    body: NaturalQueryBody,
    services: Services = Depends(get_services),
) -> JSONResponse:
    outcome = await services.task_query.invoke({"query": body.query})
    log.info("natural_query", status=outcome.status)
    return outcome_response(outcome)
