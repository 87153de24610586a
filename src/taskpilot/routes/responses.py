from fastapi.responses import JSONResponse

from taskpilot.pipeline.outcome import Outcome

STATUS_CODES = {
    "success": 200,
    "needs_clarification": 200,
    "partial": 200,
    "rejected": 422,
    "failed": 502,
}


def outcome_response(outcome: Outcome) -> JSONResponse:
    """Render an outcome with the HTTP status its variant maps to."""
    return JSONResponse(
        status_code=STATUS_CODES[outcome.status],
        content=outcome.model_dump(mode="json"),
    )
