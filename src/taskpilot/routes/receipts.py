import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from taskpilot.domains.receipts import IMAGE, MEDIA_TYPE, RECEIPT, ReceiptData
from taskpilot.errors import UnsupportedMediaError
from taskpilot.ports.azure_openai import SUPPORTED_IMAGE_TYPES
from taskpilot.routes.responses import outcome_response
from taskpilot.services.container import Services, get_services

log = structlog.get_logger()

router = APIRouter(prefix="/api/receipts", tags=["receipts"])

MAX_IMAGE_BYTES = 10 * 1024 * 1024


@router.post("/parse")
async def parse_receipt(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Parse a receipt image sent as the raw request body."""
    media_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if media_type not in SUPPORTED_IMAGE_TYPES:
        raise UnsupportedMediaError(media_type or "<none>")

    image = await request.body()
    if not image:
        raise HTTPException(status_code=400, detail="Request body must contain the receipt image")
    if len(image) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Receipt image is larger than 10 MB")

    outcome = await services.receipt_parse.invoke({str(IMAGE): image, str(MEDIA_TYPE): media_type})
    log.info("receipt_parsed", status=outcome.status, size=len(image))
    return outcome_response(outcome)


@router.post("/match")
async def match_receipt(
    receipt: ReceiptData,
    services: Services = Depends(get_services),
) -> JSONResponse:
    outcome = await services.receipt_match.invoke({str(RECEIPT): receipt})
    return outcome_response(outcome)
