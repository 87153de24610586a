from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskpilot.errors import UnsupportedMediaError, UserNotFoundError
from taskpilot.ports.azure_openai import SUPPORTED_IMAGE_TYPES


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UserNotFoundError)
    async def user_not_found(request: Request, exc: UserNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": str(exc), "userId": exc.user_id},
        )

    @app.exception_handler(UnsupportedMediaError)
    async def unsupported_media(request: Request, exc: UnsupportedMediaError) -> JSONResponse:
        return JSONResponse(
            status_code=415,
            content={"detail": str(exc), "supported": sorted(SUPPORTED_IMAGE_TYPES)},
        )
