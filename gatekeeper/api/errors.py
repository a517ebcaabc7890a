"""Translate typed admission rejections into HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..core.errors import AdmissionBlocked, AdmissionThrottled


async def admission_blocked_handler(request: Request, exc: AdmissionBlocked) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=exc.to_payload().model_dump(),
    )


async def admission_throttled_handler(
    request: Request, exc: AdmissionThrottled
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=exc.to_payload().model_dump(),
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AdmissionBlocked, admission_blocked_handler)
    app.add_exception_handler(AdmissionThrottled, admission_throttled_handler)
