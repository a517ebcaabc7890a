"""
Global user agent filter, the first line of bot defense.

Runs ahead of every route under the configured prefixes so obvious
automation is refused before routing, authentication or any counter store
access happens. Finer grained rate limiting and behavior checks live in the
per-route admission dependency.
"""

from typing import Optional, Sequence

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..core.config import get_settings
from ..services.user_agent import classify, get_client_identifier, get_user_agent
from ..telemetry import record_decision

logger = structlog.get_logger()


class BotFilterMiddleware(BaseHTTPMiddleware):
    """Reject requests whose user agent classifies as blockable automation."""

    def __init__(self, app, path_prefixes: Optional[Sequence[str]] = None):
        super().__init__(app)
        if path_prefixes is None:
            path_prefixes = get_settings().bot_filter_path_prefixes
        self.path_prefixes = tuple(path_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if not path.startswith(self.path_prefixes):
            return await call_next(request)

        user_agent = get_user_agent(request.headers)
        identifier = get_client_identifier(request.headers)
        verdict = classify(user_agent)

        if verdict.should_block:
            record_decision("bot_filter", "blocked")
            logger.warning(
                "bot_detection.blocked",
                identifier=identifier,
                user_agent=user_agent,
                reason=verdict.reason,
                confidence=verdict.confidence.value,
                path=path,
            )
            return JSONResponse(
                status_code=403,
                content={
                    "success": False,
                    "error": "Bot detected",
                    "code": "BOT_DETECTED",
                    "message": (
                        "Automated requests are not allowed. If you believe this is "
                        "an error, please contact support."
                    ),
                },
                headers={
                    "X-Bot-Detection": "blocked",
                    "X-Bot-Reason": verdict.reason or "unknown",
                },
            )

        if verdict.is_bot:
            logger.info(
                "bot_detection.crawler_allowed",
                identifier=identifier,
                user_agent=user_agent,
                reason=verdict.reason,
                path=path,
            )

        return await call_next(request)
