from __future__ import annotations

from fastapi import Depends, FastAPI

from .api.dependencies import enforce_admission, shutdown_dependencies
from .api.errors import install_exception_handlers
from .api.middleware import BotFilterMiddleware
from .core.config import get_settings
from .core.logging import configure_logging
from .domain.admission import AdmissionDecision
from .telemetry import configure_tracing, setup_prometheus


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    app = FastAPI(title=settings.project_name, version="0.1.0")

    app.add_middleware(BotFilterMiddleware, path_prefixes=settings.bot_filter_path_prefixes)
    install_exception_handlers(app)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_dependencies()

    @app.get("/healthz")
    def healthz() -> dict[str, str | bool]:
        return {"ok": True, "service": "gatekeeper"}

    @app.get(f"{settings.api_prefix}/system/status")
    async def system_status(
        decision: AdmissionDecision = Depends(
            enforce_admission(f"{settings.api_prefix}/system/status")
        ),
    ) -> dict[str, str | int | None]:
        remaining = decision.rate_limit.remaining if decision.rate_limit else None
        return {"status": "ok", "client": decision.identifier, "remaining": remaining}

    if settings.enable_prometheus_metrics:
        setup_prometheus(app)
    configure_tracing(app)

    return app


app = create_app()
