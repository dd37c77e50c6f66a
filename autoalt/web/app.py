"""FastAPI application for driving processing steps over HTTP.

A browser or scheduler calls ``POST /api/step`` repeatedly until the response
reports ``completed``. Every call is one bounded batch, so a request never
runs longer than one batch of provider calls.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from autoalt.config import AutoAltConfig
from autoalt.errors import ConfigurationError, LibraryError, RateLimitExceeded, StoreError
from autoalt.quota import HourlyQuota
from autoalt.step import PREVIEW_COUNT, ProcessingStep

logger = logging.getLogger(__name__)


class StepRequest(BaseModel):
    """Optional per-request overrides of the configured step settings."""

    provider: Optional[str] = None  # noqa: UP007
    model: Optional[str] = None  # noqa: UP007
    batch_size: Optional[int] = None  # noqa: UP007
    max_retries: Optional[int] = None  # noqa: UP007
    api_key: Optional[str] = None  # noqa: UP007


class PreviewRequest(StepRequest):
    count: int = PREVIEW_COUNT


def _caller(request: Request) -> str:
    """Identify the caller for quota purposes."""
    user = request.headers.get("x-autoalt-user")
    if user:
        return user
    return request.client.host if request.client else "anonymous"


def create_app(
    config: AutoAltConfig | None = None,
    *,
    engine: ProcessingStep | None = None,
) -> FastAPI:
    """Create and return the FastAPI application."""
    cfg = config or AutoAltConfig.load()
    engine = engine or ProcessingStep.from_config(cfg)
    quota = HourlyQuota(
        engine.store, limit=cfg.session.hourly_quota, namespace=cfg.session.namespace,
    )

    app = FastAPI(title="autoalt", docs_url=None, redoc_url=None)
    app.state.engine = engine
    app.state.quota = quota

    def _step_config(body: StepRequest | None):  # type: ignore[no-untyped-def]
        overrides: dict[str, Any] = body.model_dump() if body is not None else {}
        try:
            return cfg.step_config(**overrides)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.get("/api/stats")
    async def stats() -> dict:
        """Alt text coverage across the library."""
        try:
            result = engine.stats()
        except LibraryError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {
            "total": result.total,
            "with_alt": result.with_alt,
            "without_alt": result.without_alt,
            "percentage": result.percentage,
        }

    @app.get("/api/session")
    async def session() -> dict:
        """Whether a saved session can be resumed."""
        try:
            status = engine.check_session()
        except (StoreError, LibraryError) as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {
            "has_session": status.has_session,
            "session_total": status.session_total,
            "remaining": status.remaining,
            "processed": status.processed,
        }

    @app.post("/api/session/fresh")
    async def fresh_session() -> dict:
        """Discard the saved session before starting over."""
        try:
            engine.start_fresh_session()
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {"cleared": True}

    @app.post("/api/step")
    async def step(request: Request, body: Optional[StepRequest] = None) -> dict:  # noqa: UP007
        """Process one batch. Poll until ``completed`` is true."""
        step_cfg = _step_config(body)
        try:
            quota.check(_caller(request))
        except RateLimitExceeded as exc:
            raise HTTPException(
                status_code=429, detail=str(exc),
                headers={"Retry-After": str(exc.retry_after or 3600)},
            )
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc))

        result = await engine.run_step(step_cfg)
        payload = result.to_dict()
        payload["success"] = result.error is None
        return payload

    @app.post("/api/preview")
    async def preview(body: Optional[PreviewRequest] = None) -> dict:  # noqa: UP007
        """Draft alt text for the first few pending images without saving."""
        count = body.count if body is not None else PREVIEW_COUNT
        overrides = StepRequest.model_validate(body.model_dump(exclude={"count"})) if body else None
        try:
            items = await engine.preview(_step_config(overrides), count)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except LibraryError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {
            "results": [
                {
                    "image_id": item.image_id,
                    "alt_text": item.alt_text,
                    "error": item.error,
                    "success": item.error is None,
                }
                for item in items
            ],
        }

    @app.post("/api/test-connection")
    async def test_connection(body: Optional[StepRequest] = None) -> dict:  # noqa: UP007
        """Preflight the provider with a tiny request."""
        error = await engine.test_connection(_step_config(body))
        return {"success": error is None, "error": error}

    @app.get("/api/providers")
    async def get_providers() -> dict:
        """Return available AI providers and their models."""
        from autoalt.providers import AVAILABLE_MODELS, list_available

        return {
            "providers": [
                {
                    "name": name,
                    "available": available,
                    "models": list(AVAILABLE_MODELS.get(name, {})),
                }
                for name, available in list_available()
            ],
        }

    @app.get("/api/logs")
    async def get_logs() -> dict:
        """Recent activity recorded when debug logging is enabled."""
        from autoalt.logs import recent_logs

        return {"logs": recent_logs(engine.store, cfg.session.namespace)}

    return app
