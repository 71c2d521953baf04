"""HTTP service for PRD generation.

Responses of the generate/refine endpoints are Server-Sent-Events in the
canonical delta shape, whatever provider produced them::

    data: {"choices": [{"delta": {"content": "..."}}]}
    data: [DONE]

A failure after streaming has started is reported as a final
``event: error`` frame.
"""
import json
from contextlib import asynccontextmanager
from typing import Optional

import prometheus_client as prom
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ai.adapters.stream import DONE_EVENT, encode_delta
from core.config import get_settings
from core.errors import (
    AuthenticationRequired,
    ConfigurationError,
    PermissionDenied,
    PRDError,
    UpstreamCredentialInvalid,
    UpstreamGenericFailure,
    UpstreamQuotaExceeded,
    UpstreamRateLimited,
    UpstreamTimeout,
    ValidationError,
)
from core.logging import logger
from core.security import Caller, TokenAuthenticator
from services.prd_service import GenerationRun, PRDService

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

# Checked in order; the first matching class decides the status code.
ERROR_STATUS = (
    (ValidationError, 400),
    (AuthenticationRequired, 401),
    (UpstreamCredentialInvalid, 401),
    (PermissionDenied, 403),
    (UpstreamQuotaExceeded, 402),
    (UpstreamRateLimited, 429),
    (UpstreamTimeout, 504),
)


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requirements: str = ""
    platform: str = ""
    project_context: Optional[str] = Field(None, alias="projectContext")


class RefineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    existing_prd: str = Field("", alias="existingPrd")
    additional_requirements: str = Field("", alias="additionalRequirements")
    platform: str = ""
    project_context: Optional[str] = Field(None, alias="projectContext")


def status_for(exc: PRDError) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status
    return 500


def error_body(exc: PRDError) -> dict:
    message = str(exc)
    if isinstance(exc, UpstreamCredentialInvalid):
        message = f"Authentication required. {message}"
    body = {"error": message}
    if isinstance(exc, ConfigurationError) and exc.missing:
        body["details"] = {"missing": exc.missing}
    elif isinstance(exc, UpstreamGenericFailure) and (exc.status or exc.details):
        body["details"] = {"status": exc.status, "upstream": exc.details}
    return body


def _error_event(message: str, restore: Optional[str] = None) -> str:
    payload = {"error": message}
    if restore is not None:
        payload["restore"] = restore
    return f"event: error\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


class RunStreamingResponse(StreamingResponse):
    """SSE response that closes its run even if the body is never iterated."""

    def __init__(self, run: GenerationRun, restore: Optional[str] = None):
        super().__init__(_sse(run, restore), media_type="text/event-stream")
        self.run = run

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.run.close()


async def _sse(run: GenerationRun, restore: Optional[str] = None):
    try:
        async for fragment in run.fragments():
            yield encode_delta(fragment)
        yield DONE_EVENT
    except PRDError as e:
        logger.error(f"PRD {run.kind} failed mid-stream: {e}")
        yield _error_event(str(e), restore)
    finally:
        await run.close()


def create_app(
    service: Optional[PRDService] = None,
    authenticator: Optional[TokenAuthenticator] = None,
) -> FastAPI:
    """Builds the FastAPI app. Without arguments everything comes from get_settings()."""
    if service is None or authenticator is None:
        config = get_settings()
        service = service or PRDService.from_config(config)
        authenticator = authenticator or TokenAuthenticator(config.app)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await service.aclose()

    app = FastAPI(title="PRD Generator", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.state.authenticator = authenticator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.exception_handler(PRDError)
    async def prd_error_handler(request: Request, exc: PRDError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content=error_body(exc))

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error in {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    def require_caller(authorization: Optional[str] = Header(None)) -> Caller:
        caller = authenticator.authenticate(authorization)
        if caller is None:
            raise AuthenticationRequired("Authentication required")
        return caller

    @app.get("/health")
    async def health_check():
        return service.monitoring.health_check()

    @app.get("/metrics")
    async def metrics():
        return Response(service.monitoring.render(), media_type=prom.CONTENT_TYPE_LATEST)

    @app.post("/functions/v1/generate-prd")
    async def generate_prd(body: GenerateRequest, caller: Caller = Depends(require_caller)):
        run = service.open_generation(
            body.requirements, body.platform, body.project_context, owner_id=caller.user_id
        )
        await run.start()
        return RunStreamingResponse(run)

    @app.post("/functions/v1/refine-prd")
    async def refine_prd(body: RefineRequest, caller: Caller = Depends(require_caller)):
        run = service.open_refinement(
            body.existing_prd,
            body.additional_requirements,
            body.platform,
            body.project_context,
            owner_id=caller.user_id,
        )
        await run.start()
        return RunStreamingResponse(run, restore=body.existing_prd)

    @app.get("/prds")
    async def list_prds(caller: Caller = Depends(require_caller)):
        records = await service.history(caller.user_id)
        return [record.to_dict() for record in records]

    @app.delete("/prds/{prd_id}")
    async def delete_prd(prd_id: str, caller: Caller = Depends(require_caller)):
        if not await service.delete(prd_id, caller):
            return JSONResponse(status_code=404, content={"error": "PRD not found"})
        return {"status": "deleted", "id": prd_id}

    return app


def main() -> None:
    settings = get_settings().app
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
