"""
FastAPI application exposing the competitor-analysis API.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from scoutline.container import DependencyContainer
from scoutline.exceptions import AnalysisNotFound, InvalidSubmission, QueueUnavailable
from scoutline.pipeline import PipelineOrchestrator
from scoutline.protocols import AnalysisConfig, AnalysisDepth, AnalysisType

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/competitor-analysis"


class AnalyzeRequest(BaseModel):
    requester_id: str = ""
    competitors: List[str] = Field(default_factory=list)
    analysis_type: AnalysisType = AnalysisType.BASIC
    depth: AnalysisDepth = AnalysisDepth.MEDIUM
    include_keywords: bool = True
    include_backlinks: bool = False
    include_content: bool = True
    include_technical: bool = True

    def to_config(self) -> AnalysisConfig:
        return AnalysisConfig(
            analysis_type=self.analysis_type,
            depth=self.depth,
            include_keywords=self.include_keywords,
            include_backlinks=self.include_backlinks,
            include_content=self.include_content,
            include_technical=self.include_technical,
        )


class AnalyzeResponse(BaseModel):
    analysis_id: str
    status: str
    message: str


def create_app(
    orchestrator: Optional[PipelineOrchestrator] = None,
    container: Optional[DependencyContainer] = None,
) -> FastAPI:
    """
    Build the API around an orchestrator.

    Either pass a ready orchestrator (started and closed with the app) or a
    container, which is initialized on startup and shut down on exit.
    """
    if orchestrator is None and container is None:
        container = DependencyContainer()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if container is not None:
            await container.initialize()
            app.state.orchestrator = await container.get_orchestrator()
        else:
            assert orchestrator is not None
            await orchestrator.start()
            app.state.orchestrator = orchestrator
        app.state.start_time = time.time()
        logger.info("Scoutline API started")

        yield

        logger.info("Shutting down Scoutline API")
        if container is not None:
            await container.shutdown()
        else:
            await app.state.orchestrator.close()

    app = FastAPI(title="Scoutline Competitor Analysis API", version="0.1.0", lifespan=lifespan)

    def get_orchestrator(request: Request) -> PipelineOrchestrator:
        return request.app.state.orchestrator  # type: ignore[no-any-return]

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request body", "errors": jsonable_errors(exc)},
        )

    @app.post(f"{API_PREFIX}/analyze", status_code=status.HTTP_202_ACCEPTED, response_model=AnalyzeResponse)
    async def analyze(body: AnalyzeRequest, request: Request) -> AnalyzeResponse:
        """Accept an analysis; work continues in the background."""
        try:
            orchestrator = get_orchestrator(request)
            analysis_id = await orchestrator.submit(body.requester_id, body.competitors, body.to_config())
            record = await orchestrator.get_status(analysis_id)
        except InvalidSubmission as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
        except QueueUnavailable as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message) from e
        return AnalyzeResponse(
            analysis_id=analysis_id,
            status="processing",
            message=f"Analysis started for {len(record.targets)} competitors",
        )

    @app.get(f"{API_PREFIX}/status/{{analysis_id}}")
    async def get_status(analysis_id: str, request: Request) -> Dict[str, Any]:
        try:
            record = await get_orchestrator(request).get_status(analysis_id)
        except AnalysisNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
        return {
            "analysis_id": record.analysis_id,
            "status": record.status.value,
            "progress_message": record.progress_message,
            "error_detail": record.error_detail,
            "targets": record.targets,
            "scraped": len(record.scraped_results),
            "failed": len(record.failed_targets),
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
            "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        }

    @app.get(f"{API_PREFIX}/results/{{analysis_id}}")
    async def get_results(analysis_id: str, request: Request) -> Dict[str, Any]:
        try:
            record = await get_orchestrator(request).get_status(analysis_id)
        except AnalysisNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
        return record.to_dict()

    @app.get(f"{API_PREFIX}/health")
    async def pipeline_health(request: Request) -> JSONResponse:
        report = await get_orchestrator(request).health_check()
        code = status.HTTP_503_SERVICE_UNAVAILABLE if report["status"] == "unhealthy" else status.HTTP_200_OK
        return JSONResponse(status_code=code, content=report)

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        """Liveness probe for Kubernetes/Docker."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "uptime_seconds": round(time.time() - getattr(request.app.state, "start_time", time.time()), 1),
            "version": "0.1.0",
        }

    @app.get("/metrics")
    async def get_prometheus_metrics() -> PlainTextResponse:
        """Endpoint for Prometheus to scrape."""
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next: Callable) -> Any:
        start_time = time.time()
        request_id = uuid4()
        request.state.request_id = request_id

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-ID"] = str(request_id)
        logger.debug(
            "API request",
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code,
            response_time_ms=round(process_time * 1000, 2),
            request_id=str(request_id),
        )
        return response

    return app


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


def run_web_server(container: DependencyContainer, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the API with uvicorn until interrupted."""
    import uvicorn

    logger.info("Starting Scoutline API", url=f"http://{host}:{port}")
    uvicorn.run(create_app(container=container), host=host, port=port)
