"""
FastAPI control API for load tests, baselines and regression runs.

The app holds one DependencyContainer for its lifetime; every route works on
the container's LoadTestService, baseline store and regression runner.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from uuid import uuid4

import structlog
from fastapi import Body, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from surgecore import __version__
from surgecore.container import DependencyContainer
from surgecore.definition import TestDefinition, build_definition
from surgecore.exceptions import BaselineError, ConfigurationError, TestNotFoundError
from surgecore.observability.metrics import export_prometheus
from surgecore.regression import BaselineMetrics, RegressionConfig, ci_default_config
from surgecore.scenarios import get_scenario, list_scenarios

logger = structlog.get_logger(__name__)


class ScenarioRequest(BaseModel):
    scenario: str
    concurrency: Optional[int] = None
    duration: Optional[float] = None
    geographic_focus: Optional[str] = None


class CompareRequest(BaseModel):
    current: BaselineMetrics
    config: Optional[RegressionConfig] = None
    baseline_version: Optional[str] = None


class StartedResponse(BaseModel):
    test_id: str
    status: str = "started"
    links: Dict[str, str] = Field(default_factory=dict)


def _container(request: Request) -> DependencyContainer:
    return request.app.state.container


def _definition_from(payload: Dict[str, Any]) -> TestDefinition:
    if "scenario" in payload and "endpoints" not in payload:
        try:
            options = ScenarioRequest.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid scenario request: {exc}") from exc
        return get_scenario(
            options.scenario,
            concurrency=options.concurrency,
            duration=options.duration,
            geographic_focus=options.geographic_focus,
        )
    return build_definition(payload)


def create_app(container: Optional[DependencyContainer] = None) -> FastAPI:
    """Build the control API around `container` (a default one when omitted)."""

    deps = container or DependencyContainer()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if deps.is_running:
            # Lifecycle managed by the caller
            yield
            return
        async with deps.lifecycle():
            logger.info("Control API started", version=__version__)
            yield
        logger.info("Control API stopped")

    app = FastAPI(title="surgecore control API", version=__version__, lifespan=lifespan)
    app.state.container = deps
    app.state.start_time = time.time()

    @app.exception_handler(TestNotFoundError)
    async def _not_found(request: Request, exc: TestNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _invalid(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

    @app.exception_handler(BaselineError)
    async def _conflict(request: Request, exc: BaselineError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.middleware("http")
    async def add_request_id(request: Request, call_next: Callable) -> Any:
        start_time = time.time()
        request_id = str(uuid4())
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "API request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            response_time_ms=round(process_time * 1000, 2),
        )
        return response

    # --- health and metrics --------------------------------------------------

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        container_ = _container(request)
        service = await container_.get_service()
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": __version__,
            "uptime": time.time() - request.app.state.start_time,
            "active_tests": len(service.list_active()),
            "container": container_.get_health_status(),
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics() -> str:
        return export_prometheus()

    # --- load tests ------------------------------------------------------------

    @app.get("/scenarios")
    async def scenarios() -> List[Dict[str, Any]]:
        out = []
        for name in list_scenarios():
            definition = get_scenario(name)
            out.append(
                {
                    "name": name,
                    "description": definition.description,
                    "target_concurrency": definition.target_concurrency,
                    "total_seconds": definition.total_seconds,
                }
            )
        return out

    @app.post("/tests", status_code=status.HTTP_201_CREATED, response_model=StartedResponse)
    async def start_test(request: Request, payload: Dict[str, Any] = Body(...)) -> StartedResponse:
        """Start a test from a full definition or from `{"scenario": name, ...options}`."""
        definition = _definition_from(payload)
        service = await _container(request).get_service()
        test_id = await service.start(definition)
        return StartedResponse(
            test_id=test_id,
            links={"status": f"/tests/{test_id}", "report": f"/tests/{test_id}/report"},
        )

    @app.get("/tests")
    async def list_tests(request: Request, active: bool = False) -> List[Dict[str, Any]]:
        service = await _container(request).get_service()
        snapshots = service.list_active() if active else service.list_all()
        return [m.to_dict() for m in snapshots]

    @app.get("/tests/summary")
    async def tests_summary(request: Request) -> Dict[str, Any]:
        service = await _container(request).get_service()
        return service.summary()

    @app.get("/tests/{test_id}")
    async def test_status(request: Request, test_id: str) -> Dict[str, Any]:
        service = await _container(request).get_service()
        return service.status(test_id).to_dict()

    @app.delete("/tests/{test_id}")
    async def stop_test(request: Request, test_id: str) -> Dict[str, Any]:
        service = await _container(request).get_service()
        metrics = await service.stop(test_id)
        return metrics.to_dict()

    @app.get("/tests/{test_id}/report")
    async def test_report(request: Request, test_id: str) -> Dict[str, Any]:
        service = await _container(request).get_service()
        return service.report(test_id)

    # --- baselines -------------------------------------------------------------

    @app.get("/baselines")
    async def list_baselines(request: Request) -> Dict[str, Any]:
        store = await _container(request).get_store()
        latest = store.get_baseline()
        return {"versions": store.list_versions(), "latest": latest.version if latest else None}

    @app.get("/baselines/{version}")
    async def get_baseline(request: Request, version: str) -> Dict[str, Any]:
        store = await _container(request).get_store()
        baseline = store.get_baseline(version)
        if baseline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Baseline {version} not found")
        return baseline.model_dump(mode="json")

    @app.post("/baselines/{version}", status_code=status.HTTP_201_CREATED)
    async def create_baseline(request: Request, version: str, metrics: BaselineMetrics) -> Dict[str, Any]:
        runner = await _container(request).get_runner()
        return runner.update_baseline(version, metrics).model_dump(mode="json")

    # --- regressions -----------------------------------------------------------

    @app.post("/regressions")
    async def run_regression(request: Request, config: Optional[RegressionConfig] = None) -> Dict[str, Any]:
        """Run a regression configuration to completion (the CI gate when no body is sent)."""
        runner = await _container(request).get_runner()
        result = await runner.run(config or ci_default_config())
        return result.to_dict()

    @app.post("/regressions/compare")
    async def compare_metrics(request: Request, body: CompareRequest) -> Dict[str, Any]:
        runner = await _container(request).get_runner()
        config = body.config or RegressionConfig(name="API comparison")
        if body.baseline_version:
            config = config.model_copy(update={"baseline_version": body.baseline_version})
        return runner.compare_metrics(config, body.current).to_dict()

    @app.get("/regressions")
    async def regression_history(request: Request, name: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        runner = await _container(request).get_runner()
        return [r.to_dict() for r in runner.history(name, limit)]

    @app.get("/regressions/{test_id}")
    async def regression_result(request: Request, test_id: str) -> Dict[str, Any]:
        runner = await _container(request).get_runner()
        return runner.get_result(test_id).to_dict()

    return app


def run_web_server(host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run(create_app(), host=host, port=port)
