# service/app.py
import logging
import time
from typing import Callable, List, Optional

from fastapi import FastAPI, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from pydantic import BaseModel

from bluegreen.config import load_config
from bluegreen.controller import DeploymentController, build_controller
from bluegreen.logger import get_logger
from bluegreen.models import OperationResult, Outcome
from service.middleware import RequestIDMiddleware, get_operator, get_request_id, log_context

logger = logging.getLogger(__name__)

UPTIME = Gauge("bluegreen_service_uptime_seconds", "Operator API uptime in seconds")

# error kind -> HTTP status
STATUS_FOR_KIND = {
    "validation": 400,
    "concurrency": 409,
    "operational": 502,
    "transient": 502,
    "fatal": 500,
    "internal": 500,
}


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------
class DeployRequest(BaseModel):
    environment: str
    version: str


class MigrateRequest(BaseModel):
    target: str
    version: Optional[str] = None
    steps: Optional[List[int]] = None
    background: bool = True


class CanaryRequest(BaseModel):
    target: str
    version: Optional[str] = None
    percentage: Optional[int] = None
    background: bool = True


class SwitchRequest(BaseModel):
    target: str


class CleanupRequest(BaseModel):
    environment: str


def _respond(result: OperationResult) -> dict:
    body = result.model_dump(mode="json")
    if result.ok:
        return body
    status = STATUS_FOR_KIND.get(result.error_kind or "", 500)
    if result.outcome == Outcome.FATAL:
        status = 500
    raise HTTPException(status_code=status, detail=body)


def create_app(controller: Optional[DeploymentController] = None, start_monitor: bool = True) -> FastAPI:
    """Build the operator API around ``controller``.

    Without a controller one is assembled from ``load_config()`` at startup.
    """
    app = FastAPI(title="Blue-Green Deployment Orchestrator")
    app.add_middleware(RequestIDMiddleware)
    app.state.controller = controller
    started_at = time.time()

    @app.on_event("startup")
    def _startup():
        if app.state.controller is None:
            config = load_config()
            get_logger("bluegreen", config.log_level, str(config.state_path))
            app.state.controller = build_controller(config)
            app.state.controller.reconcile()
        monitor = app.state.controller.monitor
        if start_monitor and monitor is not None:
            monitor.start()
        logger.info("Operator API ready")

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.controller is not None:
            app.state.controller.shutdown()

    def ctl() -> DeploymentController:
        if app.state.controller is None:
            raise HTTPException(status_code=503, detail="Controller not initialised")
        return app.state.controller

    def execute(operation: str, call: Callable[[], OperationResult]) -> dict:
        operator = get_operator()
        with log_context(operation=operation):
            logger.info(f"[{get_request_id()}] {operator} requested {operation}")
            return _respond(call())

    # ------------------------------------------------------------------
    # Read-only endpoints
    # ------------------------------------------------------------------
    @app.get("/healthz")
    def healthz():
        status = ctl().status()
        return {
            "status": "ok",
            "traffic": status["traffic"],
            "plan_running": status["plan_running"],
        }

    @app.get("/status")
    def status():
        return ctl().status()

    @app.get("/history")
    def history(limit: int = 50):
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return {"entries": [e.model_dump(mode="json") for e in ctl().history_entries(limit)]}

    @app.get("/alerts")
    def alerts(limit: int = 20):
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return {"alerts": [a.model_dump(mode="json") for a in ctl().alerts.recent(limit)]}

    @app.get("/dashboard")
    def dashboard():
        monitor = ctl().monitor
        if monitor is None:
            raise HTTPException(status_code=503, detail="Monitor not configured")
        return monitor.dashboard()

    @app.get("/validate")
    def validate():
        verdicts = ctl().validate_environments()
        return {
            "healthy": all(v.healthy for v in verdicts.values()),
            "environments": {k.value: v.model_dump(mode="json") for k, v in verdicts.items()},
        }

    @app.get("/metrics")
    def metrics():
        """Prometheus metrics endpoint."""
        UPTIME.set(time.time() - started_at)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    @app.post("/deploy")
    def deploy(req: DeployRequest):
        return execute("deploy", lambda: ctl().deploy(req.environment, req.version))

    @app.post("/migrate")
    def migrate(req: MigrateRequest):
        return execute("gradual_migrate", lambda: ctl().gradual_migrate(
            req.target, version=req.version, steps=req.steps, background=req.background
        ))

    @app.post("/canary")
    def canary(req: CanaryRequest):
        return execute("canary", lambda: ctl().canary(
            req.target, version=req.version, percentage=req.percentage, background=req.background
        ))

    @app.post("/switch")
    def switch(req: SwitchRequest):
        return execute("direct_switch", lambda: ctl().direct_switch(req.target))

    @app.post("/rollback")
    def rollback():
        return execute("rollback", lambda: ctl().rollback())

    @app.post("/abort")
    def abort():
        return execute("abort", lambda: ctl().abort())

    @app.post("/cleanup")
    def cleanup(req: CleanupRequest):
        return execute("cleanup", lambda: ctl().cleanup(req.environment))

    return app


app = create_app()
