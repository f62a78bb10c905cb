"""HTTP surface (FastAPI) over BackendOrchestrator.

The application shell talks to the engine through these routes:
  GET  /health
  GET  /backend               orchestrator status snapshot
  GET  /catalog               {tree, elements}; ?rebuild=true bypasses the cache
  POST /codebook              {"path": ...} -> normalized codebook tree
  GET  /notices               fallback notices for the shell to display
  PUT  /admin/backend-mode    {"mode": "native"|"embedded"}
  GET  /admin/config          effective settings

CLI imports this module and calls create_app().
"""
from __future__ import annotations
from typing import Any, Dict, Optional
import asyncio

from fastapi import FastAPI, HTTPException, Query
from loguru import logger
from pydantic import BaseModel

from . import __version__
from .config.settings import BackendMode, Settings
from .core.errors import BackendUnavailableError, ConfigError, EngineError, EvaluationError
from .core.orchestrator import BackendOrchestrator


class CodebookRequest(BaseModel):
    path: str


class BackendModeRequest(BaseModel):
    mode: str


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, FileNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, EvaluationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, BackendUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[BackendOrchestrator] = None,
    warm_catalog: bool = True,
) -> FastAPI:
    settings = settings or (orchestrator.settings if orchestrator else Settings())
    orch = orchestrator or BackendOrchestrator(settings)
    app = FastAPI(title="ddiengine", version=__version__)
    app.state.orchestrator = orch
    app.state.warmup = None

    @app.on_event("startup")
    async def _startup():
        if not warm_catalog:
            return

        async def _warm():
            try:
                await orch.get_catalog()
            except EngineError as e:
                logger.warning(f"[server] catalog warmup failed: {e}")

        app.state.warmup = asyncio.get_running_loop().create_task(_warm())

    @app.on_event("shutdown")
    async def _shutdown():
        task = app.state.warmup
        if task is not None and not task.done():
            task.cancel()
        orch.shutdown()

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    @app.get("/backend")
    def backend():
        return orch.status()

    @app.get("/catalog")
    async def catalog(rebuild: bool = Query(False)):
        try:
            result = await orch.get_catalog(rebuild=rebuild)
        except EngineError as e:
            raise _http_error(e)
        return result.to_dict()

    @app.post("/codebook")
    async def codebook(req: CodebookRequest):
        try:
            node = await orch.load_codebook(req.path)
        except (FileNotFoundError, EngineError) as e:
            raise _http_error(e)
        return node.to_dict()

    @app.get("/notices")
    def notices():
        return {"notices": [n.to_dict() for n in orch.notices]}

    @app.put("/admin/backend-mode")
    def set_backend_mode(req: BackendModeRequest):
        try:
            orch.set_backend_mode(req.mode)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"mode": BackendMode(req.mode).value, "state": orch.state.value}

    @app.get("/admin/config")
    def admin_config() -> Dict[str, Any]:
        return {"file": str(settings.file_path), "settings": settings.load()}

    return app


__all__ = ["create_app"]
