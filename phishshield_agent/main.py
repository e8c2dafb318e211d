from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .analyzer import Analyzer
from .config import STATE_PATH, cors_allow_origins
from .errors import StorageError
from .ledger import ReportLedger
from .log import get_logger
from .ml_bridge import RemoteModelClient
from .models import (
    AnalysisPayload,
    ChainVerification,
    FusedResult,
    LedgerEntry,
    PingResult,
    ReportRequest,
    ReportResult,
    ReportStatus,
    Settings,
    StatusResponse,
)
from .storage import JsonFileStore, KeyValueStore, StateStore

logger = get_logger(__name__)


def create_app(
    store: KeyValueStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kv = store if store is not None else JsonFileStore(STATE_PATH)
        state = StateStore(kv)
        ledger = ReportLedger(kv)
        remote = RemoteModelClient(transport=transport)
        app.state.analyzer = Analyzer(state, ledger, remote)
        logger.info("agent_started", store=type(kv).__name__)
        yield

    app = FastAPI(title="PhishShield Agent", version="0.1.0", lifespan=lifespan)

    # Defaults to http://localhost:3000; set PHISHSHIELD_CORS_ORIGINS in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_analyzer(request: Request) -> Analyzer:
        return request.app.state.analyzer

    async def load_settings(analyzer: Analyzer) -> Settings:
        try:
            return await analyzer.state.get_settings()
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/analyze", response_model=FusedResult)
    async def analyze_endpoint(payload: AnalysisPayload, analyzer: Analyzer = Depends(get_analyzer)):
        return await analyzer.analyze_safely(payload)

    @app.get("/ping", response_model=PingResult)
    async def ping_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            settings = await analyzer.state.get_settings()
        except StorageError:
            return PingResult(ok=False, latency="--")
        return await analyzer.remote.ping_backend(settings)

    @app.get("/status", response_model=StatusResponse)
    async def status_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            settings = await analyzer.state.get_settings()
        except StorageError:
            return StatusResponse(ok=False)
        return StatusResponse(ok=True, settings=settings)

    @app.get("/settings", response_model=Settings)
    async def get_settings_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        return await load_settings(analyzer)

    @app.patch("/settings", response_model=Settings)
    async def patch_settings_endpoint(
        patch: dict[str, Any] = Body(...),
        analyzer: Analyzer = Depends(get_analyzer),
    ):
        try:
            return await analyzer.state.set_settings(patch)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False))
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/last-scan", response_model=FusedResult | None)
    async def last_scan_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            return await analyzer.state.get_last_scan()
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/history", response_model=list[FusedResult])
    async def history_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            return await analyzer.state.get_history()
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.delete("/history")
    async def clear_history_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            await analyzer.state.clear_history()
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ok": True}

    @app.post("/reports", response_model=ReportResult, response_model_exclude_none=True)
    async def add_report_endpoint(req: ReportRequest, analyzer: Analyzer = Depends(get_analyzer)):
        return await analyzer.add_report(req.url, req.source)

    @app.get("/reports/status", response_model=ReportStatus)
    async def report_status_endpoint(
        url: str = Query(..., min_length=1),
        analyzer: Analyzer = Depends(get_analyzer),
    ):
        try:
            return await analyzer.report_status(url)
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/ledger/verify", response_model=ChainVerification)
    async def verify_ledger_endpoint(analyzer: Analyzer = Depends(get_analyzer)):
        try:
            return await analyzer.ledger.verify_chain()
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/ledger/recent", response_model=list[LedgerEntry])
    async def recent_ledger_endpoint(
        limit: int = Query(20, ge=1, le=500),
        analyzer: Analyzer = Depends(get_analyzer),
    ):
        try:
            return await analyzer.ledger.recent_entries(limit)
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))

    return app


app = create_app()
