"""
FastAPI application for the engine companion service.

Endpoints:
    GET  /health   -> engine liveness, lazily starting the engine if needed
    POST /analyze  -> analyse one position and return best move, evaluation,
                      principal variations and search statistics
    GET  /         -> service name, version and endpoint map

Architecture notes:
- Sync endpoints (not async): FastAPI runs sync handlers in a thread pool,
  which is the right place for calls that block on the engine. Concurrency
  between requests comes from that pool; the AnalysisSerializer inside the
  EngineService makes the engine conversation itself strictly sequential.
  /health is the exception: it is async and hands its blocking call to
  asyncio.to_thread, so a full /analyze queue cannot hold it up.
- No module-level engine: create_app() builds one EngineService and stores it
  on app.state, and handlers receive it through a dependency.
- Any origin may call the API. The intended caller is a desktop application
  shell whose origin is not a fixed http(s) URL.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Literal

import chess
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from engine.constants import (
    DEFAULT_DEPTH,
    DEFAULT_MULTIPV,
    MAX_DEPTH,
    MAX_MULTIPV,
    MIN_DEPTH,
    MIN_MULTIPV,
)
from engine.errors import EngineError, EngineTimeoutError
from engine.service import EngineService
from interface.parser import AnalysisResult
from web.config import Settings

_log = logging.getLogger(__name__)

SERVICE_NAME = "Engine Companion Service"
SERVICE_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class AnalysisRequest(BaseModel):
    """
    Client request for one analysis.

    Fields:
        fen:         Position to analyse. Missing, empty, or "startpos" means
                     the standard starting position. Must parse as FEN; it is
                     re-serialised by python-chess, so the engine always sees
                     a single-line, single-spaced FEN.
        moves:       Moves to play on top of the position, in the engine's
                     coordinate notation (e2e4, e7e8q). Only the notation is
                     checked here; legality is the engine's business.
        depth:       Search depth in plies, 1-30.
        multi_pv:    Number of principal variations to report, 1-10.
        movetime_ms: Search time in milliseconds; 0 means search to depth.

    The wire form is camelCase only ("multiPV", "movetimeMs"). Unknown keys,
    snake_case spellings included, are ignored. Integer fields take JSON
    numbers with no fractional part (10 or 10.0); strings and booleans are
    rejected.
    """

    model_config = ConfigDict(strict=True)

    fen: str | None = None
    moves: list[str] | None = None
    depth: int = Field(DEFAULT_DEPTH, ge=MIN_DEPTH, le=MAX_DEPTH)
    multi_pv: int = Field(DEFAULT_MULTIPV, ge=MIN_MULTIPV, le=MAX_MULTIPV, alias="multiPV")
    movetime_ms: int = Field(0, ge=0, alias="movetimeMs")

    @field_validator("depth", "multi_pv", "movetime_ms", mode="before")
    @classmethod
    def accept_integral_numbers(cls, v):
        # JSON has one number type; 10.0 is the integer 10, 10.5 is not.
        if isinstance(v, float) and v.is_integer():
            return int(v)
        return v

    @field_validator("fen")
    @classmethod
    def check_fen(cls, v: str | None) -> str | None:
        """Normalise the start position and reject FEN that does not parse."""
        if v is None:
            return None
        v = v.strip()
        if not v or v.lower() == "startpos":
            return None
        try:
            board = chess.Board(v)
        except ValueError as exc:
            raise ValueError(f"invalid FEN: {exc}") from exc
        return board.fen()

    @field_validator("moves")
    @classmethod
    def check_moves(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        checked = []
        for move in v:
            try:
                checked.append(chess.Move.from_uci(move).uci())
            except ValueError:
                raise ValueError(f"invalid move notation: {move!r}") from None
        return checked


class Evaluation(BaseModel):
    type: Literal["cp", "mate"]
    value: int


class PvLine(BaseModel):
    pv: list[str]
    eval: Evaluation


class Statistics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    depth: int
    sel_depth: int | None = Field(None, alias="selDepth")
    nodes: int
    nps: int


class AnalysisResponse(BaseModel):
    """Structured analysis returned to the client (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    best_move: str = Field(alias="bestMove")
    ponder: str | None = None
    evaluation: Evaluation
    lines: list[PvLine]
    statistics: Statistics
    timing_ms: int = Field(alias="timingMs")

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "AnalysisResponse":
        def _eval(e) -> Evaluation:
            return Evaluation(type=e.type, value=e.value)

        return cls(
            best_move=result.best_move,
            ponder=result.ponder,
            evaluation=_eval(result.evaluation),
            lines=[PvLine(pv=list(line.pv), eval=_eval(line.eval)) for line in result.lines],
            statistics=Statistics(
                depth=result.statistics.depth,
                sel_depth=result.statistics.sel_depth,
                nodes=result.statistics.nodes,
                nps=result.statistics.nps,
            ),
            timing_ms=result.timing_ms,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _format_validation_errors(errors) -> str:
    """Render pydantic errors as "field: reason, field: reason"."""
    parts = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        parts.append(f"{'.'.join(loc) or 'body'}: {err.get('msg', 'invalid')}")
    return ", ".join(parts)


def build_service(settings: Settings) -> EngineService:
    return EngineService(
        engine_path=settings.engine_path,
        engine_args=settings.engine_args,
        threads=settings.threads,
        hash_mb=settings.hash_mb,
        init_timeout_s=settings.init_timeout_ms / 1000,
        search_timeout_floor_ms=settings.search_timeout_floor_ms,
        stop_grace_s=settings.stop_grace_ms / 1000,
    )


async def get_service(request: Request) -> EngineService:
    # async so that resolving it never needs a worker thread
    return request.app.state.service


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    service: EngineService | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Build the FastAPI application around one EngineService.

    With settings.eager_start the engine is started during application
    startup, and a failure there aborts startup: a service that cannot run
    its engine should not start listening. Otherwise the first request starts
    it. On shutdown (including SIGINT/SIGTERM, which uvicorn turns into a
    lifespan shutdown) the engine is sent "quit" and then killed.
    """
    settings = settings or Settings.from_env()
    service = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.eager_start:
            _log.info("Initializing engine %s", settings.engine_path)
            try:
                await run_in_threadpool(service.start)
            except EngineError:
                _log.exception("Failed to start engine")
                raise
        yield
        _log.info("Shutting down, stopping engine")
        await run_in_threadpool(service.shutdown)

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "validation_error", _format_validation_errors(exc.errors()))

    @app.get("/")
    def root() -> dict:
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "health": "GET /health",
                "analyze": "POST /analyze",
            },
        }

    @app.get("/health")
    async def health(service: EngineService = Depends(get_service)) -> JSONResponse:
        """
        Report whether the engine is usable right now.

        Starts the engine if it is not running. A spawn or handshake failure
        here is reported as 503 rather than raised: the health endpoint is
        how the client learns the engine is unavailable.

        The blocking identify call runs on the event loop's own executor,
        not the threadpool the sync /analyze handler uses, so requests queued
        behind the serializer cannot starve the health check.
        """
        try:
            version = await asyncio.to_thread(service.identify)
        except EngineError as exc:
            _log.warning("health check failed: %s", exc)
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "engine": "not ready", "error": str(exc)},
            )
        return JSONResponse(content={"status": "healthy", "engine": "ready", "version": version})

    @app.post("/analyze", response_model=AnalysisResponse, response_model_exclude_none=True)
    def analyze(
        request: AnalysisRequest | None = None,
        service: EngineService = Depends(get_service),
    ):
        """
        Analyse one position.

        Raises nothing to the framework: engine timeouts become 504 with the
        requested depth in the message, any other failure becomes 500 with
        the raw error message.
        """
        # An empty body is a request for all defaults.
        request = request or AnalysisRequest()
        try:
            result = service.analyze(
                fen=request.fen,
                moves=request.moves,
                depth=request.depth,
                multi_pv=request.multi_pv,
                movetime_ms=request.movetime_ms,
            )
        except EngineTimeoutError as exc:
            _log.warning("analysis timed out (depth=%d): %s", request.depth, exc)
            return _error(504, "timeout", f"Analysis exceeded time limit (depth={request.depth}).")
        except Exception as exc:
            _log.exception("analysis failed for fen=%s", request.fen)
            return _error(500, "analysis_error", str(exc))

        return AnalysisResponse.from_result(result)

    return app
