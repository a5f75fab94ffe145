"""
Engine service: the explicit context object shared by all HTTP handlers.

Bundles the supervisor and the serializer that guards it, and exposes the
three things the web layer needs: analyze a position, report the engine's
identity, and shut down. Built once at application startup and handed to
handlers by reference; nothing in this package keeps module-level engine
state.
"""

import logging
import time
from typing import Sequence

from engine.constants import (
    DEFAULT_DEPTH,
    DEFAULT_ENGINE_PATH,
    DEFAULT_HASH_MB,
    DEFAULT_MULTIPV,
    DEFAULT_THREADS,
    IDENTIFY_TIMEOUT_S,
    INIT_TIMEOUT_S,
    SEARCH_TIMEOUT_FLOOR_MS,
    STOP_GRACE_S,
    TERMINATE_GRACE_S,
)
from engine.process import EngineProcess, EngineState
from engine.serializer import AnalysisSerializer
from interface.parser import AnalysisResult, parse_analysis
from interface.uci import go_command, position_command

_log = logging.getLogger(__name__)


class EngineService:
    """
    Owns one EngineProcess and the AnalysisSerializer in front of it.

    Attributes:
        engine:     the supervised engine process.
        serializer: the single-flight gate every analysis passes through.
        search_timeout_floor_ms: minimum search budget; the effective budget
                    is max(floor, movetime_ms).
    """

    def __init__(
        self,
        engine_path: str = DEFAULT_ENGINE_PATH,
        engine_args: Sequence[str] = (),
        threads: int = DEFAULT_THREADS,
        hash_mb: int = DEFAULT_HASH_MB,
        init_timeout_s: float = INIT_TIMEOUT_S,
        search_timeout_floor_ms: int = SEARCH_TIMEOUT_FLOOR_MS,
        stop_grace_s: float = STOP_GRACE_S,
    ) -> None:
        self.serializer = AnalysisSerializer()
        self.engine = EngineProcess(
            path=engine_path,
            args=engine_args,
            threads=threads,
            hash_mb=hash_mb,
            serializer=self.serializer,
            init_timeout_s=init_timeout_s,
            stop_grace_s=stop_grace_s,
        )
        self.search_timeout_floor_ms = search_timeout_floor_ms

    @property
    def is_ready(self) -> bool:
        return self.engine.is_ready

    @property
    def state(self) -> EngineState:
        return self.engine.state

    def start(self) -> None:
        """Initialize the engine if it is not already running."""
        self.engine.initialize()

    def search_timeout_s(self, movetime_ms: int) -> float:
        return max(self.search_timeout_floor_ms, movetime_ms) / 1000

    def analyze(
        self,
        fen: str | None = None,
        moves: Sequence[str] | None = None,
        depth: int = DEFAULT_DEPTH,
        multi_pv: int = DEFAULT_MULTIPV,
        movetime_ms: int = 0,
    ) -> AnalysisResult:
        """
        Analyse one position.

        Waits for the serializer, lazily (re)starts the engine, sends the
        position and the search, and parses what came back. The gate is held
        for the whole conversation, including any stop-and-drain after a
        timeout, and released before parsing.

        Raises:
            EngineTimeoutError: the search overran max(floor, movetime_ms).
            EngineError:        any other engine failure.
        """
        position_cmd = position_command(fen, moves)
        go_cmd = go_command(depth, movetime_ms)
        timeout_s = self.search_timeout_s(movetime_ms)

        ahead = self.serializer.waiting + int(self.serializer.locked)
        if ahead:
            _log.debug("analysis queued behind %d request(s)", ahead)
        with self.serializer:
            self.engine.initialize()
            started = time.monotonic()
            raw = self.engine.search(position_cmd, go_cmd, multi_pv, timeout_s)
            timing_ms = int((time.monotonic() - started) * 1000)

        result = parse_analysis(raw, timing_ms, max_lines=multi_pv)
        _log.info(
            "analysis %s / %s -> %s depth=%d nodes=%d in %d ms",
            position_cmd[:60],
            go_cmd,
            result.best_move,
            result.statistics.depth,
            result.statistics.nodes,
            timing_ms,
        )
        return result

    def identify(self) -> str:
        """
        Return the engine's self-reported name, starting the engine if needed.

        Uses a "uci" round-trip, which needs no serializer: it does not touch
        the position or the analysis buffer.
        """
        self.engine.initialize()
        return self.engine.identify(IDENTIFY_TIMEOUT_S)

    def shutdown(self, grace_s: float = TERMINATE_GRACE_S) -> None:
        self.engine.terminate(grace_s)
