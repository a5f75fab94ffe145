"""
Tests for the engine supervisor and the EngineService around it.

Every test drives a real subprocess: tests/fake_engine.py, a scripted UCI
engine whose misbehaviour (hanging, ignoring stop, crashing, never finishing
the handshake) is selected per test.
"""

import logging
import os
import signal
import threading
import time

import chess
import pytest

from engine.errors import (
    EngineCrashedError,
    EngineSpawnError,
    EngineTimeoutError,
    InvalidTransitionError,
)
from engine.process import EngineState
from engine.service import EngineService
from interface.matcher import CommandKind
from tests.conftest import read_log


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def _first_move(fen=chess.STARTING_FEN, moves=()):
    board = chess.Board(fen)
    for move in moves:
        board.push_uci(move)
    return sorted(m.uci() for m in board.legal_moves)[0]


class TestLifecycle:
    def test_initialize_reaches_ready(self, make_service, engine_log):
        service = make_service(log=engine_log, threads=2, hash_mb=64)
        assert service.state is EngineState.UNINITIALIZED
        service.start()

        assert service.state is EngineState.READY
        assert service.is_ready
        assert service.engine.engine_id == "FakeFish 1.0"
        log = read_log(engine_log)
        assert log[:2] == ["uci", "isready"]
        assert "setoption name Threads value 2" in log
        assert "setoption name Hash value 64" in log

    def test_initialize_is_idempotent(self, make_service):
        service = make_service()
        service.start()
        pid = service.engine.pid
        service.start()
        assert service.engine.pid == pid

    def test_spawn_failure(self):
        service = EngineService(engine_path="/nonexistent/dir/no-such-engine")
        with pytest.raises(EngineSpawnError):
            service.start()
        assert service.state is EngineState.TERMINATED
        assert not service.is_ready

    def test_handshake_timeout_kills_engine(self, make_service):
        service = make_service(mode="silent", init_timeout_s=0.3)
        with pytest.raises(EngineTimeoutError):
            service.start()
        assert service.state is EngineState.TERMINATED
        assert service.engine.pid is None

    def test_terminate(self, make_service, engine_log):
        service = make_service(log=engine_log)
        service.start()
        service.shutdown(grace_s=1.0)

        assert service.state is EngineState.TERMINATED
        assert service.engine.pid is None
        assert read_log(engine_log)[-1] == "quit"

    def test_terminate_without_process_is_a_no_op(self, make_service):
        service = make_service()
        service.shutdown()
        assert service.state is EngineState.UNINITIALIZED

    def test_invalid_transition(self, make_service):
        service = make_service()
        with pytest.raises(InvalidTransitionError):
            service.engine._transition(EngineState.BUSY)

    def test_identify(self, make_service):
        service = make_service()
        assert service.identify() == "FakeFish 1.0"
        assert service.is_ready


class TestAnalysis:
    def test_startpos(self, make_service):
        service = make_service()
        result = service.analyze(depth=4)

        assert result.best_move == "a2a3"
        assert result.ponder == "a7a5"
        assert result.lines[0].pv == ["a2a3", "a7a5"]
        assert result.statistics.depth == 4
        assert result.statistics.sel_depth == 6
        assert service.state is EngineState.READY

    def test_multipv(self, make_service):
        service = make_service()
        result = service.analyze(depth=2, multi_pv=3)
        assert [line.pv[0] for line in result.lines] == ["a2a3", "a2a4", "b1a3"]
        assert [line.eval.value for line in result.lines] == [30, 20, 10]
        assert result.evaluation.value == 30

    def test_fen_and_moves(self, make_service):
        fen = "r1bqkbnr/pppp1ppp/2n5/4p3/4P3/5N2/PPPP1PPP/RNBQKB1R w KQkq - 2 3"
        service = make_service()
        result = service.analyze(fen=fen, moves=["f1c4", "g8f6"], depth=2)
        assert result.best_move == _first_move(fen, ["f1c4", "g8f6"])

    def test_search_requires_serializer(self, make_service):
        service = make_service()
        service.start()
        with pytest.raises(RuntimeError):
            service.engine.search("position startpos", "go depth 1", 1, 1.0)

    def test_multi_line_command_is_refused(self, make_service, engine_log):
        service = make_service(log=engine_log)
        service.start()
        with service.serializer:
            with pytest.raises(ValueError):
                service.engine.search("position fen 7k/8/8/8/8/8/8/K7\nb - - 0 1", "go depth 1", 1, 1.0)
        assert service.state is EngineState.READY
        assert len(service.engine.matcher) == 0
        assert service.analyze(depth=1).best_move == "a2a3"
        assert not [line for line in read_log(engine_log) if line.startswith("position fen")]

    def test_busy_only_while_serializer_held(self, make_service):
        service = make_service(delay_ms=500)
        service.start()
        worker = threading.Thread(target=service.analyze, kwargs={"depth": 1})
        worker.start()

        _wait_for(lambda: service.state is EngineState.BUSY)
        assert service.serializer.locked
        worker.join(timeout=5.0)
        assert service.state is EngineState.READY
        assert not service.serializer.locked


class TestConcurrency:
    def test_queued_analysis_logs_queue_depth(self, make_service, caplog):
        service = make_service(delay_ms=500)
        service.start()
        worker = threading.Thread(target=service.analyze, kwargs={"depth": 1})
        worker.start()
        _wait_for(lambda: service.state is EngineState.BUSY)

        with caplog.at_level(logging.DEBUG, logger="engine.service"):
            result = service.analyze(depth=1)
        worker.join(timeout=5.0)

        assert result.best_move == "a2a3"
        assert "analysis queued behind 1 request(s)" in caplog.text

    def test_concurrent_analyses_never_interleave(self, make_service, engine_log):
        """
        The matcher only tells searches apart by the bestmove token, so
        correctness rests on the serializer keeping at most one search
        outstanding. Instrument the supervisor's writes to check it directly.
        """
        service = make_service(delay_ms=30, log=engine_log)
        service.start()
        engine = service.engine
        violations = []
        original_write = engine._write

        def checked_write(command):
            if command.startswith("position") and engine.matcher.has_pending(CommandKind.SEARCH):
                violations.append(command)
            original_write(command)

        engine._write = checked_write

        results = []
        errors = []

        def run(depth):
            try:
                results.append(service.analyze(depth=depth))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(d,)) for d in range(1, 7)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=20.0)

        assert errors == []
        assert violations == []
        assert len(results) == 6
        assert sorted(r.statistics.depth for r in results) == [1, 2, 3, 4, 5, 6]

        log = read_log(engine_log)
        assert not [line for line in log if line.startswith("VIOLATION")]
        conversation = [line.split()[0] for line in log if line.split()[0] in ("position", "go")]
        assert conversation == ["position", "go"] * 6


class TestFailures:
    def test_crash_rejects_pending_search(self, make_service):
        service = make_service(mode="crash")
        service.start()
        with pytest.raises(EngineCrashedError):
            service.analyze(depth=3)
        assert service.state is EngineState.TERMINATED
        assert len(service.engine.matcher) == 0
        assert not service.serializer.locked

    def test_lazy_reinitialize_after_crash(self, make_service):
        service = make_service(mode="crash")
        service.start()
        first_pid = service.engine.pid
        with pytest.raises(EngineCrashedError):
            service.analyze(depth=3)
        service.start()
        assert service.state is EngineState.READY
        assert service.engine.pid not in (None, first_pid)

    def test_external_kill_mid_analysis(self, make_service):
        service = make_service(delay_ms=3000)
        service.start()
        outcome = []

        def run():
            try:
                service.analyze(depth=2)
            except Exception as exc:
                outcome.append(exc)

        worker = threading.Thread(target=run)
        started = time.monotonic()
        worker.start()
        _wait_for(lambda: service.state is EngineState.BUSY)
        os.kill(service.engine.pid, signal.SIGKILL)
        worker.join(timeout=5.0)

        assert len(outcome) == 1
        assert isinstance(outcome[0], EngineCrashedError)
        assert time.monotonic() - started < 3.0

    def test_timeout_sends_stop_and_drains(self, make_service, engine_log):
        service = make_service(mode="hang-first", log=engine_log, search_timeout_floor_ms=300)
        service.start()
        pid = service.engine.pid

        with pytest.raises(EngineTimeoutError):
            service.analyze(depth=5)

        assert "stop" in read_log(engine_log)
        assert service.state is EngineState.READY
        assert service.engine.pid == pid

        # The stopped search printed bestmove h2h4 with a -999 score. None of
        # it may surface in the next analysis.
        result = service.analyze(moves=["e2e4"], depth=2)
        assert result.best_move == _first_move(moves=["e2e4"])
        assert all(line.eval.value != -999 for line in result.lines)

    def test_engine_ignoring_stop_is_killed(self, make_service):
        service = make_service(mode="deaf", search_timeout_floor_ms=300, stop_grace_s=0.3)
        service.start()
        with pytest.raises(EngineTimeoutError):
            service.analyze(depth=5)
        assert service.state is EngineState.TERMINATED
        assert service.engine.pid is None
        assert not service.serializer.locked

    def test_search_timeout_budget(self, make_service):
        service = make_service(search_timeout_floor_ms=30_000)
        assert service.search_timeout_s(0) == 30.0
        assert service.search_timeout_s(45_000) == 45.0
