"""Shared fixtures: engine services backed by the scripted fake engine."""

import sys
from pathlib import Path

import pytest

from engine.service import EngineService
from web.config import Settings

FAKE_ENGINE = Path(__file__).parent / "fake_engine.py"


def fake_engine_args(mode: str = "normal", delay_ms: int = 0, log: Path | None = None) -> tuple[str, ...]:
    args = [str(FAKE_ENGINE), "--mode", mode, "--delay-ms", str(delay_ms)]
    if log is not None:
        args += ["--log", str(log)]
    return tuple(args)


def fake_settings(mode: str = "normal", delay_ms: int = 0, log: Path | None = None, **overrides) -> Settings:
    values = dict(
        engine_path=sys.executable,
        engine_args=fake_engine_args(mode, delay_ms, log),
        init_timeout_ms=5000,
        search_timeout_floor_ms=5000,
        stop_grace_ms=1000,
        eager_start=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def engine_log(tmp_path) -> Path:
    return tmp_path / "engine.log"


@pytest.fixture
def make_service():
    """Factory for EngineService instances; every one is shut down afterwards."""
    services: list[EngineService] = []

    def _make(mode: str = "normal", delay_ms: int = 0, log: Path | None = None, **kwargs) -> EngineService:
        options = dict(
            engine_path=sys.executable,
            engine_args=fake_engine_args(mode, delay_ms, log),
            init_timeout_s=5.0,
            search_timeout_floor_ms=5000,
            stop_grace_s=1.0,
        )
        options.update(kwargs)
        service = EngineService(**options)
        services.append(service)
        return service

    yield _make

    for service in services:
        service.shutdown(grace_s=0.5)


def read_log(path: Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()
