"""Service configuration, read from the environment."""

import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping

from engine.constants import (
    DEFAULT_ENGINE_PATH,
    DEFAULT_HASH_MB,
    DEFAULT_THREADS,
    INIT_TIMEOUT_S,
    SEARCH_TIMEOUT_FLOOR_MS,
    STOP_GRACE_S,
)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9898

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings.

    engine_path is looked up on PATH when it has no directory part, the same
    way a shell would. engine_args lets wrappers (or a Python-scripted engine)
    be launched without a shell.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    engine_path: str = DEFAULT_ENGINE_PATH
    engine_args: tuple[str, ...] = field(default_factory=tuple)
    threads: int = DEFAULT_THREADS
    hash_mb: int = DEFAULT_HASH_MB
    init_timeout_ms: int = int(INIT_TIMEOUT_S * 1000)
    search_timeout_floor_ms: int = SEARCH_TIMEOUT_FLOOR_MS
    stop_grace_ms: int = int(STOP_GRACE_S * 1000)
    eager_start: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            host=env.get("HOST", DEFAULT_HOST) or DEFAULT_HOST,
            port=_int(env, "PORT", DEFAULT_PORT, minimum=1),
            engine_path=env.get("STOCKFISH_PATH", "").strip() or DEFAULT_ENGINE_PATH,
            engine_args=tuple(shlex.split(env.get("ENGINE_ARGS", ""))),
            threads=_int(env, "ENGINE_THREADS", DEFAULT_THREADS, minimum=1),
            hash_mb=_int(env, "ENGINE_HASH", DEFAULT_HASH_MB, minimum=1),
            init_timeout_ms=_int(env, "ENGINE_INIT_TIMEOUT_MS", int(INIT_TIMEOUT_S * 1000), minimum=1),
            search_timeout_floor_ms=_int(
                env, "ENGINE_SEARCH_TIMEOUT_MS", SEARCH_TIMEOUT_FLOOR_MS, minimum=1
            ),
            stop_grace_ms=_int(env, "ENGINE_STOP_GRACE_MS", int(STOP_GRACE_S * 1000)),
            eager_start=_bool(env, "ENGINE_EAGER_START", True),
            log_level=(env.get("LOG_LEVEL", "INFO") or "INFO").upper(),
        )
