"""
Engine process supervisor: owns the child engine process and its streams.

The supervisor is the only code that spawns, writes to, or kills the engine.
It speaks to the engine through three pipes:

    stdin   written by request threads, one line per command, under a lock
    stdout  read by a dedicated reader thread; every line is fed to the
            ResponseMatcher and "info"/"bestmove" lines are accumulated for
            the output parser
    stderr  drained by a second thread and logged

Lifecycle:

    UNINITIALIZED -> INITIALIZING -> AWAITING_READY -> READY <-> BUSY
                                                         |
                                             TERMINATING -> TERMINATED
    TERMINATED -> INITIALIZING   (lazy re-initialisation on next use)

Any state may drop to TERMINATED when the process exits. When that happens
unexpectedly every command still waiting for a reply is rejected with
EngineCrashedError, so no request thread is left blocked on a dead engine.

Threading model:
    _lifecycle_lock serialises initialize()/terminate() so concurrent callers
    spawn at most one process. _state_lock guards the (state, process) pair
    and is the only lock the reader thread takes, so a caller holding
    _lifecycle_lock can wait for the reader without deadlocking.
"""

import enum
import logging
import subprocess
import threading
import time
from typing import Sequence

from engine.constants import (
    ANALYSIS_TOKENS,
    CMD_ISREADY,
    CMD_POSITION,
    CMD_QUIT,
    CMD_STOP,
    CMD_UCI,
    DEFAULT_ENGINE_PATH,
    DEFAULT_HASH_MB,
    DEFAULT_THREADS,
    INIT_TIMEOUT_S,
    STOP_GRACE_S,
    TERMINATE_GRACE_S,
    TOKEN_ID_NAME,
)
from engine.errors import (
    ConcurrentSearchError,
    EngineCrashedError,
    EngineError,
    EngineSpawnError,
    EngineTimeoutError,
    InvalidTransitionError,
)
from engine.serializer import AnalysisSerializer
from interface.matcher import CommandKind, PendingCommand, ResponseMatcher, classify
from interface.uci import first_token, hash_option, multipv_option, threads_option

_log = logging.getLogger(__name__)


class EngineState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    BUSY = "busy"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


# Forward edges of the lifecycle. TERMINATING and TERMINATED are reachable
# from every state and are not listed.
_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.UNINITIALIZED: frozenset({EngineState.INITIALIZING}),
    EngineState.INITIALIZING: frozenset({EngineState.AWAITING_READY}),
    EngineState.AWAITING_READY: frozenset({EngineState.READY}),
    EngineState.READY: frozenset({EngineState.BUSY}),
    EngineState.BUSY: frozenset({EngineState.READY}),
    EngineState.TERMINATING: frozenset(),
    EngineState.TERMINATED: frozenset({EngineState.INITIALIZING}),
}

_ALWAYS_ALLOWED = frozenset({EngineState.TERMINATING, EngineState.TERMINATED})


class EngineProcess:
    """
    Supervisor for one UCI engine subprocess.

    Attributes:
        command:  argv used to spawn the engine (executable plus arguments).
        threads:  value sent for the engine's Threads option.
        hash_mb:  value sent for the engine's Hash option.
        engine_id: the engine's self-reported "id name", once seen.
    """

    def __init__(
        self,
        path: str = DEFAULT_ENGINE_PATH,
        args: Sequence[str] = (),
        threads: int = DEFAULT_THREADS,
        hash_mb: int = DEFAULT_HASH_MB,
        serializer: AnalysisSerializer | None = None,
        init_timeout_s: float = INIT_TIMEOUT_S,
        stop_grace_s: float = STOP_GRACE_S,
    ) -> None:
        self.command: list[str] = [path, *args]
        self.threads = threads
        self.hash_mb = hash_mb
        self.init_timeout_s = init_timeout_s
        self.stop_grace_s = stop_grace_s
        self.engine_id: str | None = None

        self._serializer = serializer or AnalysisSerializer()
        self._matcher = ResponseMatcher()
        self._state = EngineState.UNINITIALIZED
        self._proc: subprocess.Popen | None = None
        self._readers: list[threading.Thread] = []

        self._lifecycle_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._buffer_lock = threading.Lock()
        self._analysis: list[str] = []

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        with self._state_lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        """True while a live, handshaken engine is available."""
        with self._state_lock:
            return self._proc is not None and self._state in (EngineState.READY, EngineState.BUSY)

    @property
    def pid(self) -> int | None:
        with self._state_lock:
            return self._proc.pid if self._proc is not None else None

    @property
    def matcher(self) -> ResponseMatcher:
        return self._matcher

    @property
    def serializer(self) -> AnalysisSerializer:
        return self._serializer

    def _transition(self, new: EngineState) -> None:
        with self._state_lock:
            self._transition_locked(new)

    def _transition_locked(self, new: EngineState) -> None:
        old = self._state
        if new not in _ALWAYS_ALLOWED and new not in _TRANSITIONS[old]:
            raise InvalidTransitionError(f"engine cannot go from {old.value} to {new.value}")
        self._state = new
        _log.debug("engine state %s -> %s", old.value, new.value)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Spawn the engine and complete the UCI handshake.

        Sequence: spawn -> "uci" / wait "uciok" -> "isready" / wait "readyok"
        -> set Threads and Hash (no reply defined). Returns immediately if the
        engine is already ready. A leftover process from an earlier failure is
        killed first.

        Raises:
            EngineSpawnError:   the executable could not be started.
            EngineTimeoutError: a handshake step got no reply in time.
            EngineCrashedError: the process exited during the handshake.
        """
        with self._lifecycle_lock:
            if self.is_ready:
                return
            if self._proc is not None:
                self._kill(self._proc)

            self._transition(EngineState.INITIALIZING)
            _log.info("starting engine: %s", " ".join(self.command))
            try:
                proc = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    bufsize=1,
                )
            except OSError as exc:
                self._transition(EngineState.TERMINATED)
                _log.error("could not start engine %r: %s", self.command[0], exc)
                raise EngineSpawnError(f"Failed to start engine {self.command[0]!r}: {exc}") from exc

            with self._state_lock:
                self._proc = proc
            self._start_readers(proc)

            try:
                self.send_command(CMD_UCI, self.init_timeout_s)
                self._transition(EngineState.AWAITING_READY)
                self.send_command(CMD_ISREADY, self.init_timeout_s)
                self._write(threads_option(self.threads))
                self._write(hash_option(self.hash_mb))
                self._transition(EngineState.READY)
            except EngineError:
                _log.exception("engine handshake failed")
                self._kill(proc)
                raise

            _log.info(
                "engine ready: %s (threads=%d, hash=%d MB)",
                self.engine_id or "unknown",
                self.threads,
                self.hash_mb,
            )

    def terminate(self, grace_s: float = TERMINATE_GRACE_S) -> None:
        """
        Shut the engine down: "quit", then kill after grace_s seconds.

        Errors while sending "quit" are ignored; the engine may already be
        gone. Safe to call when no process is running.
        """
        with self._lifecycle_lock:
            with self._state_lock:
                proc = self._proc
                if proc is None:
                    return
                self._transition_locked(EngineState.TERMINATING)

            _log.info("terminating engine (pid=%d)", proc.pid)
            try:
                self.send_command(CMD_QUIT)
            except (OSError, EngineError) as exc:
                _log.debug("quit not delivered: %s", exc)

            try:
                proc.wait(timeout=grace_s)
            except subprocess.TimeoutExpired:
                _log.warning("engine ignored quit, killing (pid=%d)", proc.pid)
            self._kill(proc)

    def _kill(self, proc: subprocess.Popen) -> None:
        """Force-kill a process, release its streams, and record the exit."""
        if proc.poll() is None:
            proc.kill()
        proc.wait()
        try:
            if proc.stdin is not None:
                proc.stdin.close()
        except OSError:
            pass
        for reader in self._readers:
            if reader is not threading.current_thread():
                reader.join(timeout=1.0)
        self._handle_exit(proc)

    def _handle_exit(self, proc: subprocess.Popen) -> None:
        """
        Record that proc has exited.

        Called by the reader thread at EOF and by _kill(); only the first call
        for the current process has any effect. Every command still waiting is
        rejected so its caller fails fast instead of sitting out its timeout.
        """
        with self._state_lock:
            if proc is not self._proc:
                return
            expected = self._state is EngineState.TERMINATING
            self._proc = None
            self._transition_locked(EngineState.TERMINATED)

        code = proc.poll()
        if expected:
            _log.info("engine exited (code=%s)", code)
        else:
            _log.error("engine process exited unexpectedly (code=%s)", code)
        rejected = self._matcher.reject_all(
            EngineCrashedError(f"Engine process exited unexpectedly (code={code})")
        )
        if rejected:
            _log.warning("rejected %d pending command(s) after engine exit", rejected)

    # -----------------------------------------------------------------------
    # Stream I/O
    # -----------------------------------------------------------------------

    def _start_readers(self, proc: subprocess.Popen) -> None:
        stdout_reader = threading.Thread(
            target=self._read_stdout, args=(proc,), name="engine-stdout", daemon=True
        )
        stderr_reader = threading.Thread(
            target=self._read_stderr, args=(proc,), name="engine-stderr", daemon=True
        )
        self._readers = [stdout_reader, stderr_reader]
        for reader in self._readers:
            reader.start()

    def _read_stdout(self, proc: subprocess.Popen) -> None:
        """Reader thread: dispatch every stdout line until EOF."""
        try:
            for raw_line in proc.stdout:
                line = raw_line.strip()
                if line:
                    self._on_line(line)
        except (OSError, ValueError) as exc:
            # ValueError: the stream was closed underneath us during a kill.
            _log.debug("engine stdout closed: %s", exc)
        finally:
            proc.stdout.close()
            proc.wait()
            self._handle_exit(proc)

    def _read_stderr(self, proc: subprocess.Popen) -> None:
        try:
            for raw_line in proc.stderr:
                line = raw_line.strip()
                if line:
                    _log.warning("engine stderr: %s", line)
        except (OSError, ValueError):
            pass
        finally:
            proc.stderr.close()

    def _on_line(self, line: str) -> None:
        _log.debug("<< %s", line)
        if line.startswith(TOKEN_ID_NAME + " "):
            self.engine_id = line[len(TOKEN_ID_NAME) + 1:].strip()
        if first_token(line) in ANALYSIS_TOKENS:
            # Buffer before matching so the waiter sees the bestmove line.
            with self._buffer_lock:
                self._analysis.append(line)
        self._matcher.feed(line)

    def _write(self, command: str) -> None:
        """
        Write one command line to the engine's stdin.

        Raises:
            ValueError:            the command spans more than one line.
            EngineCrashedError:    no live process, or the pipe is broken.
            ConcurrentSearchError: a "position" while a search is outstanding.
        """
        if "\n" in command or "\r" in command:
            raise ValueError(f"engine commands are single lines, got {command!r}")
        if first_token(command) == CMD_POSITION and self._matcher.has_pending(CommandKind.SEARCH):
            raise ConcurrentSearchError(
                "refusing to change position while a search is still outstanding"
            )
        with self._state_lock:
            proc = self._proc
        if proc is None or proc.stdin is None:
            raise EngineCrashedError("Engine process not running")

        _log.debug(">> %s", command)
        with self._write_lock:
            try:
                proc.stdin.write(command + "\n")
                proc.stdin.flush()
            except (OSError, ValueError) as exc:
                raise EngineCrashedError(f"Failed to send command {command!r}: {exc}") from exc

    def send_command(self, command: str, timeout_s: float | None = INIT_TIMEOUT_S) -> str | None:
        """
        Send a command and wait for its terminal reply.

        Commands the protocol defines no reply for are only written. For the
        rest a PendingCommand is registered before writing, then awaited.
        State-mutating searches must go through search(), which holds the
        serializer; this method is for the handshake and other commands that
        do not touch the analysis state.

        Returns:
            The terminal reply line, or None for reply-less commands.

        Raises:
            EngineTimeoutError: no reply within timeout_s.
            EngineCrashedError: the process died first.
        """
        if classify(command) is None:
            self._write(command)
            return None

        pending = self._matcher.register(command)
        try:
            self._write(command)
        except (EngineError, ValueError) as exc:
            self._matcher.expire(pending, exc)
            raise
        if not pending.wait(timeout_s):
            self._matcher.expire(
                pending, EngineTimeoutError(f"Timeout waiting for response to: {command}")
            )
        return pending.result()

    # -----------------------------------------------------------------------
    # Analysis
    # -----------------------------------------------------------------------

    def identify(self, timeout_s: float = INIT_TIMEOUT_S) -> str:
        """Round-trip "uci" and return the engine's self-reported name."""
        self.send_command(CMD_UCI, timeout_s)
        return self.engine_id or "Unknown"

    def search(
        self,
        position_cmd: str,
        go_cmd: str,
        multi_pv: int,
        timeout_s: float,
    ) -> str:
        """
        Run one position-then-go sequence and return its raw output.

        The caller must hold the serializer: the position command, the search,
        and the accumulation buffer are all shared engine state.

        On timeout the engine is told to "stop" and given stop_grace_s to
        print the stopped search's bestmove. That line is swallowed here,
        while the gate is still held, so it cannot resolve the next caller's
        search. An engine that ignores "stop" is killed and will be restarted
        by the next request.

        Returns:
            All "info" and "bestmove" lines the search produced.

        Raises:
            EngineTimeoutError, EngineCrashedError, ConcurrentSearchError
        """
        if not self._serializer.held():
            raise RuntimeError("search() requires the analysis serializer to be held")

        self._transition(EngineState.BUSY)
        try:
            with self._buffer_lock:
                self._analysis.clear()
            self._write(multipv_option(multi_pv))
            self._write(position_cmd)

            pending = self._matcher.register(go_cmd)
            try:
                self._write(go_cmd)
            except (EngineError, ValueError) as exc:
                self._matcher.expire(pending, exc)
                raise

            if not pending.wait(timeout_s):
                self._halt(pending, timeout_s)
            pending.result()

            with self._buffer_lock:
                return "\n".join(self._analysis)
        finally:
            with self._buffer_lock:
                self._analysis.clear()
            with self._state_lock:
                if self._state is EngineState.BUSY:
                    self._transition_locked(EngineState.READY)

    def _halt(self, pending: PendingCommand, timeout_s: float) -> None:
        """Stop a search that overran its budget, then raise the timeout."""
        _log.warning("search exceeded %.1fs, sending stop: %s", timeout_s, pending.command)
        error = EngineTimeoutError(f"Timeout waiting for response to: {pending.command}")
        try:
            self._write(CMD_STOP)
        except EngineError as exc:
            _log.warning("could not send stop: %s", exc)

        started = time.monotonic()
        drained = pending.wait(self.stop_grace_s)
        if drained:
            _log.info("stopped search drained in %.0f ms", (time.monotonic() - started) * 1000)
        elif self._matcher.expire(pending, error):
            _log.error("engine did not answer stop within %.1fs, killing it", self.stop_grace_s)
            with self._state_lock:
                proc = self._proc
            if proc is not None:
                self._kill(proc)
        raise error
