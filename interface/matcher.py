"""
Protocol response matcher: correlates engine output lines with the commands
waiting for them.

UCI has no request identifiers. A reply is recognised only by its shape:
"uciok" answers "uci", "readyok" answers "isready", and "bestmove ..." ends a
"go" (or a "stop" of a running "go"). Matching by category is therefore only
sound while at most one command of each search-type category is outstanding.
For searches that guarantee comes from the AnalysisSerializer; the matcher
does not rely on it silently but refuses to register a second search.

Threading model:
    Waiters block on PendingCommand.wait() in request threads. The supervisor's
    stdout reader thread calls feed() for every line. A crash handler calls
    reject_all(). All queue mutation happens under a single lock.
"""

import enum
import threading
from dataclasses import dataclass, field

from engine.constants import (
    CMD_GO,
    CMD_ISREADY,
    CMD_QUIT,
    CMD_STOP,
    CMD_UCI,
    TOKEN_BESTMOVE,
    TOKEN_READYOK,
    TOKEN_UCIOK,
)
from engine.errors import ConcurrentSearchError
from interface.uci import first_token


class CommandKind(enum.Enum):
    """Reply category of a command, i.e. which terminal line ends it."""

    IDENTIFY = "identify"
    READY = "ready"
    SEARCH = "search"
    QUIT = "quit"


_COMMAND_KINDS: dict[str, CommandKind] = {
    CMD_UCI: CommandKind.IDENTIFY,
    CMD_ISREADY: CommandKind.READY,
    CMD_GO: CommandKind.SEARCH,
    CMD_STOP: CommandKind.SEARCH,
    CMD_QUIT: CommandKind.QUIT,
}


def _is_uciok(line: str, first: str) -> bool:
    return line == TOKEN_UCIOK


def _is_readyok(line: str, first: str) -> bool:
    return line == TOKEN_READYOK


def _is_bestmove(line: str, first: str) -> bool:
    return first == TOKEN_BESTMOVE


# Terminal predicate per category. QUIT has none: the engine just exits.
MATCH_RULES = {
    CommandKind.IDENTIFY: _is_uciok,
    CommandKind.READY: _is_readyok,
    CommandKind.SEARCH: _is_bestmove,
}


def classify(command: str) -> CommandKind | None:
    """
    Return the reply category of a command, or None if the protocol defines
    no reply for it ("position", "setoption", "ucinewgame", ...).
    """
    return _COMMAND_KINDS.get(first_token(command))


@dataclass(eq=False)
class PendingCommand:
    """
    One command awaiting its terminal reply.

    Attributes:
        command: The literal command text that was sent.
        kind:    Reply category; selects the terminal predicate.
        reply:   The terminal line, once matched.
        error:   The rejection reason, once rejected.
    """

    command: str
    kind: CommandKind
    reply: str | None = None
    error: Exception | None = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def resolve(self, line: str) -> None:
        self.reply = line
        self._done.set()

    def reject(self, error: Exception) -> None:
        self.error = error
        self._done.set()

    def wait(self, timeout: float | None) -> bool:
        """Block until resolved or rejected. Returns False on timeout."""
        return self._done.wait(timeout)

    def result(self) -> str:
        """Return the terminal line, or raise the rejection error."""
        if self.error is not None:
            raise self.error
        return self.reply or ""


class ResponseMatcher:
    """Queue of commands waiting for a reply, matched by terminal predicate."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: list[PendingCommand] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def register(self, command: str) -> PendingCommand:
        """
        Queue a command that expects a reply.

        Must be called BEFORE the command is written so a fast reply cannot
        arrive ahead of its registration. "quit" resolves immediately since
        the protocol defines no reply to it.

        Raises:
            ValueError: the command expects no reply at all.
            ConcurrentSearchError: a search is already outstanding.
        """
        kind = classify(command)
        if kind is None:
            raise ValueError(f"command has no reply to wait for: {command!r}")

        pending = PendingCommand(command=command, kind=kind)
        if kind is CommandKind.QUIT:
            pending.resolve("")
            return pending

        with self._lock:
            if kind is CommandKind.SEARCH and self._has_kind(CommandKind.SEARCH):
                raise ConcurrentSearchError(
                    f"cannot send {command!r}: another search is still outstanding"
                )
            self._pending.append(pending)
        return pending

    def feed(self, line: str) -> PendingCommand | None:
        """
        Match one output line against the queue.

        Resolves and removes the first (oldest) pending command whose terminal
        predicate accepts the line. At most one command is resolved per line.

        Returns:
            The resolved command, or None if the line ended nothing.
        """
        first = first_token(line)
        with self._lock:
            for index, pending in enumerate(self._pending):
                if MATCH_RULES[pending.kind](line, first):
                    del self._pending[index]
                    break
            else:
                return None
        pending.resolve(line)
        return pending

    def expire(self, pending: PendingCommand, error: Exception) -> bool:
        """
        Reject and remove a command whose timer ran out.

        A reply may race the timeout; if the command was already resolved
        this is a no-op and the caller should use the reply.

        Returns:
            True if the command was still pending and has been rejected.
        """
        with self._lock:
            try:
                self._pending.remove(pending)
            except ValueError:
                return False
        pending.reject(error)
        return True

    def reject_all(self, error: Exception) -> int:
        """Reject every pending command. Returns how many were rejected."""
        with self._lock:
            pending, self._pending = self._pending, []
        for item in pending:
            item.reject(error)
        return len(pending)

    def has_pending(self, kind: CommandKind) -> bool:
        with self._lock:
            return self._has_kind(kind)

    def _has_kind(self, kind: CommandKind) -> bool:
        return any(p.kind is kind for p in self._pending)
