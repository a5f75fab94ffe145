"""
UCI (Universal Chess Interface) command construction.

UCI is the line-oriented text protocol used to drive chess engines. This
module is the GUI side of it: it builds the command strings the supervisor
writes to the engine's stdin. It never touches a process itself, which keeps
command formatting testable without spawning anything.

Protocol overview:
    GUI -> Engine: uci, isready, setoption, position, go, stop, quit
    Engine -> GUI: id name, id author, option, uciok, readyok, info, bestmove

Command formats produced here:
    position startpos
    position startpos moves e2e4 e7e5 ...
    position fen <FEN>
    position fen <FEN> moves e2e4 e7e5 ...
    go depth <n>
    go movetime <ms>
    setoption name <id> value <x>
"""

from typing import Sequence

from engine.constants import (
    CMD_GO,
    CMD_POSITION,
    CMD_SETOPTION,
    OPTION_HASH,
    OPTION_MULTIPV,
    OPTION_THREADS,
)

_STARTPOS: str = "startpos"


def first_token(line: str) -> str:
    """Return the first whitespace-separated word of a line, or ""."""
    parts = line.split(maxsplit=1)
    return parts[0] if parts else ""


def position_command(fen: str | None = None, moves: Sequence[str] | None = None) -> str:
    """
    Build a "position" command.

    An empty FEN, None, or the literal "startpos" all select the standard
    starting position. Moves are appended verbatim in the engine's own
    coordinate notation; no legality checking happens here.

    Args:
        fen:   Position in FEN, or None for the starting position.
        moves: Moves to replay on top of the position.

    Returns:
        The command line without a trailing newline.
    """
    fen_input = (fen or "").strip()
    if not fen_input or fen_input.lower() == _STARTPOS:
        command = f"{CMD_POSITION} {_STARTPOS}"
    else:
        command = f"{CMD_POSITION} fen {fen_input}"

    if moves:
        command += " moves " + " ".join(moves)
    return command


def go_command(depth: int, movetime_ms: int = 0) -> str:
    """
    Build a "go" command.

    A positive movetime takes precedence over depth: the engine then searches
    for exactly that many milliseconds. Otherwise the search is bounded by
    depth only.
    """
    if movetime_ms > 0:
        return f"{CMD_GO} movetime {movetime_ms}"
    return f"{CMD_GO} depth {depth}"


def setoption_command(name: str, value: object) -> str:
    """Build a "setoption name <name> value <value>" command."""
    return f"{CMD_SETOPTION} name {name} value {value}"


def threads_option(threads: int) -> str:
    return setoption_command(OPTION_THREADS, threads)


def hash_option(hash_mb: int) -> str:
    return setoption_command(OPTION_HASH, hash_mb)


def multipv_option(count: int) -> str:
    # MultiPV is an engine option, not a "go" argument; it must be set before
    # every search because it persists across searches.
    return setoption_command(OPTION_MULTIPV, count)
