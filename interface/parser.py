"""
Output parser: turns the raw text of one search into a structured result.

The supervisor collects every "info" and "bestmove" line the engine printed
while one analysis held the serializer. This module reduces that text to an
AnalysisResult. It is a pure function of its input: no clock, no engine, no
shared state, so the same text always produces the same result.

Typical input (multi-PV 2):

    info depth 12 seldepth 16 multipv 1 score cp 31 nodes 48213 nps 964260 pv e2e4 e7e5 g1f3
    info depth 12 seldepth 16 multipv 2 score cp 24 nodes 48213 nps 964260 pv d2d4 d7d5
    bestmove e2e4 ponder e7e5

Mate scores stay mate scores. Mapping "mate 3" onto some large centipawn
number is a display decision that belongs to the consumer.
"""

from dataclasses import dataclass, field
from typing import Iterable, Literal

from engine.constants import TOKEN_BESTMOVE, TOKEN_INFO

ScoreType = Literal["cp", "mate"]

# Keys in an "info" line that take exactly one integer argument and are
# reduced to a running maximum across the whole search.
_MAX_KEYS: tuple[str, ...] = ("depth", "seldepth", "nodes", "nps")

# Score qualifiers that may follow "score cp N" / "score mate N".
_SCORE_BOUNDS: frozenset[str] = frozenset({"lowerbound", "upperbound"})

# What engines print instead of a move when the side to move has none.
_NO_MOVE: frozenset[str] = frozenset({"(none)", "0000"})


@dataclass(frozen=True)
class Evaluation:
    type: ScoreType = "cp"
    value: int = 0


@dataclass(frozen=True)
class PvLine:
    pv: list[str]
    eval: Evaluation


@dataclass(frozen=True)
class SearchStatistics:
    depth: int = 0
    sel_depth: int | None = None
    nodes: int = 0
    nps: int = 0


@dataclass(frozen=True)
class AnalysisResult:
    """
    Structured outcome of one search.

    Attributes:
        best_move:  The engine's chosen move ("(none)" when there is no legal
                    move), or "" if no bestmove line was seen.
        ponder:     The expected reply, when the engine named one.
        evaluation: Score of the principal line.
        lines:      Principal variations ordered by multipv index.
        statistics: Search statistics (running maxima over all info lines).
        timing_ms:  Wall-clock duration of the search round-trip.
    """

    best_move: str
    ponder: str | None
    evaluation: Evaluation
    lines: list[PvLine] = field(default_factory=list)
    statistics: SearchStatistics = field(default_factory=SearchStatistics)
    timing_ms: int = 0


@dataclass
class _InfoLine:
    """Fields pulled out of a single "info" line."""

    numbers: dict[str, int]
    multipv: int = 1
    score: Evaluation | None = None
    pv: list[str] | None = None


def _to_int(token: str | None) -> int | None:
    if token is None:
        return None
    try:
        return int(token)
    except ValueError:
        return None


def parse_info_line(line: str) -> _InfoLine:
    """
    Tokenize one "info" line.

    The line is walked token by token rather than searched with regexes:
    "multipv 2 ... pv e2e4" contains the substring "pv 2", and a substring
    search would happily read the line index as the first PV move.
    "pv" consumes the rest of the line; "string" ends parsing since it carries
    free-form text.
    """
    tokens = line.split()
    info = _InfoLine(numbers={})
    i = 1  # skip "info"
    while i < len(tokens):
        key = tokens[i]
        if key in _MAX_KEYS:
            value = _to_int(tokens[i + 1] if i + 1 < len(tokens) else None)
            if value is not None:
                info.numbers[key] = value
            i += 2
        elif key == "multipv":
            info.multipv = _to_int(tokens[i + 1] if i + 1 < len(tokens) else None) or 1
            i += 2
        elif key == "score":
            kind = tokens[i + 1] if i + 1 < len(tokens) else ""
            value = _to_int(tokens[i + 2] if i + 2 < len(tokens) else None)
            if kind in ("cp", "mate") and value is not None:
                info.score = Evaluation(type=kind, value=value)
            i += 3
            if i < len(tokens) and tokens[i] in _SCORE_BOUNDS:
                i += 1
        elif key == "pv":
            info.pv = tokens[i + 1:]
            break
        elif key == "string":
            break
        else:
            i += 1
    return info


def _parse_bestmove(line: str) -> tuple[str, str | None]:
    tokens = line.split()
    best = tokens[1] if len(tokens) > 1 else ""
    ponder = None
    if len(tokens) > 3 and tokens[2] == "ponder":
        ponder = tokens[3]
    return best, ponder


def parse_analysis(
    raw: str | Iterable[str],
    timing_ms: int = 0,
    max_lines: int | None = None,
) -> AnalysisResult:
    """
    Reduce the raw output of one search to an AnalysisResult.

    Args:
        raw:       The accumulated text (newline separated) or its lines.
        timing_ms: Wall-clock duration to report; passed through unchanged.
        max_lines: Upper bound on the number of PV lines returned, normally
                   the requested multi-PV count.

    Returns:
        The structured result. If the engine printed a bestmove but no PV
        (some engines are terse at very low depth), a single line holding
        just the best move is synthesised.
    """
    lines = raw.splitlines() if isinstance(raw, str) else list(raw)

    best_move = ""
    ponder: str | None = None
    latest = Evaluation()
    maxima = dict.fromkeys(_MAX_KEYS, 0)
    scores: dict[int, Evaluation] = {}
    pvs: dict[int, list[str]] = {}

    for text in lines:
        text = text.strip()
        tokens = text.split(maxsplit=1)
        if not tokens:
            continue

        if tokens[0] == TOKEN_BESTMOVE:
            best_move, ponder = _parse_bestmove(text)
            continue
        if tokens[0] != TOKEN_INFO:
            continue

        info = parse_info_line(text)
        for key, value in info.numbers.items():
            maxima[key] = max(maxima[key], value)
        if info.score is not None:
            latest = info.score
            scores[info.multipv] = info.score
        if info.pv:
            pvs[info.multipv] = info.pv

    pv_lines = [
        PvLine(pv=pvs[index], eval=scores.get(index, latest))
        for index in sorted(pvs)
    ]
    if max_lines is not None:
        pv_lines = pv_lines[:max_lines]

    if not pv_lines and best_move and best_move not in _NO_MOVE:
        pv_lines = [PvLine(pv=[best_move], eval=latest)]

    evaluation = pv_lines[0].eval if pv_lines else latest

    statistics = SearchStatistics(
        depth=maxima["depth"],
        sel_depth=maxima["seldepth"] or None,
        nodes=maxima["nodes"],
        nps=maxima["nps"],
    )
    return AnalysisResult(
        best_move=best_move,
        ponder=ponder,
        evaluation=evaluation,
        lines=pv_lines,
        statistics=statistics,
        timing_ms=timing_ms,
    )
