"""
Engine constants: protocol tokens, default options, and timeouts.

All literal UCI tokens and timing values used by the supervisor and the
protocol layer are defined here so no other module introduces magic strings
or numbers. Timeouts are expressed in seconds unless the name says otherwise;
the HTTP layer speaks milliseconds and converts at the boundary.
"""

# ---------------------------------------------------------------------------
# Protocol commands (GUI -> engine)
# ---------------------------------------------------------------------------

CMD_UCI: str = "uci"
CMD_ISREADY: str = "isready"
CMD_POSITION: str = "position"
CMD_GO: str = "go"
CMD_STOP: str = "stop"
CMD_QUIT: str = "quit"
CMD_SETOPTION: str = "setoption"

# ---------------------------------------------------------------------------
# Protocol replies (engine -> GUI)
# ---------------------------------------------------------------------------

TOKEN_UCIOK: str = "uciok"
TOKEN_READYOK: str = "readyok"
TOKEN_BESTMOVE: str = "bestmove"
TOKEN_INFO: str = "info"
TOKEN_ID_NAME: str = "id name"

# First tokens of the lines buffered for the output parser. "info string"
# lines are buffered too and skipped by the parser; "id" and "option" lines
# are never buffered.
ANALYSIS_TOKENS: frozenset[str] = frozenset({TOKEN_INFO, TOKEN_BESTMOVE})

# ---------------------------------------------------------------------------
# Engine options
# ---------------------------------------------------------------------------

DEFAULT_ENGINE_PATH: str = "stockfish"
DEFAULT_THREADS: int = 1
DEFAULT_HASH_MB: int = 128

OPTION_THREADS: str = "Threads"
OPTION_HASH: str = "Hash"
OPTION_MULTIPV: str = "MultiPV"

# ---------------------------------------------------------------------------
# Analysis request bounds
# ---------------------------------------------------------------------------

DEFAULT_DEPTH: int = 14
MIN_DEPTH: int = 1
MAX_DEPTH: int = 30

DEFAULT_MULTIPV: int = 1
MIN_MULTIPV: int = 1
MAX_MULTIPV: int = 10

# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------
# INIT_TIMEOUT_S bounds each handshake step (uci -> uciok, isready -> readyok).
# A search is bounded by max(SEARCH_TIMEOUT_FLOOR_MS, movetimeMs): a depth-only
# search has no natural deadline, so the floor is the only thing keeping a
# runaway search from holding the serializer forever.
INIT_TIMEOUT_S: float = 10.0
IDENTIFY_TIMEOUT_S: float = 5.0
SEARCH_TIMEOUT_FLOOR_MS: int = 30_000

# After "stop", how long to wait for the stopped search's bestmove before the
# engine is considered wedged and killed.
STOP_GRACE_S: float = 2.0

# How long "quit" gets before the process is force-killed.
TERMINATE_GRACE_S: float = 1.0
