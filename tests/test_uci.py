"""Tests for UCI command construction."""

from interface.uci import first_token, go_command, multipv_option, position_command, threads_option


class TestPositionCommand:
    def test_default_is_startpos(self):
        assert position_command() == "position startpos"

    def test_empty_and_literal_startpos(self):
        assert position_command("  ") == "position startpos"
        assert position_command("startpos") == "position startpos"

    def test_startpos_with_moves(self):
        assert position_command(None, ["e2e4", "e7e5"]) == "position startpos moves e2e4 e7e5"

    def test_fen_with_moves(self):
        fen = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq e3 0 1"
        assert position_command(fen, ["c7c5"]) == f"position fen {fen} moves c7c5"

    def test_empty_move_list_adds_nothing(self):
        assert position_command(None, []) == "position startpos"


class TestGoCommand:
    def test_depth(self):
        assert go_command(14) == "go depth 14"

    def test_movetime_wins_over_depth(self):
        assert go_command(14, movetime_ms=2500) == "go movetime 2500"

    def test_zero_movetime_means_depth(self):
        assert go_command(9, movetime_ms=0) == "go depth 9"


def test_options():
    assert multipv_option(3) == "setoption name MultiPV value 3"
    assert threads_option(2) == "setoption name Threads value 2"


def test_first_token():
    assert first_token("bestmove e2e4 ponder e7e5") == "bestmove"
    assert first_token("   ") == ""
