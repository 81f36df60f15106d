import random

import pytest

import cli_driver
import storage
from core import Position, TileMove
from session import GameSession, SessionState

from conftest import GAME_OVER_GRID, ScriptedRandom


def scripted_input(*keys):
    pending = list(keys)

    def read_input(prompt):
        if not pending:
            raise EOFError
        return pending.pop(0)

    return read_input


@pytest.fixture
def store():
    s = storage.ScoreStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def nearly_over(monkeypatch):
    """Makes play() start on a board that one LEFT move finishes."""
    def rigged_session(best_score=0, rng=None):
        game = GameSession(best_score=best_score, rng=ScriptedRandom())
        game.board.grid = [list(row) for row in GAME_OVER_GRID]
        return game

    monkeypatch.setattr(cli_driver, "new_session", rigged_session)


def test_quit_and_invalid_input(capsys):
    game = cli_driver.play(scripted_input("x", "q"), rng=random.Random(4), best_score=12)
    out = capsys.readouterr().out
    assert "Invalid input. Move with W/A/S/D or H/J/K/L; R restarts, B shows the leaderboard, Q quits." in out
    assert "Quitting game." in out
    assert "Best: 12" in out
    assert game.state == SessionState.ACTIVE


def test_moves_and_restart(capsys):
    game = cli_driver.play(scripted_input("a", "S", "l", "k", "r"), rng=random.Random(4))
    out = capsys.readouterr().out
    assert out.count("Score:") >= 2
    # restart leaves a fresh board behind
    assert game.score == 0
    assert sum(1 for row in game.grid for v in row if v) == 2


def test_end_of_input_stops_the_loop(capsys):
    cli_driver.play(scripted_input(), rng=random.Random(4))
    assert "Quitting game." in capsys.readouterr().out


def test_loop_survives_game_over(nearly_over, capsys):
    game = cli_driver.play(scripted_input("a", "a", "b", "q"))
    out = capsys.readouterr().out
    assert "No more moves possible. Final score 4, best tile 16." in out
    assert "The game is over. Press R to restart" in out
    assert "Leaderboard unavailable" in out
    assert "Quitting game." in out
    assert game.game_over
    assert game.score == 4


def test_restart_after_game_over_records_the_score(nearly_over, store, capsys):
    player = store.create_player(storage.fingerprint_for_key("alice"), "alice")

    game = cli_driver.play(scripted_input("a", "r", "b", "a"), store=store, player=player)

    out = capsys.readouterr().out
    assert "Score saved for alice." in out
    assert "--- Leaderboard ---" in out
    assert "  1. alice" in out
    assert [(e.username, e.score, e.max_tile) for e in store.get_leaderboard()] == [("alice", 4, 16)]
    # the restarted game took the last move
    assert game.state == SessionState.ACTIVE
    assert game.moves_made == 1
    assert game.best_score == 4


def test_leaderboard_during_play(store, capsys):
    cli_driver.play(scripted_input("b", "q"), rng=random.Random(4), store=store)
    out = capsys.readouterr().out
    assert "--- Leaderboard ---" in out
    assert "No scores yet." in out


def test_anonymous_game_over_is_not_saved(nearly_over, store, capsys):
    cli_driver.play(scripted_input("a", "q"), store=store)
    assert "Score saved" not in capsys.readouterr().out
    assert store.get_leaderboard() == []


def test_identify_player_registers_once(store, capsys):
    player = cli_driver.identify_player(store, "alice", scripted_input("al", "alice"))
    assert player.username == "alice"
    assert "Usernames must be between 3 and 20 characters." in capsys.readouterr().out

    # known keys are not asked again
    assert cli_driver.identify_player(store, "alice", scripted_input()) == player
    assert cli_driver.identify_player(store, "bob", scripted_input()) is None


def test_main_seeds_best_score_from_record(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "warning")
    seeded = storage.ScoreStore(str(tmp_path / "2048.db"))
    player = seeded.create_player(storage.fingerprint_for_key("alice"), "alice")
    seeded.save_score(player.id, 300, 32)
    seeded.save_score(player.id, 120, 16)
    seeded.close()

    calls = []
    monkeypatch.setattr(cli_driver.getpass, "getuser", lambda: "alice")
    monkeypatch.setattr(cli_driver, "play", lambda **kwargs: calls.append(kwargs))

    cli_driver.main()

    assert len(calls) == 1
    assert calls[0]["best_score"] == 300
    assert calls[0]["player"].username == "alice"
    assert calls[0]["leaderboard_size"] == 10


def test_display_moves(capsys):
    cli_driver.display_moves([
        TileMove(Position(0, 1), Position(0, 0), 2, True),
        TileMove(Position(3, 3), Position(3, 0), 8, False),
    ])
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "  2 at (0, 1) merged into (0, 0)",
        "  8 at (3, 3) slid to (3, 0)",
    ]
