import pytest

import storage
from storage import PlayerExistsError, PlayerNotFoundError, ScoreStore, fingerprint_for_key


@pytest.fixture
def store():
    s = ScoreStore(":memory:")
    yield s
    s.close()


def test_fingerprint_is_stable_and_prefixed():
    fp = fingerprint_for_key("my-secret-key")
    assert fp == fingerprint_for_key("my-secret-key")
    assert fp != fingerprint_for_key("another-key")
    assert fp.startswith("SHA256:")
    # 32 digest bytes, unpadded base64
    assert len(fp) == len("SHA256:") + 43
    assert not fp.endswith("=")


def test_create_and_fetch_player(store):
    created = store.create_player("SHA256:abc", "alice")
    fetched = store.get_player_by_fingerprint("SHA256:abc")
    assert fetched == created
    assert fetched.username == "alice"
    assert fetched.created_at is not None


def test_duplicate_fingerprint_rejected(store):
    store.create_player("SHA256:abc", "alice")
    with pytest.raises(PlayerExistsError):
        store.create_player("SHA256:abc", "bob")


def test_unknown_player(store):
    with pytest.raises(PlayerNotFoundError):
        store.get_player_by_fingerprint("SHA256:nobody")
    with pytest.raises(PlayerNotFoundError):
        store.update_username(42, "ghost")
    with pytest.raises(PlayerNotFoundError):
        store.save_score(42, 100, 8)


def test_update_username(store):
    player = store.create_player("SHA256:abc", "alice")
    store.update_username(player.id, "alicia")
    assert store.get_player_by_fingerprint("SHA256:abc").username == "alicia"


def test_best_score_and_history(store):
    player = store.create_player("SHA256:abc", "alice")
    assert store.get_player_best_score(player.id) == 0

    for score, tile in [(120, 16), (900, 64), (450, 32)]:
        store.save_score(player.id, score, tile)

    assert store.get_player_best_score(player.id) == 900
    history = store.get_player_scores(player.id, limit=2)
    assert [(s.score, s.max_tile) for s in history] == [(900, 64), (450, 32)]


def test_leaderboard_and_rank(store):
    alice = store.create_player("SHA256:a", "alice")
    bob = store.create_player("SHA256:b", "bob")
    carol = store.create_player("SHA256:c", "carol")
    store.save_score(alice.id, 300, 32)
    store.save_score(bob.id, 1200, 128)
    store.save_score(alice.id, 800, 64)

    board = store.get_leaderboard(limit=10)
    assert [(e.rank, e.username, e.score) for e in board] == [
        (1, "bob", 1200),
        (2, "alice", 800),
        (3, "alice", 300),
    ]
    assert len(store.get_leaderboard(limit=1)) == 1

    assert store.get_player_rank(bob.id) == 1
    assert store.get_player_rank(alice.id) == 2
    # no scores: everyone with a positive score is ahead
    assert store.get_player_rank(carol.id) == 4


def test_file_database_persists(tmp_path):
    path = str(tmp_path / "2048.db")
    first = ScoreStore(path)
    player = first.create_player("SHA256:abc", "alice")
    first.save_score(player.id, 64, 16)
    first.close()

    second = ScoreStore(path)
    assert second.get_player_best_score(player.id) == 64
    second.close()


def test_open_failure_is_wrapped(tmp_path):
    with pytest.raises(storage.StorageError):
        ScoreStore(str(tmp_path / "missing" / "dir" / "2048.db"))
