# cli_driver.py
# This file is intended to be run to play the 2048 game on the CLI

from typing import Callable, Optional, Sequence
import getpass
import logging

from config import configure_logging, load_settings
from core import DIRECTION, RandomSource, TileMove, grid_to_text
from session import GameSession, new_session
from storage import Player, PlayerNotFoundError, ScoreStore, StorageError, fingerprint_for_key

logger = logging.getLogger(__name__)

KEY_MAP = {
    'W': DIRECTION.UP, 'K': DIRECTION.UP,
    'S': DIRECTION.DOWN, 'J': DIRECTION.DOWN,
    'A': DIRECTION.LEFT, 'H': DIRECTION.LEFT,
    'D': DIRECTION.RIGHT, 'L': DIRECTION.RIGHT,
}

PROMPT = "Enter move (W/A/S/D or H/J/K/L, R to restart, B for leaderboard, Q to quit): "
GAME_OVER_PROMPT = "Game over. R to restart, B for leaderboard, Q to quit: "
USERNAME_PROMPT = "Choose a username (3-20 characters): "


def play(read_input: Callable[[str], str] = input,
         rng: Optional[RandomSource] = None,
         best_score: int = 0,
         store: Optional[ScoreStore] = None,
         player: Optional[Player] = None,
         leaderboard_size: int = 10) -> GameSession:
    """
    Runs the interactive loop until the player quits and returns the last session.

    With a store, B shows the leaderboard; with a player as well, every
    finished game is recorded.
    """
    # 1. Initialize game
    game = new_session(best_score, rng=rng)
    display_board_state(game)

    # 2. Game Loop; a finished game still accepts restart, leaderboard and quit
    while True:
        try:
            key = read_input(GAME_OVER_PROMPT if game.game_over else PROMPT).strip().upper()
        except EOFError:
            print("\nQuitting game.")
            break

        if key == 'Q':
            print("Quitting game.")
            break

        if key == 'R':
            game.reset()
            display_board_state(game)
            continue

        if key == 'B':
            display_leaderboard(store, leaderboard_size)
            continue

        if game.game_over:
            print("The game is over. Press R to restart, B for the leaderboard or Q to quit.")
            continue

        chosen_direction = KEY_MAP.get(key)
        if not chosen_direction:
            print("Invalid input. Move with W/A/S/D or H/J/K/L; R restarts, B shows the leaderboard, Q quits.")
            continue

        # 3. Process the move; the session spawns the new tile and updates its flags
        was_won = game.won
        result = game.move(chosen_direction)

        if result is None or not result.moved:
            print("Move did not change the board. Try a different direction.")
            continue

        display_moves(result.moves)
        display_board_state(game)
        if game.won and not was_won:
            print("Congratulations! You reached the 2048 tile! Keep going or press Q to quit.")

        # 4. Game Ended
        if game.game_over:
            print(f"No more moves possible. Final score {game.score}, best tile {game.max_tile}.")
            record_score(store, player, game)

    return game


def identify_player(store: ScoreStore, key: str,
                    read_input: Callable[[str], str] = input) -> Optional[Player]:
    """
    Finds the player registered for `key`, asking for a username the first time.
    Returns None if input ends before a valid username is given.
    """
    fingerprint = fingerprint_for_key(key)
    try:
        return store.get_player_by_fingerprint(fingerprint)
    except PlayerNotFoundError:
        pass

    while True:
        try:
            username = read_input(USERNAME_PROMPT).strip()
        except EOFError:
            return None
        if 3 <= len(username) <= 20:
            return store.create_player(fingerprint, username)
        print("Usernames must be between 3 and 20 characters.")


def record_score(store: Optional[ScoreStore], player: Optional[Player], game: GameSession):
    if store is None or player is None:
        return
    try:
        store.save_score(player.id, game.score, game.max_tile)
    except StorageError:
        logger.exception("Failed to save score for %s", player.username)
        print("Your score could not be saved.")
        return
    print(f"Score saved for {player.username}.")


def main():
    settings = load_settings()
    configure_logging(settings.log_level)
    settings.ensure_directories()
    store = ScoreStore(settings.database_path)
    try:
        player = identify_player(store, getpass.getuser())
        best_score = store.get_player_best_score(player.id) if player else 0
        play(best_score=best_score, store=store, player=player,
             leaderboard_size=settings.leaderboard_size)
    finally:
        store.close()


# --- Display Functions ---

def display_board_state(game: GameSession):
    """Prints the board, score, and game status to the console."""
    print(f"\nScore: {game.score}    Best: {game.best_score}")
    status = "GAME OVER!" if game.game_over else f"Status: {game.state.name}"
    if game.won:
        status += " (won)"
    print(status)
    print(grid_to_text(game.grid))
    print("-" * (len(game.grid) * 6))


def display_moves(moves: Sequence[TileMove]):
    """Prints one line per tile that slid or merged during the last move."""
    for move in moves:
        action = "merged into" if move.merged else "slid to"
        print(f"  {move.value} at {tuple(move.from_pos)} {action} {tuple(move.to_pos)}")


def display_leaderboard(store: Optional[ScoreStore], limit: int = 10):
    if store is None:
        print("Leaderboard unavailable: no score database.")
        return
    entries = store.get_leaderboard(limit)
    print("\n--- Leaderboard ---")
    if not entries:
        print("No scores yet.")
    for entry in entries:
        print(f"{entry.rank:>3}. {entry.username:<20} {entry.score:>7}  max {entry.max_tile}")


# --- Example Game Loop ---
if __name__ == "__main__":
    main()
