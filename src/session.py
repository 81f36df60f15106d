# session.py
# A single player's game: board, score, best score and the won/over latches.

from enum import Enum
from typing import Optional
import logging

from core import DIRECTION, Board, Grid, MoveResult, RandomSource, apply_move

logger = logging.getLogger(__name__)

WIN_TILE = 2048


class SessionState(Enum):
    """Whether the session still accepts moves."""
    ACTIVE = 1
    OVER = 2


class Latch:
    """
    A boolean that can only go from False to True.

    The only way back to False is to build a new Latch, which is what
    GameSession.reset() does.
    """

    def __init__(self) -> None:
        self._is_set = False

    def set(self) -> bool:
        """Sets the latch. Returns True only on the call that flipped it."""
        if self._is_set:
            return False
        self._is_set = True
        return True

    @property
    def is_set(self) -> bool:
        return self._is_set

    def __bool__(self) -> bool:
        return self._is_set

    def __repr__(self) -> str:
        return f"Latch({self._is_set})"


class GameSession:
    """
    One game in progress, owned by a single caller.

    Not thread safe: the host must not run two move()/reset() calls on the
    same session at once.
    """

    def __init__(self, best_score: int = 0, rng: Optional[RandomSource] = None,
                 win_tile: int = WIN_TILE):
        if best_score < 0:
            raise ValueError("Best score must be non-negative.")
        if win_tile < 2 or win_tile & (win_tile - 1):
            raise ValueError("Win tile must be a power of two >= 2.")
        self._rng = rng
        self.win_tile = win_tile
        self.best_score = best_score
        self._start()

    def _start(self) -> None:
        self.board = Board(rng=self._rng)
        self.score = 0
        self.moves_made = 0
        self._won = Latch()
        self._over = Latch()
        self.board.spawn_tile()
        self.board.spawn_tile()

    # --- Read accessors ---

    @property
    def grid(self) -> Grid:
        return [list(row) for row in self.board.grid]

    @property
    def won(self) -> bool:
        return self._won.is_set

    @property
    def game_over(self) -> bool:
        return self._over.is_set

    @property
    def state(self) -> SessionState:
        return SessionState.OVER if self._over else SessionState.ACTIVE

    @property
    def max_tile(self) -> int:
        return self.board.max_tile()

    # --- Transitions ---

    def move(self, direction: DIRECTION) -> Optional[MoveResult]:
        """
        Plays one turn.
        Args:
            direction (DIRECTION): The direction to move.
        Returns:
            Optional[MoveResult]: None if the game is already over. A result with
                                  moved=False if nothing on the board could move;
                                  the session is left untouched in that case.
        """
        if self._over:
            return None

        result = apply_move(self.board, direction)
        if not result.moved:
            return result

        self.moves_made += 1
        self.score += result.score
        self.best_score = max(self.best_score, self.score)

        if self.board.max_tile() >= self.win_tile and self._won.set():
            logger.info("Reached %d after %d moves (score %d)", self.win_tile, self.moves_made, self.score)

        new_tile = self.board.spawn_tile()
        result = result._replace(new_tile=new_tile, board_state=self.board.snapshot())
        logger.debug("Move %s: +%d points, %d tile moves, spawned at %s",
                     direction.name, result.score, len(result.moves), new_tile)

        if not self.board.can_move():
            self._over.set()
            logger.info("Game over: score %d, max tile %d", self.score, self.max_tile)

        return result

    def reset(self) -> None:
        """Starts a fresh board. The best score survives."""
        self._start()


def new_session(best_score: int = 0, rng: Optional[RandomSource] = None) -> GameSession:
    """Creates a session whose best score is seeded from a previously recorded high score."""
    return GameSession(best_score=best_score, rng=rng)
