# core.py
# Board transition engine for the 2048 game: line reducer, board and move orchestration.
# Nothing here keeps state between calls except the Board a caller hands in.

from enum import Enum
from typing import Iterable, List, NamedTuple, Optional, Protocol, Sequence, Tuple
import logging
import random

logger = logging.getLogger(__name__)

BOARD_SIZE = 4
SPAWN_FOUR_PROBABILITY = 0.1

Grid = List[List[int]]
GridSnapshot = Tuple[Tuple[int, ...], ...]


class DIRECTION(Enum):
    """Represents the possible move directions."""
    UP = 1
    DOWN = 2
    LEFT = 3
    RIGHT = 4


class Position(NamedTuple):
    """A cell on the board."""
    row: int
    col: int


class LineMove(NamedTuple):
    """One tile's movement inside a single extracted line."""
    from_index: int
    to_index: int
    value: int
    merged: bool


class TileMove(NamedTuple):
    """
    One tile's slide on the grid. `value` is the tile's value before any merge;
    when `merged` is set the tile combined with another one at `to_pos`.
    """
    from_pos: Position
    to_pos: Position
    value: int
    merged: bool


class MoveResult(NamedTuple):
    """Outcome of applying one direction to a board."""
    moved: bool
    moves: Tuple[TileMove, ...]
    score: int
    board_before: GridSnapshot
    board_state: GridSnapshot
    new_tile: Optional[Position] = None


class RandomSource(Protocol):
    """Anything that can drive tile spawning. `random.Random` qualifies."""

    def random(self) -> float:
        ...

    def randrange(self, stop: int) -> int:
        ...


# --- Validation Helpers ---

def _is_power_of_two(value: int) -> bool:
    return value >= 2 and (value & (value - 1)) == 0


def validate_grid(grid: Sequence[Sequence[int]]) -> None:
    """
    Checks that a grid is a BOARD_SIZE x BOARD_SIZE matrix of valid tile values.
    Args:
        grid: The grid to check.
    Raises:
        ValueError: If the shape is wrong or a cell is negative or not a power of two.
    """
    if len(grid) != BOARD_SIZE or not all(len(row) == BOARD_SIZE for row in grid):
        raise ValueError(f"Board must be a {BOARD_SIZE}x{BOARD_SIZE} matrix.")
    for row in grid:
        for value in row:
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"Board cells must be integers, got {value!r}.")
            if value != 0 and not _is_power_of_two(value):
                raise ValueError(f"Invalid tile value {value}: must be 0 or a power of two >= 2.")


# --- Line Reduction ---

def reduce_line(line: Sequence[int],
                origin_indices: Optional[Sequence[int]] = None) -> Tuple[List[int], List[LineMove], int]:
    """
    Compacts and merges a single line toward index 0.

    Empty cells are dropped first, then the survivors are paired greedily from
    the leading edge: two equal neighbours become one tile of double the value,
    and a tile produced by a merge is never merged again in the same pass.
    So [2, 2, 2, 0] becomes [4, 2, 0, 0] and [4, 4, 4, 4] becomes [8, 8, 0, 0].

    Args:
        line (Sequence[int]): The cell values, leading edge first.
        origin_indices (Sequence[int]): The index each cell is reported as coming from.
                                        Defaults to 0..n-1.
    Returns:
        Tuple[List[int], List[LineMove], int]: The new line, the movement records in
                                               emission order, and the score gained.
    Raises:
        ValueError: If the line or the origins do not have BOARD_SIZE entries.
    """
    if len(line) != BOARD_SIZE:
        raise ValueError(f"Line must have {BOARD_SIZE} cells, got {len(line)}.")
    if origin_indices is None:
        origin_indices = range(BOARD_SIZE)
    elif len(origin_indices) != BOARD_SIZE:
        raise ValueError(f"Expected {BOARD_SIZE} origin indices, got {len(origin_indices)}.")

    compacted = [(value, origin) for value, origin in zip(line, origin_indices) if value != 0]

    new_line = [0] * BOARD_SIZE
    moves: List[LineMove] = []
    score_delta = 0
    write_idx = 0
    read_idx = 0

    while read_idx < len(compacted):
        value, origin = compacted[read_idx]
        if read_idx + 1 < len(compacted) and compacted[read_idx + 1][0] == value:
            partner_value, partner_origin = compacted[read_idx + 1]
            moves.append(LineMove(origin, write_idx, value, True))
            moves.append(LineMove(partner_origin, write_idx, partner_value, True))
            new_line[write_idx] = value * 2
            score_delta += value * 2
            read_idx += 2
        else:
            new_line[write_idx] = value
            if origin != write_idx:
                moves.append(LineMove(origin, write_idx, value, False))
            read_idx += 1
        write_idx += 1

    return new_line, moves, score_delta


# --- Board ---

class Board:
    """
    A BOARD_SIZE x BOARD_SIZE grid of tiles, 0 meaning empty.

    The random source is only used by spawn_tile().
    """

    def __init__(self, grid: Optional[Sequence[Sequence[int]]] = None,
                 rng: Optional[RandomSource] = None):
        if grid is None:
            self.grid: Grid = [[0] * BOARD_SIZE for _ in range(BOARD_SIZE)]
        else:
            validate_grid(grid)
            self.grid = [list(row) for row in grid]
        self.rng: RandomSource = rng if rng is not None else random.Random()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Board):
            return NotImplemented
        return self.grid == other.grid

    def __repr__(self) -> str:
        return f"Board({self.grid!r})"

    def empty_cells(self) -> List[Position]:
        """Returns all empty positions in row-major order."""
        return [Position(row, col)
                for row in range(BOARD_SIZE)
                for col in range(BOARD_SIZE)
                if self.grid[row][col] == 0]

    def spawn_tile(self) -> Optional[Position]:
        """
        Places a 2 (90%) or a 4 (10%) on a uniformly chosen empty cell.
        Returns:
            Optional[Position]: Where the tile landed, or None if the board is full.
        """
        empty = self.empty_cells()
        if not empty:
            return None
        pos = empty[self.rng.randrange(len(empty))]
        self.grid[pos.row][pos.col] = 4 if self.rng.random() < SPAWN_FOUR_PROBABILITY else 2
        return pos

    def is_full(self) -> bool:
        return not self.empty_cells()

    def max_tile(self) -> int:
        return max(max(row) for row in self.grid)

    def total(self) -> int:
        return sum(sum(row) for row in self.grid)

    def clone(self) -> "Board":
        """Copies the grid; the copy shares this board's random source."""
        return Board(self.grid, self.rng)

    def snapshot(self) -> GridSnapshot:
        return tuple(tuple(row) for row in self.grid)

    def has_adjacent_pair(self) -> bool:
        """True if two horizontally or vertically adjacent cells hold the same value."""
        for row in range(BOARD_SIZE):
            for col in range(BOARD_SIZE - 1):
                if self.grid[row][col] == self.grid[row][col + 1]:
                    return True
        for col in range(BOARD_SIZE):
            for row in range(BOARD_SIZE - 1):
                if self.grid[row][col] == self.grid[row + 1][col]:
                    return True
        return False

    def can_move(self) -> bool:
        return not self.is_full() or self.has_adjacent_pair()


# --- Move Orchestration ---

def line_positions(direction: DIRECTION, index: int) -> List[Position]:
    """
    Lists the cells of one row or column, ordered so that the tiles travel toward
    the first entry.
    Args:
        direction (DIRECTION): The move direction.
        index (int): The row (LEFT/RIGHT) or column (UP/DOWN) to extract.
    Returns:
        List[Position]: BOARD_SIZE positions, leading edge first.
    """
    steps = range(BOARD_SIZE)
    if direction == DIRECTION.LEFT:
        return [Position(index, i) for i in steps]
    if direction == DIRECTION.RIGHT:
        return [Position(index, BOARD_SIZE - 1 - i) for i in steps]
    if direction == DIRECTION.UP:
        return [Position(i, index) for i in steps]
    if direction == DIRECTION.DOWN:
        return [Position(BOARD_SIZE - 1 - i, index) for i in steps]
    raise ValueError(f"Invalid direction: {direction!r}")


def apply_move(board: Board, direction: DIRECTION) -> MoveResult:
    """
    Slides and merges every line of the board in one direction, in place.

    Each row or column is copied out, reduced, and written back on its own.
    Whether the move counts is decided by comparing the whole grid with its
    state before the move, not by looking at the movement records.
    No tile is spawned here.

    Args:
        board (Board): The board to mutate.
        direction (DIRECTION): The direction to move.
    Returns:
        MoveResult: With new_tile unset. On a no-op move, moves is empty and score is 0.
    """
    before = board.snapshot()
    moves: List[TileMove] = []
    score = 0

    for index in range(BOARD_SIZE):
        positions = line_positions(direction, index)
        line = [board.grid[pos.row][pos.col] for pos in positions]
        new_line, line_moves, line_score = reduce_line(line)

        for pos, value in zip(positions, new_line):
            board.grid[pos.row][pos.col] = value
        moves.extend(TileMove(positions[m.from_index], positions[m.to_index], m.value, m.merged)
                     for m in line_moves)
        score += line_score

    after = board.snapshot()
    if after == before:
        if moves:
            logger.warning("Reducer reported %d tile moves for %s but the board is unchanged",
                           len(moves), direction.name)
        return MoveResult(moved=False, moves=(), score=0, board_before=before, board_state=after)

    return MoveResult(moved=True, moves=tuple(moves), score=score,
                      board_before=before, board_state=after)


# --- Rendering ---

def grid_to_text(grid: Iterable[Iterable[int]]) -> str:
    """Renders a grid as tab-separated rows, empty cells shown as '.'."""
    return "\n".join("\t".join(str(value) if value else "." for value in row) for row in grid)
