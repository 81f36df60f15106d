from collections import OrderedDict
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field, field_validator
from typing import Callable, List, Optional
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import logging
import random
import threading
import time
import uuid

import uvicorn

import config
import core
import session
import storage

logger = logging.getLogger(__name__)

settings = config.load_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.ensure_directories()
    app.state.store = storage.ScoreStore(settings.database_path)
    try:
        yield
    finally:
        app.state.store.close()


# Initialize the rate limiter
limiter = Limiter(key_func=get_remote_address)
app = FastAPI(
    title="2048 Game API",
    description="Play 2048 against server-side game sessions. "\
                "Registered players get their best scores recorded on a shared leaderboard.",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

RATE_LIMIT = settings.rate_limit


# --- Session Registry ---

class SessionEntry:
    """A game, the player it belongs to, and the lock that serialises its moves and resets."""

    def __init__(self, game: session.GameSession, player: Optional[storage.Player], last_used: float):
        self.game = game
        self.player = player
        self.last_used = last_used
        self.lock = threading.Lock()


class SessionRegistry:
    """
    In-memory game sessions keyed by id.

    Sessions untouched for `ttl` seconds are dropped, finished or not, and the
    least recently used ones go first once `max_sessions` is reached.
    """

    def __init__(self, rng_factory: Callable[[], core.RandomSource] = random.Random,
                 ttl: float = 3600, max_sessions: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.rng_factory = rng_factory
        self.ttl = ttl
        self.max_sessions = max_sessions
        self.clock = clock
        # ordered from least to most recently used
        self._entries: "OrderedDict[str, SessionEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self, best_score: int, player: Optional[storage.Player]) -> str:
        session_id = uuid.uuid4().hex
        game = session.new_session(best_score, rng=self.rng_factory())
        with self._lock:
            now = self.clock()
            self._evict_expired(now)
            while len(self._entries) >= self.max_sessions:
                evicted, _ = self._entries.popitem(last=False)
                logger.info("Session limit reached, dropped session %s", evicted)
            self._entries[session_id] = SessionEntry(game, player, now)
        return session_id

    def get(self, session_id: str) -> SessionEntry:
        with self._lock:
            now = self.clock()
            self._evict_expired(now)
            entry = self._entries.get(session_id)
            if entry is None:
                raise HTTPException(status_code=404, detail=f"Unknown game session: {session_id}")
            entry.last_used = now
            self._entries.move_to_end(session_id)
            return entry

    def remove(self, session_id: str) -> None:
        with self._lock:
            if self._entries.pop(session_id, None) is None:
                raise HTTPException(status_code=404, detail=f"Unknown game session: {session_id}")

    def _evict_expired(self, now: float) -> None:
        while self._entries:
            session_id, entry = next(iter(self._entries.items()))
            if now - entry.last_used < self.ttl:
                break
            del self._entries[session_id]
            logger.debug("Expired idle session %s", session_id)

    def __len__(self) -> int:
        return len(self._entries)


_registry = SessionRegistry(ttl=settings.session_ttl, max_sessions=settings.max_sessions)


def get_registry() -> SessionRegistry:
    return _registry


def get_store(request: Request) -> storage.ScoreStore:
    return request.app.state.store


def _lookup_player(store: storage.ScoreStore, player_key: Optional[str]) -> Optional[storage.Player]:
    if not player_key:
        return None
    try:
        return store.get_player_by_fingerprint(storage.fingerprint_for_key(player_key))
    except storage.PlayerNotFoundError:
        return None


def _require_player(store: storage.ScoreStore, player_key: str) -> storage.Player:
    try:
        return store.get_player_by_fingerprint(storage.fingerprint_for_key(player_key))
    except storage.PlayerNotFoundError:
        raise HTTPException(status_code=404, detail="No player registered for this key.")


def _storage_failure(action: str, e: storage.StorageError) -> HTTPException:
    logger.exception("Failed to %s", action)
    return HTTPException(status_code=500, detail=f"Storage error: {str(e)}")


# --- Pydantic Models for API requests and responses ---

class PositionData(BaseModel):
    row: int = Field(..., ge=0, lt=core.BOARD_SIZE)
    col: int = Field(..., ge=0, lt=core.BOARD_SIZE)


class TileMoveData(BaseModel):
    """One tile's slide during a move; `value` is the tile before merging."""
    from_pos: PositionData
    to_pos: PositionData
    value: int
    merged: bool


class PlayerRegistration(BaseModel):
    username: str = Field(..., min_length=3, max_length=20, description="Name shown on the leaderboard.")


class PlayerData(BaseModel):
    id: int
    username: str
    fingerprint: str
    best_score: int = Field(0, ge=0)
    rank: Optional[int] = Field(default=None, description="Leaderboard rank of the player's best score.")


class ScoreData(BaseModel):
    score: int
    max_tile: int


class GameStateData(BaseModel):
    """Represents the complete state of a game session."""
    session_id: str
    board: List[List[int]] = Field(..., description="The 4 x 4 game board, 0 for empty cells.")
    score: int = Field(..., ge=0, description="Current score of the game.")
    best_score: int = Field(..., ge=0, description="Highest score seen by this session.")
    max_tile: int = Field(..., ge=0)
    state: str = Field(..., description="ACTIVE or OVER.")
    won: bool = Field(..., description="True once the win tile has been reached.")
    game_over: bool


class MoveRequestData(BaseModel):
    """Data required to make a move."""
    direction: core.DIRECTION = Field(
        ...,
        description="Direction of the move (UP, DOWN, LEFT, RIGHT)."
    )

    @field_validator("direction", mode="before")
    @classmethod
    def _direction_by_name(cls, value):
        if isinstance(value, str) and value.isdigit():
            return int(value)
        if isinstance(value, str):
            try:
                return core.DIRECTION[value.upper()]
            except KeyError:
                raise ValueError(f"Unknown direction {value!r}") from None
        return value


class MoveResponseData(GameStateData):
    """Response after a move, including the new game state and what moved."""
    move_was_effective: bool = Field(
        ...,
        description="True if the move resulted in a change to the board state, False otherwise."
    )
    score_gained: int = Field(0, ge=0)
    moves: List[TileMoveData] = Field(default_factory=list)
    new_tile: Optional[PositionData] = None
    message: Optional[str] = Field(
        default=None,
        description="An optional message, e.g., if a move was invalid, game ended, or other info."
    )


class LeaderboardEntryData(BaseModel):
    rank: int
    username: str
    score: int
    max_tile: int


def _state_data(session_id: str, game: session.GameSession) -> dict:
    return dict(
        session_id=session_id,
        board=game.grid,
        score=game.score,
        best_score=game.best_score,
        max_tile=game.max_tile,
        state=game.state.name,
        won=game.won,
        game_over=game.game_over,
    )


def _position_data(pos: core.Position) -> PositionData:
    return PositionData(row=pos.row, col=pos.col)


# --- API Endpoints ---
# Plain `def` endpoints: FastAPI runs them in its threadpool, so sqlite calls
# never block the event loop. Session state is guarded by SessionEntry.lock.

@app.post("/players", response_model=PlayerData, status_code=201, summary="Register a Player")
@limiter.limit(RATE_LIMIT)
def register_player(request: Request, registration: PlayerRegistration,
                    x_player_key: str = Header(..., min_length=1),
                    store: storage.ScoreStore = Depends(get_store)):
    """
    Registers the client's key under a username. The key itself is never stored,
    only its fingerprint.
    """
    fingerprint = storage.fingerprint_for_key(x_player_key)
    try:
        player = store.create_player(fingerprint, registration.username)
    except storage.PlayerExistsError:
        raise HTTPException(status_code=409, detail="This key is already registered.")
    except storage.StorageError as e:
        raise _storage_failure("register player", e)
    return PlayerData(id=player.id, username=player.username, fingerprint=player.fingerprint)


@app.get("/players/me", response_model=PlayerData, summary="Look Up the Calling Player")
@limiter.limit(RATE_LIMIT)
def get_me(request: Request, x_player_key: str = Header(..., min_length=1),
           store: storage.ScoreStore = Depends(get_store)):
    player = _require_player(store, x_player_key)
    try:
        best = store.get_player_best_score(player.id)
        rank = store.get_player_rank(player.id) if best else None
    except storage.StorageError as e:
        raise _storage_failure("look up player", e)
    return PlayerData(id=player.id, username=player.username, fingerprint=player.fingerprint,
                      best_score=best, rank=rank)


@app.patch("/players/me", response_model=PlayerData, summary="Change the Calling Player's Username")
@limiter.limit(RATE_LIMIT)
def rename_me(request: Request, registration: PlayerRegistration,
              x_player_key: str = Header(..., min_length=1),
              store: storage.ScoreStore = Depends(get_store)):
    player = _require_player(store, x_player_key)
    try:
        store.update_username(player.id, registration.username)
        best = store.get_player_best_score(player.id)
    except storage.StorageError as e:
        raise _storage_failure("rename player", e)
    return PlayerData(id=player.id, username=registration.username, fingerprint=player.fingerprint,
                      best_score=best)


@app.get("/players/me/scores", response_model=List[ScoreData], summary="The Calling Player's Top Scores")
@limiter.limit(RATE_LIMIT)
def my_scores(request: Request, limit: Optional[int] = Query(default=None, gt=0, le=100),
              x_player_key: str = Header(..., min_length=1),
              store: storage.ScoreStore = Depends(get_store)):
    player = _require_player(store, x_player_key)
    try:
        records = store.get_player_scores(player.id, limit or settings.leaderboard_size)
    except storage.StorageError as e:
        raise _storage_failure("read player scores", e)
    return [ScoreData(score=r.score, max_tile=r.max_tile) for r in records]


@app.post("/game/new", response_model=GameStateData, status_code=201, summary="Start a New 2048 Game")
@limiter.limit(RATE_LIMIT)
def start_new_game(request: Request,
                   x_player_key: Optional[str] = Header(default=None),
                   store: storage.ScoreStore = Depends(get_store),
                   registry: SessionRegistry = Depends(get_registry)):
    """
    Starts a game with two random tiles. When the request carries a registered
    player key, the session's best score starts at that player's recorded best
    and the final score is saved when the game ends.
    """
    try:
        player = _lookup_player(store, x_player_key)
        best_score = store.get_player_best_score(player.id) if player else 0
    except storage.StorageError as e:
        raise _storage_failure("load player for new game", e)

    session_id = registry.create(best_score, player)
    logger.info("Started session %s for %s", session_id, player.username if player else "anonymous")
    entry = registry.get(session_id)
    with entry.lock:
        return GameStateData(**_state_data(session_id, entry.game))


@app.get("/game/{session_id}", response_model=GameStateData, summary="Get a Game's State")
@limiter.limit(RATE_LIMIT)
def get_game(request: Request, session_id: str,
             registry: SessionRegistry = Depends(get_registry)):
    entry = registry.get(session_id)
    with entry.lock:
        return GameStateData(**_state_data(session_id, entry.game))


@app.delete("/game/{session_id}", status_code=204, summary="End a Game Session")
@limiter.limit(RATE_LIMIT)
def delete_game(request: Request, session_id: str,
                registry: SessionRegistry = Depends(get_registry)):
    """Drops the session. Scores already recorded are kept."""
    registry.remove(session_id)
    return Response(status_code=204)


@app.post("/game/{session_id}/reset", response_model=GameStateData, summary="Restart a Game")
@limiter.limit(RATE_LIMIT)
def reset_game(request: Request, session_id: str,
               registry: SessionRegistry = Depends(get_registry)):
    """Starts over on a fresh board; the best score is kept."""
    entry = registry.get(session_id)
    with entry.lock:
        entry.game.reset()
        return GameStateData(**_state_data(session_id, entry.game))


@app.post("/game/{session_id}/move", response_model=MoveResponseData, summary="Make a Move in the Game")
@limiter.limit(RATE_LIMIT)
def make_move(request: Request, session_id: str, request_data: MoveRequestData,
              registry: SessionRegistry = Depends(get_registry),
              store: storage.ScoreStore = Depends(get_store)):
    """
    Processes a player's move in the game.

    The API will:
    1. Slide and merge the tiles in the requested direction.
    2. If the move changed the board, add a new random tile (2 or 4).
    3. Update the score, the won flag and the game-over flag.

    Returns the updated game state, whether the move was effective, the tile
    movements and where the new tile appeared.
    """
    entry = registry.get(session_id)
    with entry.lock:
        game = entry.game
        was_won = game.won

        result = game.move(request_data.direction)
        if result is None:
            raise HTTPException(status_code=409, detail="Game is over; reset to play again.")

        message_for_client: Optional[str] = None
        if not result.moved:
            message_for_client = "Move was not effective; board state unchanged by slide."
        elif game.game_over:
            message_for_client = "Game Over. No more valid moves."
            if entry.player is not None:
                try:
                    store.save_score(entry.player.id, game.score, game.max_tile)
                except storage.StorageError as e:
                    raise _storage_failure(f"save score for {entry.player.username}", e)
                logger.info("Saved score %d for %s", game.score, entry.player.username)
        elif game.won and not was_won:
            message_for_client = "Congratulations! You won!"

        return MoveResponseData(
            **_state_data(session_id, game),
            move_was_effective=result.moved,
            score_gained=result.score,
            moves=[TileMoveData(from_pos=_position_data(m.from_pos), to_pos=_position_data(m.to_pos),
                                value=m.value, merged=m.merged) for m in result.moves],
            new_tile=_position_data(result.new_tile) if result.new_tile else None,
            message=message_for_client,
        )


@app.get("/leaderboard", response_model=List[LeaderboardEntryData], summary="Top Scores")
@limiter.limit(RATE_LIMIT)
def leaderboard(request: Request, limit: Optional[int] = Query(default=None, gt=0, le=100),
                store: storage.ScoreStore = Depends(get_store)):
    try:
        entries = store.get_leaderboard(limit or settings.leaderboard_size)
    except storage.StorageError as e:
        raise _storage_failure("read leaderboard", e)
    return [LeaderboardEntryData(rank=e.rank, username=e.username, score=e.score, max_tile=e.max_tile)
            for e in entries]


def main():
    config.configure_logging(settings.log_level)
    logger.info("Starting 2048 API on %s:%d (data dir %s)", settings.api_host, settings.api_port, settings.data_dir)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
