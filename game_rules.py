"""Turn and phase rules for a trivia room.

Every transition here is a pure function: it takes the current ``GameState``
and the acting player and either returns a ``Transition`` (the proposed next
state plus the score changes it implies) or raises ``TriviaGameError``. No
function in this module touches storage; the room service persists a
transition with a compare-and-swap on ``GameState.version``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from trivia_board import Board

MIN_WAGER_CEILING = 1000
SKIPPED_PLAYER_NAME = "No one"
SKIPPED_ANSWER = "(skipped)"


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    INVALID_PHASE = "invalid_phase"
    NOT_FOUND = "not_found"
    PERSISTENCE = "persistence"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"


ERROR_STATUS_CODES = {
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_PHASE: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERSISTENCE: 503,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.CONFLICT: 409,
}


class TriviaGameError(Exception):
    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INVALID_INPUT,
        status_code: int | None = None,
        details=None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code or ERROR_STATUS_CODES[kind]
        self.details = details


class GamePhase(str, Enum):
    SELECTING = "selecting"
    ANSWERING = "answering"
    REVEALING = "revealing"
    FINAL_WAGER = "final_wager"
    FINAL_ANSWERING = "final_answering"
    FINAL_REVEALING = "final_revealing"
    FINISHED = "finished"


FINAL_PHASES = frozenset(
    {
        GamePhase.FINAL_WAGER,
        GamePhase.FINAL_ANSWERING,
        GamePhase.FINAL_REVEALING,
        GamePhase.FINISHED,
    }
)


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    PLAYING = "playing"
    FINISHED = "finished"


@dataclass(frozen=True)
class PlayerStanding:
    player_id: str
    display_name: str
    score: int = 0


@dataclass(frozen=True)
class LastResult:
    clue_id: str
    player_id: str
    player_name: str
    is_correct: bool
    points_delta: int
    answer: str

    def to_dict(self) -> dict:
        return {
            "clue_id": self.clue_id,
            "player_id": self.player_id,
            "player_name": self.player_name,
            "is_correct": self.is_correct,
            "points_delta": self.points_delta,
            "answer": self.answer,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "LastResult":
        return cls(
            clue_id=str(payload["clue_id"]),
            player_id=str(payload["player_id"]),
            player_name=str(payload["player_name"]),
            is_correct=bool(payload["is_correct"]),
            points_delta=int(payload["points_delta"]),
            answer=str(payload["answer"]),
        )


@dataclass(frozen=True)
class FinalWager:
    player_id: str
    wager: int
    answer: str | None = None
    is_correct: bool | None = None
    validated: bool = False

    def to_dict(self) -> dict:
        return {
            "player_id": self.player_id,
            "wager": self.wager,
            "answer": self.answer,
            "is_correct": self.is_correct,
            "validated": self.validated,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "FinalWager":
        is_correct = payload.get("is_correct")
        answer = payload.get("answer")
        return cls(
            player_id=str(payload["player_id"]),
            wager=int(payload["wager"]),
            answer=None if answer is None else str(answer),
            is_correct=None if is_correct is None else bool(is_correct),
            validated=bool(payload.get("validated", False)),
        )


@dataclass(frozen=True)
class GameState:
    room_status: RoomStatus
    host_player_id: str
    board: Board
    players: tuple[PlayerStanding, ...]
    phase: GamePhase = GamePhase.SELECTING
    turn_player_id: str | None = None
    revealed_clue_ids: tuple[str, ...] = ()
    selected_clue_id: str | None = None
    last_result: LastResult | None = None
    final_wagers: tuple[FinalWager, ...] = ()
    version: int = 0

    @property
    def player_ids(self) -> list[str]:
        return [player.player_id for player in self.players]

    def player(self, player_id: str) -> PlayerStanding | None:
        for player in self.players:
            if player.player_id == player_id:
                return player
        return None

    def wager_for(self, player_id: str) -> FinalWager | None:
        for wager in self.final_wagers:
            if wager.player_id == player_id:
                return wager
        return None

    @property
    def board_complete(self) -> bool:
        return len(self.revealed_clue_ids) >= self.board.total_clues


@dataclass(frozen=True)
class Transition:
    state: GameState
    score_deltas: dict[str, int] = field(default_factory=dict)
    room_deleted: bool = False
    removed_player_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Departure:
    """Outcome of removing a player, which may tear the whole room down."""

    state: GameState | None
    room_deleted: bool = False
    host_changed: bool = False


# ------------------------
# Round play
# ------------------------


def new_game(
    *,
    board: Board,
    players: list[PlayerStanding] | tuple[PlayerStanding, ...],
    host_player_id: str,
) -> GameState:
    if not players:
        raise TriviaGameError("No players found.", ErrorKind.NOT_FOUND)
    ordered = tuple(replace(player, score=0) for player in players)
    return GameState(
        room_status=RoomStatus.PLAYING,
        host_player_id=host_player_id,
        board=board,
        players=ordered,
        phase=GamePhase.SELECTING,
        turn_player_id=ordered[0].player_id,
    )


def select_clue(state: GameState, actor_id: str, clue_id: str) -> Transition:
    _require_member(state, actor_id)
    if state.room_status != RoomStatus.PLAYING:
        raise TriviaGameError("Game is not in progress.", ErrorKind.INVALID_PHASE)
    if state.phase != GamePhase.SELECTING:
        raise TriviaGameError("Cannot select a clue right now.", ErrorKind.INVALID_PHASE)
    if state.turn_player_id != actor_id:
        raise TriviaGameError("It's not your turn.", ErrorKind.UNAUTHORIZED)
    if state.board.find_clue(clue_id) is None:
        raise TriviaGameError("Clue not found on this board.", ErrorKind.NOT_FOUND)
    if clue_id in state.revealed_clue_ids:
        raise TriviaGameError(
            "This clue has already been revealed.", ErrorKind.INVALID_PHASE
        )

    return Transition(
        state=replace(
            state,
            phase=GamePhase.ANSWERING,
            selected_clue_id=clue_id,
            last_result=None,
        )
    )


def submit_answer(
    state: GameState, actor_id: str, answer: str, is_correct: bool
) -> Transition:
    actor = _require_answering_actor(state, actor_id, "submit an answer")
    clue = state.board.find_clue(state.selected_clue_id or "")
    if clue is None:
        raise TriviaGameError("Clue not found on this board.", ErrorKind.NOT_FOUND)

    points_delta = clue.value if is_correct else -clue.value
    result = LastResult(
        clue_id=clue.id,
        player_id=actor.player_id,
        player_name=actor.display_name,
        is_correct=bool(is_correct),
        points_delta=points_delta,
        answer=str(answer or ""),
    )
    scored = _apply_score_deltas(state, {actor.player_id: points_delta})
    return Transition(
        state=_resolve_clue(scored, clue.id, result),
        score_deltas={actor.player_id: points_delta},
    )


def skip_clue(state: GameState, actor_id: str) -> Transition:
    actor = _require_answering_actor(state, actor_id, "skip")
    clue_id = state.selected_clue_id or ""
    result = LastResult(
        clue_id=clue_id,
        player_id=actor.player_id,
        player_name=SKIPPED_PLAYER_NAME,
        is_correct=False,
        points_delta=0,
        answer=SKIPPED_ANSWER,
    )
    return Transition(state=_resolve_clue(state, clue_id, result))


def continue_game(state: GameState, actor_id: str) -> Transition:
    _require_member(state, actor_id)
    if state.phase != GamePhase.REVEALING:
        raise TriviaGameError("Cannot continue right now.", ErrorKind.INVALID_PHASE)
    if state.turn_player_id != actor_id:
        raise TriviaGameError(
            "Only the current player can continue.", ErrorKind.UNAUTHORIZED
        )

    return Transition(
        state=replace(
            state,
            phase=GamePhase.SELECTING,
            selected_clue_id=None,
            last_result=None,
            turn_player_id=next_turn_player_id(state),
        )
    )


def next_turn_player_id(state: GameState) -> str | None:
    """Correct answers keep the turn; anything else passes it on in join order."""
    current = state.turn_player_id
    if state.last_result is not None and state.last_result.is_correct:
        return current
    ids = state.player_ids
    if not ids:
        return None
    if current in ids:
        return ids[(ids.index(current) + 1) % len(ids)]
    return ids[0]


# ------------------------
# Final round
# ------------------------


def max_wager(score: int) -> int:
    return max(int(score), MIN_WAGER_CEILING)


def submit_final_wager(state: GameState, actor_id: str, wager) -> Transition:
    player = _require_member(state, actor_id)
    if state.phase != GamePhase.FINAL_WAGER:
        raise TriviaGameError("Wagers are not open right now.", ErrorKind.INVALID_PHASE)
    if state.wager_for(actor_id) is not None:
        raise TriviaGameError(
            "You have already placed a wager.", ErrorKind.INVALID_PHASE
        )
    if isinstance(wager, bool):
        raise TriviaGameError("Wager must be a whole number.", ErrorKind.INVALID_INPUT)
    try:
        amount = int(wager)
    except (TypeError, ValueError):
        raise TriviaGameError(
            "Wager must be a whole number.", ErrorKind.INVALID_INPUT
        ) from None
    if isinstance(wager, float) and wager != amount:
        raise TriviaGameError("Wager must be a whole number.", ErrorKind.INVALID_INPUT)

    ceiling = max_wager(player.score)
    if amount < 0 or amount > ceiling:
        raise TriviaGameError(
            f"Wager must be between 0 and {ceiling}.", ErrorKind.INVALID_INPUT
        )

    wagered = replace(
        state,
        final_wagers=state.final_wagers + (FinalWager(player_id=actor_id, wager=amount),),
    )
    return Transition(state=_advance_final_round(wagered))


def submit_final_answer(
    state: GameState, actor_id: str, answer: str, is_correct: bool
) -> Transition:
    _require_member(state, actor_id)
    if state.phase != GamePhase.FINAL_ANSWERING:
        raise TriviaGameError(
            "Final answers are not open right now.", ErrorKind.INVALID_PHASE
        )
    existing = state.wager_for(actor_id)
    if existing is None:
        raise TriviaGameError(
            "You did not place a wager this round.", ErrorKind.UNAUTHORIZED
        )
    if existing.validated:
        raise TriviaGameError(
            "You have already answered.", ErrorKind.INVALID_PHASE
        )

    judged = replace(
        existing,
        answer=str(answer or ""),
        is_correct=bool(is_correct),
        validated=True,
    )
    wagers = tuple(
        judged if wager.player_id == actor_id else wager
        for wager in state.final_wagers
    )
    return Transition(state=_advance_final_round(replace(state, final_wagers=wagers)))


def reveal_final_results(state: GameState, actor_id: str) -> Transition:
    _require_member(state, actor_id)
    if state.phase != GamePhase.FINAL_REVEALING:
        raise TriviaGameError(
            "Final results are not ready yet.", ErrorKind.INVALID_PHASE
        )

    deltas: dict[str, int] = {}
    for wager in state.final_wagers:
        if state.player(wager.player_id) is None:
            continue
        deltas[wager.player_id] = wager.wager if wager.is_correct else -wager.wager

    scored = _apply_score_deltas(state, deltas)
    return Transition(
        state=replace(
            scored,
            phase=GamePhase.FINISHED,
            room_status=RoomStatus.FINISHED,
        ),
        score_deltas=deltas,
    )


# ------------------------
# Departures
# ------------------------


def remove_player(state: GameState, player_id: str) -> Departure:
    """Apply the departure policy for a player leaving a game in progress."""
    ids = state.player_ids
    if player_id not in ids:
        return Departure(state=state)

    remaining = tuple(player for player in state.players if player.player_id != player_id)
    if not remaining:
        return Departure(state=None, room_deleted=True)

    host_changed = False
    host_player_id = state.host_player_id
    if host_player_id == player_id:
        if state.room_status != RoomStatus.PLAYING:
            return Departure(state=None, room_deleted=True)
        host_player_id = remaining[0].player_id
        host_changed = True

    phase = state.phase
    selected_clue_id = state.selected_clue_id
    last_result = state.last_result
    turn_player_id = state.turn_player_id
    if turn_player_id == player_id:
        departed_index = ids.index(player_id)
        turn_player_id = remaining[departed_index % len(remaining)].player_id
        # The inheritor selects next; a pending reveal is closed on the leaver's behalf.
        if phase in (GamePhase.ANSWERING, GamePhase.REVEALING):
            phase = GamePhase.SELECTING
            selected_clue_id = None
            last_result = None

    updated = replace(
        state,
        players=remaining,
        host_player_id=host_player_id,
        phase=phase,
        selected_clue_id=selected_clue_id,
        last_result=last_result,
        turn_player_id=turn_player_id,
        final_wagers=tuple(
            wager for wager in state.final_wagers if wager.player_id != player_id
        ),
    )
    if updated.phase in (GamePhase.FINAL_WAGER, GamePhase.FINAL_ANSWERING):
        updated = _advance_final_round(updated)
    return Departure(state=updated, host_changed=host_changed)


# ------------------------
# Internal helpers
# ------------------------


def _require_member(state: GameState, actor_id: str) -> PlayerStanding:
    player = state.player(actor_id) if actor_id else None
    if player is None:
        raise TriviaGameError("You are not in this game.", ErrorKind.UNAUTHORIZED)
    return player


def _require_answering_actor(
    state: GameState, actor_id: str, action_label: str
) -> PlayerStanding:
    actor = _require_member(state, actor_id)
    if state.phase != GamePhase.ANSWERING:
        raise TriviaGameError(
            f"Cannot {action_label} right now.", ErrorKind.INVALID_PHASE
        )
    if state.turn_player_id != actor_id:
        raise TriviaGameError("It's not your turn to answer.", ErrorKind.UNAUTHORIZED)
    if not state.selected_clue_id:
        raise TriviaGameError("No clue selected.", ErrorKind.INVALID_PHASE)
    return actor


def _resolve_clue(state: GameState, clue_id: str, result: LastResult) -> GameState:
    revealed = state.revealed_clue_ids
    if clue_id not in revealed:
        revealed = revealed + (clue_id,)
    resolved = replace(
        state,
        revealed_clue_ids=revealed,
        selected_clue_id=None,
        last_result=result,
    )
    if resolved.board_complete:
        return replace(resolved, phase=GamePhase.FINAL_WAGER, final_wagers=())
    return replace(resolved, phase=GamePhase.REVEALING)


def _apply_score_deltas(state: GameState, deltas: dict[str, int]) -> GameState:
    if not deltas:
        return state
    return replace(
        state,
        players=tuple(
            replace(player, score=player.score + deltas.get(player.player_id, 0))
            for player in state.players
        ),
    )


def _advance_final_round(state: GameState) -> GameState:
    current_ids = set(state.player_ids)
    if state.phase == GamePhase.FINAL_WAGER:
        wagered = {wager.player_id for wager in state.final_wagers}
        if current_ids and current_ids <= wagered:
            return replace(state, phase=GamePhase.FINAL_ANSWERING)
        return state
    if state.phase == GamePhase.FINAL_ANSWERING:
        if state.final_wagers and all(wager.validated for wager in state.final_wagers):
            return replace(state, phase=GamePhase.FINAL_REVEALING)
    return state
