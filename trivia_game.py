from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Callable

import game_rules
from ai_helpers import is_obvious_match
from game_rules import (
    FINAL_PHASES,
    MIN_WAGER_CEILING,
    ErrorKind,
    FinalWager,
    GamePhase,
    GameState,
    LastResult,
    PlayerStanding,
    RoomStatus,
    Transition,
    TriviaGameError,
)
from multiplayer_service_core import MultiplayerServiceCore
from trivia_board import (
    BOARD_CATEGORY_COUNT,
    BOARD_CLUES_PER_CATEGORY,
    CLUE_VALUES,
    Board,
    BoardValidationError,
    board_from_model_text,
    normalize_board_candidate,
    validate_generated_board,
)

logger = logging.getLogger(__name__)


class TriviaGameService(MultiplayerServiceCore):
    GAME_NAME = "Trivia Board"
    MAX_PLAYERS = 8
    MIN_PLAYERS = 1
    STALE_ROOM_SECONDS = 12 * 60 * 60
    DEFAULT_PRESENCE_TIMEOUT_SECONDS = 60
    MAX_POLL_SECONDS = 25
    POLL_INTERVAL_SECONDS = 0.5
    ROOM_TABLE = "tg_rooms"
    PLAYER_TABLE = "tg_players"
    ERROR_CLASS = TriviaGameError

    def __init__(
        self,
        *,
        db_path: str,
        ai_worker=None,
        presence_timeout_seconds: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(db_path=db_path)
        self.ai_worker = ai_worker
        if presence_timeout_seconds is None:
            presence_timeout_seconds = self.DEFAULT_PRESENCE_TIMEOUT_SECONDS
        self.presence_timeout_seconds = max(0, int(presence_timeout_seconds))
        self._sleep = sleep
        self.ensure_schema()

    # ------------------------
    # Public API helpers
    # ------------------------

    def bootstrap(self) -> dict:
        return {
            "game_name": self.GAME_NAME,
            "max_players": self.MAX_PLAYERS,
            "min_players": self.MIN_PLAYERS,
            "categories": BOARD_CATEGORY_COUNT,
            "clues_per_category": BOARD_CLUES_PER_CATEGORY,
            "clue_values": list(CLUE_VALUES),
            "min_wager_ceiling": MIN_WAGER_CEILING,
            "max_poll_seconds": self.MAX_POLL_SECONDS,
            "presence_timeout_seconds": self.presence_timeout_seconds,
            "board_generation_enabled": bool(
                getattr(self.ai_worker, "board_generation_enabled", False)
            ),
            "narration_enabled": bool(
                getattr(self.ai_worker, "narration_enabled", False)
            ),
        }

    def create_room(self, player_name: str) -> dict:
        def _insert_room(
            conn: sqlite3.Connection, code: str, host_player_id: str, now_ts: int
        ) -> None:
            conn.execute(
                """
                INSERT INTO tg_rooms
                (code, host_player_id, status, revision, created_at, updated_at)
                VALUES (?, ?, 'lobby', 1, ?, ?)
                """,
                (code, host_player_id, now_ts, now_ts),
            )

        code, player_id, display_name = self._create_room_identity(
            player_name=player_name,
            insert_room=_insert_room,
        )
        logger.info("Trivia room %s created by %s.", code, display_name)

        return {
            "room_code": code,
            "player_id": player_id,
            "display_name": display_name,
            "is_host": True,
            "max_players": self.MAX_PLAYERS,
            "game_name": self.GAME_NAME,
        }

    def join_room(
        self, room_code: str, player_name: str, player_id: str | None = None
    ) -> dict:
        def _check_joinable(conn: sqlite3.Connection, room: sqlite3.Row) -> None:
            if room["status"] == RoomStatus.FINISHED.value:
                raise TriviaGameError(
                    "This game has already finished.", ErrorKind.INVALID_PHASE
                )
            game = conn.execute(
                "SELECT phase FROM tg_games WHERE room_code = ?",
                (room["code"],),
            ).fetchone()
            if game and GamePhase(game["phase"]) in FINAL_PHASES:
                raise TriviaGameError(
                    "This game is in the final round. Try another room.",
                    ErrorKind.INVALID_PHASE,
                )

        code, joined_player_id, display_name, rejoined = self._join_room_identity(
            room_code=room_code,
            player_name=player_name,
            player_id=player_id,
            check_joinable=_check_joinable,
        )
        if not rejoined:
            logger.info("Trivia room %s joined by %s.", code, display_name)

        with self._connect() as conn:
            room = self._require_room(conn, code)

        return {
            "room_code": code,
            "player_id": joined_player_id,
            "display_name": display_name,
            "is_host": room["host_player_id"] == joined_player_id,
            "rejoined": rejoined,
            "max_players": self.MAX_PLAYERS,
            "game_name": self.GAME_NAME,
        }

    def get_state(self, room_code: str, player_id: str) -> dict:
        self._cleanup_stale_rooms()
        code, player_id = self._require_identity(room_code, player_id)
        now_ts = int(time.time())

        try:
            with self._connect() as conn:
                self._require_room(conn, code)
                touched = conn.execute(
                    """
                    UPDATE tg_players
                    SET last_seen_at = ?
                    WHERE room_code = ? AND player_id = ?
                    """,
                    (now_ts, code, player_id),
                )
                if touched.rowcount == 0:
                    raise TriviaGameError(
                        "You are not in this room.", ErrorKind.UNAUTHORIZED
                    )

                self._sweep_absent_players(conn, code, player_id, now_ts)

                room = self._get_room(conn, code)
                if room:
                    players = self._list_players(conn, code)
                    state = self._load_game_state(conn, room, players)
        except sqlite3.Error as exc:
            raise self._persistence_error("read room state", code, exc) from exc

        if not room:
            raise TriviaGameError("Room not found.", ErrorKind.NOT_FOUND)
        return self._serialize_room(room, players, state, player_id)

    def wait_for_update(
        self,
        room_code: str,
        player_id: str,
        since_revision: int = 0,
        timeout_seconds: float = MAX_POLL_SECONDS,
    ) -> dict:
        """Long-poll until the room revision moves past ``since_revision``."""
        code, player_id = self._require_identity(room_code, player_id)
        try:
            since = int(since_revision or 0)
        except (TypeError, ValueError):
            since = 0
        try:
            timeout = float(timeout_seconds)
        except (TypeError, ValueError):
            timeout = float(self.MAX_POLL_SECONDS)
        timeout = min(max(timeout, 0.0), float(self.MAX_POLL_SECONDS))

        deadline = time.monotonic() + timeout
        while True:
            with self._connect() as conn:
                room = self._require_room(conn, code)
            if int(room["revision"]) > since or time.monotonic() >= deadline:
                break
            self._sleep(self.POLL_INTERVAL_SECONDS)

        return self.get_state(code, player_id)

    def start_game(
        self,
        room_code: str,
        player_id: str,
        board=None,
        chunks: list[str] | None = None,
        difficulty: str | None = None,
        model: str | None = None,
    ) -> dict:
        code, player_id = self._require_identity(room_code, player_id)

        with self._connect() as conn:
            self._require_startable(conn, code, player_id)

        if board is not None:
            parsed_board = self._parse_board_payload(board)
        elif chunks:
            if self.ai_worker is None:
                raise TriviaGameError(
                    "Board generation is not configured.", ErrorKind.PERSISTENCE
                )
            parsed_board = self.ai_worker.generate_board(
                list(chunks), difficulty=difficulty, model=model
            )
        else:
            raise TriviaGameError(
                "Provide a board or source text to start the game.",
                ErrorKind.INVALID_INPUT,
            )

        now_ts = int(time.time())
        try:
            with self._connect() as conn:
                room, players = self._require_startable(conn, code, player_id)
                state = game_rules.new_game(
                    board=parsed_board,
                    players=[self._standing(row) for row in players],
                    host_player_id=room["host_player_id"],
                )
                conn.execute(
                    """
                    INSERT OR REPLACE INTO tg_games
                    (room_code, board_json, phase, turn_player_id, revealed_ids,
                     selected_clue_id, last_result, final_wagers, version, updated_at)
                    VALUES (?, ?, ?, ?, '[]', NULL, NULL, '[]', 0, ?)
                    """,
                    (
                        code,
                        parsed_board.to_json(),
                        state.phase.value,
                        state.turn_player_id,
                        now_ts,
                    ),
                )
                conn.execute(
                    "UPDATE tg_players SET score = 0 WHERE room_code = ?", (code,)
                )
                conn.execute(
                    "UPDATE tg_rooms SET status = 'playing' WHERE code = ?", (code,)
                )
                self._touch_room(conn, code, now_ts)
        except sqlite3.Error as exc:
            raise self._persistence_error("start game", code, exc) from exc

        logger.info(
            "Trivia room %s started with %s players; %s has the first turn.",
            code,
            len(players),
            state.turn_player_id,
        )
        return self.get_state(code, player_id)

    def select_clue(self, room_code: str, player_id: str, clue_id: str) -> dict:
        clue_id = str(clue_id or "").strip()
        if not clue_id:
            raise TriviaGameError("clue_id is required.", ErrorKind.INVALID_INPUT)
        return self._apply_transition(
            room_code,
            player_id,
            "select_clue",
            lambda state, actor: game_rules.select_clue(state, actor, clue_id),
        )

    def submit_answer(
        self,
        room_code: str,
        player_id: str,
        answer: str,
        is_correct: bool | None = None,
    ) -> dict:
        answer = str(answer or "").strip()
        judged_clue_id = None
        if is_correct is None:
            code, actor_id = self._require_identity(room_code, player_id)
            state = self._snapshot(code)
            game_rules.submit_answer(state, actor_id, answer, False)
            clue = state.board.find_clue(state.selected_clue_id or "")
            judged_clue_id = clue.id
            is_correct = self._judge(clue.question, clue.answer, answer)

        def _rule(state: GameState, actor: str) -> Transition:
            if judged_clue_id and state.selected_clue_id != judged_clue_id:
                raise TriviaGameError(
                    "The clue changed while your answer was judged.",
                    ErrorKind.CONFLICT,
                )
            return game_rules.submit_answer(state, actor, answer, bool(is_correct))

        return self._apply_transition(room_code, player_id, "submit_answer", _rule)

    def skip_clue(self, room_code: str, player_id: str) -> dict:
        return self._apply_transition(
            room_code, player_id, "skip_clue", game_rules.skip_clue
        )

    def continue_game(self, room_code: str, player_id: str) -> dict:
        return self._apply_transition(
            room_code, player_id, "continue_game", game_rules.continue_game
        )

    def submit_final_wager(self, room_code: str, player_id: str, wager) -> dict:
        return self._apply_transition(
            room_code,
            player_id,
            "submit_final_wager",
            lambda state, actor: game_rules.submit_final_wager(state, actor, wager),
        )

    def submit_final_answer(
        self,
        room_code: str,
        player_id: str,
        answer: str,
        is_correct: bool | None = None,
    ) -> dict:
        answer = str(answer or "").strip()
        if is_correct is None:
            code, actor_id = self._require_identity(room_code, player_id)
            state = self._snapshot(code)
            game_rules.submit_final_answer(state, actor_id, answer, False)
            final = state.board.final
            if final is None:
                is_correct = False
            else:
                is_correct = self._judge(final.question, final.answer, answer)

        return self._apply_transition(
            room_code,
            player_id,
            "submit_final_answer",
            lambda state, actor: game_rules.submit_final_answer(
                state, actor, answer, bool(is_correct)
            ),
        )

    def reveal_final_results(self, room_code: str, player_id: str) -> dict:
        return self._apply_transition(
            room_code,
            player_id,
            "reveal_final_results",
            game_rules.reveal_final_results,
        )

    def leave_room(self, room_code: str, player_id: str) -> dict:
        code, player_id = self._require_identity(room_code, player_id)
        try:
            with self._connect() as conn:
                outcome = self._remove_player(conn, code, player_id)
        except sqlite3.Error as exc:
            raise self._persistence_error("leave room", code, exc) from exc

        return {"ok": True, **outcome}

    def cleanup_finished_game(self, room_code: str) -> dict:
        code = self._normalize_code(room_code)
        if not code:
            raise TriviaGameError("Room code is required.", ErrorKind.INVALID_INPUT)

        try:
            with self._connect() as conn:
                room = self._get_room(conn, code)
                if not room:
                    return {"ok": True, "deleted": False}
                if room["status"] != RoomStatus.FINISHED.value:
                    raise TriviaGameError(
                        "Only finished games can be cleaned up.",
                        ErrorKind.INVALID_PHASE,
                    )
                conn.execute("DELETE FROM tg_rooms WHERE code = ?", (code,))
        except sqlite3.Error as exc:
            raise self._persistence_error("clean up room", code, exc) from exc

        logger.info("Trivia room %s cleaned up after finishing.", code)
        return {"ok": True, "deleted": True}

    # ------------------------
    # Internal helpers
    # ------------------------

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tg_rooms (
                    code TEXT PRIMARY KEY,
                    host_player_id TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('lobby', 'playing', 'finished')),
                    revision INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tg_players (
                    room_code TEXT NOT NULL,
                    player_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    seat INTEGER NOT NULL,
                    joined_at INTEGER NOT NULL,
                    score INTEGER NOT NULL DEFAULT 0,
                    last_seen_at INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (room_code, player_id),
                    UNIQUE (room_code, display_name),
                    FOREIGN KEY (room_code) REFERENCES tg_rooms(code) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tg_games (
                    room_code TEXT PRIMARY KEY,
                    board_json TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    turn_player_id TEXT,
                    revealed_ids TEXT NOT NULL DEFAULT '[]',
                    selected_clue_id TEXT,
                    last_result TEXT,
                    final_wagers TEXT NOT NULL DEFAULT '[]',
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL,
                    FOREIGN KEY (room_code) REFERENCES tg_rooms(code) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tg_players_room_seat
                ON tg_players(room_code, seat)
                """
            )

    def _apply_transition(
        self,
        room_code: str,
        player_id: str,
        action: str,
        rule: Callable[[GameState, str], Transition],
    ) -> dict:
        code, player_id = self._require_identity(room_code, player_id)
        try:
            with self._connect() as conn:
                room = self._require_room(conn, code)
                state = self._require_game_state(conn, room)
                transition = rule(state, player_id)
                self._write_game(conn, code, state, transition)
        except sqlite3.Error as exc:
            raise self._persistence_error(action, code, exc) from exc

        next_state = transition.state
        if next_state.phase != state.phase:
            logger.info(
                "Trivia room %s %s by %s: %s -> %s.",
                code,
                action,
                player_id,
                state.phase.value,
                next_state.phase.value,
            )
        else:
            logger.info("Trivia room %s %s by %s.", code, action, player_id)
        return self.get_state(code, player_id)

    def _write_game(
        self,
        conn: sqlite3.Connection,
        code: str,
        current: GameState,
        transition: Transition,
    ) -> None:
        state = transition.state
        now_ts = int(time.time())
        updated = conn.execute(
            """
            UPDATE tg_games
            SET phase = ?,
                turn_player_id = ?,
                revealed_ids = ?,
                selected_clue_id = ?,
                last_result = ?,
                final_wagers = ?,
                version = version + 1,
                updated_at = ?
            WHERE room_code = ? AND version = ?
            """,
            (
                state.phase.value,
                state.turn_player_id,
                json.dumps(list(state.revealed_clue_ids)),
                state.selected_clue_id,
                json.dumps(state.last_result.to_dict()) if state.last_result else None,
                json.dumps([wager.to_dict() for wager in state.final_wagers]),
                now_ts,
                code,
                current.version,
            ),
        )
        if updated.rowcount != 1:
            raise TriviaGameError(
                "The game changed before your action was saved. Refresh and try again.",
                ErrorKind.CONFLICT,
            )

        for delta_player_id, delta in transition.score_deltas.items():
            conn.execute(
                """
                UPDATE tg_players
                SET score = score + ?
                WHERE room_code = ? AND player_id = ?
                """,
                (int(delta), code, delta_player_id),
            )

        conn.execute(
            """
            UPDATE tg_rooms
            SET status = ?, host_player_id = ?
            WHERE code = ?
            """,
            (state.room_status.value, state.host_player_id, code),
        )
        self._touch_room(conn, code, now_ts)

    def _remove_player(
        self, conn: sqlite3.Connection, code: str, player_id: str
    ) -> dict:
        room = self._get_room(conn, code)
        if not room:
            return {"removed": False, "ended": True, "host_player_id": ""}

        players = self._list_players(conn, code)
        if player_id not in {row["player_id"] for row in players}:
            return {
                "removed": False,
                "ended": False,
                "host_player_id": room["host_player_id"],
            }

        state = self._load_game_state(conn, room, players)
        if state is None:
            remaining = [row for row in players if row["player_id"] != player_id]
            if not remaining or room["host_player_id"] == player_id:
                conn.execute("DELETE FROM tg_rooms WHERE code = ?", (code,))
                logger.info("Trivia room %s closed as %s left the lobby.", code, player_id)
                return {"removed": True, "ended": True, "host_player_id": ""}
            host_player_id = room["host_player_id"]
        else:
            departure = game_rules.remove_player(state, player_id)
            if departure.room_deleted:
                conn.execute("DELETE FROM tg_rooms WHERE code = ?", (code,))
                logger.info("Trivia room %s closed as %s left.", code, player_id)
                return {"removed": True, "ended": True, "host_player_id": ""}
            self._write_game(conn, code, state, Transition(state=departure.state))
            host_player_id = departure.state.host_player_id
            if departure.host_changed:
                logger.info(
                    "Trivia room %s host moved from %s to %s.",
                    code,
                    player_id,
                    host_player_id,
                )

        conn.execute(
            "DELETE FROM tg_players WHERE room_code = ? AND player_id = ?",
            (code, player_id),
        )
        self._reseat_players(conn, code)
        self._touch_room(conn, code)
        logger.info("Trivia room %s: %s left.", code, player_id)
        return {"removed": True, "ended": False, "host_player_id": host_player_id}

    def _sweep_absent_players(
        self, conn: sqlite3.Connection, code: str, viewer_id: str, now_ts: int
    ) -> None:
        if self.presence_timeout_seconds <= 0:
            return
        cutoff_ts = now_ts - self.presence_timeout_seconds
        absent = [
            row["player_id"]
            for row in self._list_players(conn, code)
            if row["player_id"] != viewer_id and int(row["last_seen_at"]) < cutoff_ts
        ]
        for absent_player_id in absent:
            try:
                outcome = self._remove_player(conn, code, absent_player_id)
            except TriviaGameError as exc:
                if exc.kind != ErrorKind.CONFLICT:
                    raise
                # Another writer moved the game on; the next read sweeps again.
                logger.info(
                    "Trivia room %s presence sweep deferred: %s", code, exc
                )
                return
            logger.info(
                "Trivia room %s removed %s after %ss without a heartbeat.",
                code,
                absent_player_id,
                self.presence_timeout_seconds,
            )
            if outcome["ended"]:
                return

    def _require_startable(
        self, conn: sqlite3.Connection, code: str, player_id: str
    ) -> tuple[sqlite3.Row, list[sqlite3.Row]]:
        room = self._require_room(conn, code)
        players = self._list_players(conn, code)
        if player_id not in {row["player_id"] for row in players}:
            raise TriviaGameError("You are not in this room.", ErrorKind.UNAUTHORIZED)
        if room["host_player_id"] != player_id:
            raise TriviaGameError(
                "Only the host can start the game.", ErrorKind.UNAUTHORIZED
            )
        if room["status"] != RoomStatus.LOBBY.value:
            raise TriviaGameError(
                "The game has already started.", ErrorKind.INVALID_PHASE
            )
        if len(players) < self.MIN_PLAYERS:
            raise TriviaGameError(
                f"Need at least {self.MIN_PLAYERS} player to start.",
                ErrorKind.INVALID_PHASE,
            )
        return room, players

    def _parse_board_payload(self, board) -> Board:
        try:
            if isinstance(board, str):
                return board_from_model_text(board)
            return validate_generated_board(normalize_board_candidate(board))
        except BoardValidationError as exc:
            raise TriviaGameError(
                "Board validation failed.",
                ErrorKind.INVALID_INPUT,
                details=exc.details,
            ) from exc

    def _judge(self, question: str, correct_answer: str, player_answer: str) -> bool:
        if self.ai_worker is None:
            return is_obvious_match(correct_answer, player_answer)
        is_correct, _explanation = self.ai_worker.validate_answer(
            question, correct_answer, player_answer
        )
        return bool(is_correct)

    def _snapshot(self, code: str) -> GameState:
        with self._connect() as conn:
            room = self._require_room(conn, code)
            return self._require_game_state(conn, room)

    def _require_game_state(
        self, conn: sqlite3.Connection, room: sqlite3.Row
    ) -> GameState:
        state = self._load_game_state(conn, room)
        if state is None:
            raise TriviaGameError("Game not found.", ErrorKind.NOT_FOUND)
        return state

    def _load_game_state(
        self,
        conn: sqlite3.Connection,
        room: sqlite3.Row,
        players: list[sqlite3.Row] | None = None,
    ) -> GameState | None:
        game = conn.execute(
            "SELECT * FROM tg_games WHERE room_code = ?",
            (room["code"],),
        ).fetchone()
        if not game:
            return None
        if players is None:
            players = self._list_players(conn, room["code"])

        last_result = self._json_loads_dict(game["last_result"])
        return GameState(
            room_status=RoomStatus(room["status"]),
            host_player_id=room["host_player_id"],
            board=Board.from_json(game["board_json"]),
            players=tuple(self._standing(row) for row in players),
            phase=GamePhase(game["phase"]),
            turn_player_id=game["turn_player_id"] or None,
            revealed_clue_ids=tuple(
                str(item) for item in self._json_loads_list(game["revealed_ids"])
            ),
            selected_clue_id=game["selected_clue_id"] or None,
            last_result=LastResult.from_dict(last_result) if last_result else None,
            final_wagers=tuple(
                FinalWager.from_dict(item)
                for item in self._json_loads_list(game["final_wagers"])
                if isinstance(item, dict)
            ),
            version=int(game["version"]),
        )

    @staticmethod
    def _standing(row: sqlite3.Row) -> PlayerStanding:
        return PlayerStanding(
            player_id=row["player_id"],
            display_name=row["display_name"],
            score=int(row["score"]),
        )

    def _persistence_error(
        self, action: str, code: str, exc: sqlite3.Error
    ) -> TriviaGameError:
        logger.error("Trivia room %s could not %s: %s", code, action, exc)
        return TriviaGameError(
            "Unable to save the game right now.", ErrorKind.PERSISTENCE
        )

    # ------------------------
    # Snapshots
    # ------------------------

    def _serialize_room(
        self,
        room: sqlite3.Row,
        players: list[sqlite3.Row],
        state: GameState | None,
        viewer_id: str,
    ) -> dict:
        host_player_id = room["host_player_id"]
        turn_player_id = state.turn_player_id if state else None
        player_rows = [
            {
                "player_id": row["player_id"],
                "display_name": row["display_name"],
                "seat": int(row["seat"]),
                "score": int(row["score"]),
                "is_host": row["player_id"] == host_player_id,
                "is_turn": row["player_id"] == turn_player_id,
                "is_you": row["player_id"] == viewer_id,
            }
            for row in players
        ]
        viewer = next(item for item in player_rows if item["is_you"])

        return {
            "game_name": self.GAME_NAME,
            "room": {
                "code": room["code"],
                "status": room["status"],
                "host_player_id": host_player_id,
                "max_players": self.MAX_PLAYERS,
                "player_count": len(player_rows),
            },
            "viewer": viewer,
            "players": player_rows,
            "game": self._serialize_game(state, viewer) if state else None,
            "can": self._capabilities(room, state, viewer),
            "revision": int(room["revision"]),
        }

    def _serialize_game(self, state: GameState, viewer: dict) -> dict:
        revealed = set(state.revealed_clue_ids)
        categories = []
        for category in state.board.categories:
            clues = []
            for clue in category.clues:
                is_revealed = clue.id in revealed
                item = {
                    "id": clue.id,
                    "value": clue.value,
                    "revealed": is_revealed,
                }
                if is_revealed or clue.id == state.selected_clue_id:
                    item["question"] = clue.question
                if is_revealed:
                    item["answer"] = clue.answer
                    item["source_snippet"] = clue.source_snippet
                clues.append(item)
            categories.append(
                {"id": category.id, "title": category.title, "clues": clues}
            )

        selected_clue = None
        if state.selected_clue_id:
            clue = state.board.find_clue(state.selected_clue_id)
            if clue is not None:
                selected_clue = {
                    "id": clue.id,
                    "category_id": clue.category_id,
                    "category_title": state.board.category_title(clue.category_id),
                    "value": clue.value,
                    "question": clue.question,
                }

        last_result = None
        if state.last_result is not None:
            last_result = state.last_result.to_dict()
            resolved = state.board.find_clue(state.last_result.clue_id)
            last_result["correct_answer"] = resolved.answer if resolved else ""
            last_result["question"] = resolved.question if resolved else ""

        return {
            "phase": state.phase.value,
            "turn_player_id": state.turn_player_id,
            "version": state.version,
            "board": {"categories": categories},
            "revealed_clue_ids": list(state.revealed_clue_ids),
            "revealed_count": len(state.revealed_clue_ids),
            "total_clues": state.board.total_clues,
            "selected_clue_id": state.selected_clue_id,
            "selected_clue": selected_clue,
            "last_result": last_result,
            "final": self._serialize_final(state, viewer),
        }

    @staticmethod
    def _serialize_final(state: GameState, viewer: dict) -> dict | None:
        final = state.board.final
        if final is None or state.phase not in FINAL_PHASES:
            return None

        show_question = state.phase != GamePhase.FINAL_WAGER
        show_results = state.phase in (GamePhase.FINAL_REVEALING, GamePhase.FINISHED)
        wagers = []
        for wager in state.final_wagers:
            mine = wager.player_id == viewer["player_id"]
            visible = mine or show_results
            wagers.append(
                {
                    "player_id": wager.player_id,
                    "has_answered": wager.validated,
                    "wager": wager.wager if visible else None,
                    "answer": wager.answer if visible else None,
                    "is_correct": wager.is_correct if show_results else None,
                }
            )

        return {
            "category": final.category,
            "question": final.question if show_question else None,
            "answer": final.answer if show_results else None,
            "source_snippet": final.source_snippet if show_results else None,
            "wagers": wagers,
            "max_wager": game_rules.max_wager(viewer["score"]),
        }

    @staticmethod
    def _capabilities(
        room: sqlite3.Row, state: GameState | None, viewer: dict
    ) -> dict:
        viewer_id = viewer["player_id"]
        phase = state.phase if state else None
        my_turn = bool(state and state.turn_player_id == viewer_id)
        my_wager = state.wager_for(viewer_id) if state else None
        return {
            "start": viewer["is_host"] and room["status"] == RoomStatus.LOBBY.value,
            "select": phase == GamePhase.SELECTING and my_turn,
            "answer": phase == GamePhase.ANSWERING and my_turn,
            "skip": phase == GamePhase.ANSWERING and my_turn,
            "continue": phase == GamePhase.REVEALING and my_turn,
            "wager": phase == GamePhase.FINAL_WAGER and my_wager is None,
            "final_answer": phase == GamePhase.FINAL_ANSWERING
            and my_wager is not None
            and not my_wager.validated,
            "reveal": phase == GamePhase.FINAL_REVEALING,
            "cleanup": room["status"] == RoomStatus.FINISHED.value,
        }
