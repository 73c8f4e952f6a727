from __future__ import annotations

import json
import random
import re
import secrets
import sqlite3
import time
from typing import Callable

from game_rules import ErrorKind


class MultiplayerServiceCore:
    """Shared room/player plumbing for multiplayer game services."""

    GAME_NAME = ""
    MAX_PLAYERS = 0
    STALE_ROOM_SECONDS = 12 * 60 * 60
    CREATE_ROOM_CODE_ATTEMPTS = 24
    ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    ROOM_CODE_LENGTH = 6
    MAX_NAME_LENGTH = 28

    ROOM_TABLE = ""
    PLAYER_TABLE = ""
    ERROR_CLASS = RuntimeError

    def __init__(self, *, db_path: str):
        self.db_path = str(db_path)

    def _raise_error(
        self, message: str, kind: ErrorKind = ErrorKind.INVALID_INPUT
    ) -> None:
        raise self.ERROR_CLASS(message, kind)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _cleanup_stale_rooms(self) -> None:
        if not self.ROOM_TABLE:
            return
        cutoff_ts = int(time.time()) - self.STALE_ROOM_SECONDS
        with self._connect() as conn:
            conn.execute(
                f"DELETE FROM {self.ROOM_TABLE} WHERE updated_at < ?",
                (cutoff_ts,),
            )

    def _create_room_identity(
        self,
        *,
        player_name: str,
        insert_room: Callable[[sqlite3.Connection, str, str, int], None],
    ) -> tuple[str, str, str]:
        self._cleanup_stale_rooms()
        display_name = self._require_player_name(player_name)
        player_id = self._new_player_id()
        now_ts = int(time.time())
        code = ""

        with self._connect() as conn:
            for _ in range(self.CREATE_ROOM_CODE_ATTEMPTS):
                code = self._new_room_code()
                try:
                    insert_room(conn, code, player_id, now_ts)
                    break
                except sqlite3.IntegrityError:
                    continue
            else:
                self._raise_error(
                    "Unable to create a room code right now.", ErrorKind.PERSISTENCE
                )

            conn.execute(
                f"""
                INSERT INTO {self.PLAYER_TABLE}
                (room_code, player_id, display_name, seat, joined_at, score, last_seen_at)
                VALUES (?, ?, ?, 1, ?, 0, ?)
                """,
                (code, player_id, display_name, now_ts, now_ts),
            )

        return code, player_id, display_name

    def _join_room_identity(
        self,
        *,
        room_code: str,
        player_name: str,
        player_id: str | None,
        check_joinable: Callable[[sqlite3.Connection, sqlite3.Row], None],
        room_full_message: str | None = None,
        name_taken_message: str = "That name is already taken in this room.",
    ) -> tuple[str, str, str, bool]:
        """Add a player to a room, or re-attach a known player id.

        Returns ``(code, player_id, display_name, rejoined)``.
        """
        self._cleanup_stale_rooms()

        code = self._normalize_code(room_code)
        if not code:
            self._raise_error("Room code is required.", ErrorKind.INVALID_INPUT)

        display_name = self._require_player_name(player_name)
        requested_player_id = self._normalize_player_id(player_id)
        now_ts = int(time.time())

        full_message = (
            room_full_message or f"Room is full ({self.MAX_PLAYERS} players max)."
        )

        with self._connect() as conn:
            room = self._require_room(conn, code)

            if requested_player_id:
                existing = conn.execute(
                    f"""
                    SELECT room_code, player_id, display_name
                    FROM {self.PLAYER_TABLE}
                    WHERE room_code = ? AND player_id = ?
                    """,
                    (code, requested_player_id),
                ).fetchone()
                if existing:
                    if existing["display_name"] != display_name:
                        if self._name_in_use(
                            conn,
                            code,
                            display_name,
                            exclude_player_id=requested_player_id,
                        ):
                            self._raise_error(name_taken_message, ErrorKind.CONFLICT)
                        conn.execute(
                            f"""
                            UPDATE {self.PLAYER_TABLE}
                            SET display_name = ?
                            WHERE room_code = ? AND player_id = ?
                            """,
                            (display_name, code, requested_player_id),
                        )
                    conn.execute(
                        f"""
                        UPDATE {self.PLAYER_TABLE}
                        SET last_seen_at = ?
                        WHERE room_code = ? AND player_id = ?
                        """,
                        (now_ts, code, requested_player_id),
                    )
                    self._touch_room(conn, code, now_ts)
                    return code, requested_player_id, display_name, True

            check_joinable(conn, room)

            current_players = self._list_players(conn, code)
            if len(current_players) >= self.MAX_PLAYERS:
                self._raise_error(full_message, ErrorKind.CONFLICT)
            if self._name_in_use(conn, code, display_name):
                self._raise_error(name_taken_message, ErrorKind.CONFLICT)

            new_player_id = requested_player_id or self._new_player_id()
            seat = max([int(player["seat"]) for player in current_players] + [0]) + 1
            try:
                conn.execute(
                    f"""
                    INSERT INTO {self.PLAYER_TABLE}
                    (room_code, player_id, display_name, seat, joined_at, score, last_seen_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (code, new_player_id, display_name, seat, now_ts, now_ts),
                )
            except sqlite3.IntegrityError as exc:
                raise self.ERROR_CLASS(name_taken_message, ErrorKind.CONFLICT) from exc

            self._touch_room(conn, code, now_ts)

        return code, new_player_id, display_name, False

    def _list_players(
        self, conn: sqlite3.Connection, room_code: str
    ) -> list[sqlite3.Row]:
        return conn.execute(
            f"""
            SELECT room_code, player_id, display_name, seat, joined_at, score, last_seen_at
            FROM {self.PLAYER_TABLE}
            WHERE room_code = ?
            ORDER BY seat ASC, joined_at ASC
            """,
            (room_code,),
        ).fetchall()

    def _name_in_use(
        self,
        conn: sqlite3.Connection,
        room_code: str,
        display_name: str,
        exclude_player_id: str = "",
    ) -> bool:
        row = conn.execute(
            f"""
            SELECT 1 FROM {self.PLAYER_TABLE}
            WHERE room_code = ? AND lower(display_name) = lower(?) AND player_id != ?
            """,
            (room_code, display_name, exclude_player_id),
        ).fetchone()
        return row is not None

    def _get_room(
        self, conn: sqlite3.Connection, room_code: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT * FROM {self.ROOM_TABLE} WHERE code = ?",
            (room_code,),
        ).fetchone()

    def _require_room(
        self, conn: sqlite3.Connection, room_code: str
    ) -> sqlite3.Row:
        room = self._get_room(conn, room_code)
        if not room:
            self._raise_error("Room not found.", ErrorKind.NOT_FOUND)
        return room

    def _touch_room(
        self, conn: sqlite3.Connection, room_code: str, now_ts: int | None = None
    ) -> None:
        # Every visible change bumps the revision that pollers wait on.
        conn.execute(
            f"""
            UPDATE {self.ROOM_TABLE}
            SET revision = revision + 1, updated_at = ?
            WHERE code = ?
            """,
            (int(now_ts or time.time()), room_code),
        )

    def _reseat_players(self, conn: sqlite3.Connection, room_code: str) -> None:
        for index, player in enumerate(self._list_players(conn, room_code), start=1):
            conn.execute(
                f"""
                UPDATE {self.PLAYER_TABLE}
                SET seat = ?
                WHERE room_code = ? AND player_id = ?
                """,
                (index, room_code, player["player_id"]),
            )

    def _require_identity(self, room_code: str, player_id: str) -> tuple[str, str]:
        code = self._normalize_code(room_code)
        normalized_player_id = self._normalize_player_id(player_id)
        if not code or not normalized_player_id:
            self._raise_error(
                "Room code and player_id are required.", ErrorKind.INVALID_INPUT
            )
        return code, normalized_player_id

    def _require_player_name(self, player_name: str) -> str:
        display_name = self._sanitize_player_name(player_name)
        if not display_name:
            self._raise_error("Player name is required.", ErrorKind.INVALID_INPUT)
        return display_name

    @classmethod
    def _sanitize_player_name(cls, player_name: str) -> str:
        collapsed = re.sub(r"\s+", " ", str(player_name or "")).strip()
        return collapsed[: cls.MAX_NAME_LENGTH]

    @classmethod
    def _normalize_code(cls, code: str) -> str:
        if not code:
            return ""
        return re.sub(r"[^A-Z0-9]", "", str(code).upper())[: cls.ROOM_CODE_LENGTH]

    @staticmethod
    def _normalize_player_id(player_id: str | None) -> str:
        if not player_id:
            return ""
        return re.sub(r"[^A-Za-z0-9_-]", "", str(player_id))[:48]

    @staticmethod
    def _new_player_id() -> str:
        return secrets.token_urlsafe(18).replace("-", "").replace("_", "")[:32]

    @classmethod
    def _new_room_code(cls) -> str:
        return "".join(
            random.choice(cls.ROOM_CODE_ALPHABET) for _ in range(cls.ROOM_CODE_LENGTH)
        )

    @staticmethod
    def _json_loads_list(raw_value: str) -> list:
        try:
            payload = json.loads(raw_value)
            if isinstance(payload, list):
                return payload
        except (json.JSONDecodeError, TypeError):
            pass
        return []

    @staticmethod
    def _json_loads_dict(raw_value: str | None) -> dict | None:
        if not raw_value:
            return None
        try:
            payload = json.loads(raw_value)
        except (json.JSONDecodeError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None
