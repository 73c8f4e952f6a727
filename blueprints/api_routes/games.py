from flask import request

from ai_helpers import AIGenerationError
from api_errors import build_service_responder, error_response
from source_text import chunks_from_text

TRUE_VALUES = ("true", "1", "yes", "y", "t")
FALSE_VALUES = ("false", "0", "no", "n", "f")


def _optional_bool(raw_value):
    if raw_value is None or isinstance(raw_value, bool):
        return raw_value
    text = str(raw_value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def register_game_api_routes(bp, context):
    trivia_service = context["trivia_service"]
    services = context["services"]
    ai_rate_limit = context["ai_rate_limit_per_minute"]

    def _track_error(exc: Exception, code: str) -> None:
        if code == "conflict":
            services.increment_metric("transition_conflicts")
        if isinstance(exc, AIGenerationError):
            services.increment_metric("board_generation_failed")
            services.set_runtime_status("ai_last_error", str(exc))

    _trivia_response = build_service_responder(
        log_label="Trivia",
        unavailable_code="trivia_unavailable",
        unavailable_message="Trivia is temporarily unavailable.",
        error_code="trivia_error",
        public_codes=("board_validation_failed",),
        on_error=_track_error,
    )

    def _json_body() -> dict:
        return request.get_json(silent=True) or {}

    def _player_id(data: dict) -> str:
        return str(data.get("player_id") or "").strip()

    def _rate_limited_response():
        allowed, retry_after = services.consume_rate_limit(
            key=f"board:{services.get_request_client_ip()}",
            limit=ai_rate_limit,
            window_seconds=60,
        )
        if allowed:
            return None
        return error_response(
            status=429,
            code="rate_limited",
            message="Too many board requests. Try again shortly.",
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    @bp.route("/api/trivia/bootstrap", methods=["GET"], endpoint="api_trivia_bootstrap")
    def api_trivia_bootstrap():
        return _trivia_response(trivia_service.bootstrap)

    @bp.route("/api/trivia/rooms", methods=["POST"], endpoint="api_trivia_create_room")
    def api_trivia_create_room():
        data = _json_body()
        player_name = str(data.get("player_name") or "").strip()

        def _create():
            payload = trivia_service.create_room(player_name)
            services.increment_metric("rooms_created")
            payload["join_url"] = services.build_public_url(
                f"/?room={payload['room_code']}"
            )
            return payload

        return _trivia_response(_create)

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/join",
        methods=["POST"],
        endpoint="api_trivia_join_room",
    )
    def api_trivia_join_room(room_code: str):
        data = _json_body()
        player_name = str(data.get("player_name") or "").strip()
        player_id = _player_id(data)
        return _trivia_response(
            lambda: trivia_service.join_room(
                room_code=room_code,
                player_name=player_name,
                player_id=player_id or None,
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>",
        methods=["GET"],
        endpoint="api_trivia_room_state",
    )
    def api_trivia_room_state(room_code: str):
        player_id = (request.args.get("player_id") or "").strip()
        return _trivia_response(
            lambda: trivia_service.get_state(room_code=room_code, player_id=player_id)
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/poll",
        methods=["GET"],
        endpoint="api_trivia_poll_room",
    )
    def api_trivia_poll_room(room_code: str):
        player_id = (request.args.get("player_id") or "").strip()
        since = request.args.get("since", default=0, type=int)
        timeout = request.args.get(
            "timeout", default=trivia_service.MAX_POLL_SECONDS, type=float
        )
        return _trivia_response(
            lambda: trivia_service.wait_for_update(
                room_code=room_code,
                player_id=player_id,
                since_revision=since,
                timeout_seconds=timeout,
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/start",
        methods=["POST"],
        endpoint="api_trivia_start_game",
    )
    def api_trivia_start_game(room_code: str):
        data = _json_body()
        player_id = _player_id(data)
        board = data.get("board")
        chunks = data.get("chunks")
        source_text = str(data.get("text") or "").strip()
        difficulty = str(data.get("difficulty") or "").strip() or None
        model = str(data.get("model") or "").strip() or None

        if board is None and (chunks or source_text):
            limited = _rate_limited_response()
            if limited is not None:
                return limited

        def _start():
            start_chunks = chunks
            if board is None and not start_chunks and source_text:
                start_chunks = chunks_from_text(source_text)
            if start_chunks is not None and not isinstance(start_chunks, list):
                start_chunks = [str(start_chunks)]
            payload = trivia_service.start_game(
                room_code=room_code,
                player_id=player_id,
                board=board,
                chunks=start_chunks,
                difficulty=difficulty,
                model=model,
            )
            services.increment_metric("games_started")
            if board is None:
                services.increment_metric("boards_generated")
            return payload

        return _trivia_response(_start)

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/select",
        methods=["POST"],
        endpoint="api_trivia_select_clue",
    )
    def api_trivia_select_clue(room_code: str):
        data = _json_body()
        player_id = _player_id(data)
        clue_id = str(data.get("clue_id") or "").strip()
        return _trivia_response(
            lambda: trivia_service.select_clue(
                room_code=room_code,
                player_id=player_id,
                clue_id=clue_id,
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/answer",
        methods=["POST"],
        endpoint="api_trivia_submit_answer",
    )
    def api_trivia_submit_answer(room_code: str):
        data = _json_body()
        player_id = _player_id(data)
        answer = str(data.get("answer") or "").strip()
        is_correct = _optional_bool(data.get("is_correct"))

        def _submit():
            payload = trivia_service.submit_answer(
                room_code=room_code,
                player_id=player_id,
                answer=answer,
                is_correct=is_correct,
            )
            if is_correct is None:
                services.increment_metric("answers_judged")
            return payload

        return _trivia_response(_submit)

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/skip",
        methods=["POST"],
        endpoint="api_trivia_skip_clue",
    )
    def api_trivia_skip_clue(room_code: str):
        player_id = _player_id(_json_body())
        return _trivia_response(
            lambda: trivia_service.skip_clue(room_code=room_code, player_id=player_id)
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/continue",
        methods=["POST"],
        endpoint="api_trivia_continue_game",
    )
    def api_trivia_continue_game(room_code: str):
        player_id = _player_id(_json_body())
        return _trivia_response(
            lambda: trivia_service.continue_game(
                room_code=room_code, player_id=player_id
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/final/wager",
        methods=["POST"],
        endpoint="api_trivia_final_wager",
    )
    def api_trivia_final_wager(room_code: str):
        data = _json_body()
        player_id = _player_id(data)
        wager = data.get("wager")
        return _trivia_response(
            lambda: trivia_service.submit_final_wager(
                room_code=room_code,
                player_id=player_id,
                wager=wager,
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/final/answer",
        methods=["POST"],
        endpoint="api_trivia_final_answer",
    )
    def api_trivia_final_answer(room_code: str):
        data = _json_body()
        player_id = _player_id(data)
        answer = str(data.get("answer") or "").strip()
        is_correct = _optional_bool(data.get("is_correct"))

        def _submit():
            payload = trivia_service.submit_final_answer(
                room_code=room_code,
                player_id=player_id,
                answer=answer,
                is_correct=is_correct,
            )
            if is_correct is None:
                services.increment_metric("answers_judged")
            return payload

        return _trivia_response(_submit)

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/final/reveal",
        methods=["POST"],
        endpoint="api_trivia_final_reveal",
    )
    def api_trivia_final_reveal(room_code: str):
        player_id = _player_id(_json_body())
        return _trivia_response(
            lambda: trivia_service.reveal_final_results(
                room_code=room_code, player_id=player_id
            )
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/leave",
        methods=["POST"],
        endpoint="api_trivia_leave_room",
    )
    def api_trivia_leave_room(room_code: str):
        player_id = _player_id(_json_body())
        return _trivia_response(
            lambda: trivia_service.leave_room(room_code=room_code, player_id=player_id)
        )

    @bp.route(
        "/api/trivia/rooms/<string:room_code>/cleanup",
        methods=["POST"],
        endpoint="api_trivia_cleanup_room",
    )
    def api_trivia_cleanup_room(room_code: str):
        return _trivia_response(
            lambda: trivia_service.cleanup_finished_game(room_code=room_code)
        )
