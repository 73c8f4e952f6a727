from flask import Response, current_app, request

from api_errors import build_service_responder, error_code_for, error_response
from source_text import SourceTextError, extract_pdf_text

NARRATION_CACHE_SECONDS = 24 * 60 * 60


def register_ai_api_routes(bp, context):
    ai_worker = context["ai_worker"]
    services = context["services"]
    ai_rate_limit = context["ai_rate_limit_per_minute"]

    def _track_error(exc: Exception, _code: str) -> None:
        if not isinstance(exc, SourceTextError):
            services.set_runtime_status("ai_last_error", str(exc))

    _ai_response = build_service_responder(
        log_label="Trivia AI",
        unavailable_code="ai_unavailable",
        unavailable_message="AI features are temporarily unavailable.",
        error_code="ai_error",
        public_codes=("board_validation_failed", "ai_unavailable"),
        on_error=_track_error,
    )

    def _rate_limited_response(bucket: str):
        allowed, retry_after = services.consume_rate_limit(
            key=f"{bucket}:{services.get_request_client_ip()}",
            limit=ai_rate_limit,
            window_seconds=60,
        )
        if allowed:
            return None
        return error_response(
            status=429,
            code="rate_limited",
            message="Too many requests. Try again shortly.",
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    @bp.route(
        "/api/trivia/validate-answer",
        methods=["POST"],
        endpoint="api_trivia_validate_answer",
    )
    def api_trivia_validate_answer():
        data = request.get_json(silent=True) or {}
        question = str(data.get("question") or "").strip()
        correct_answer = str(data.get("correct_answer") or "").strip()
        player_answer = str(data.get("player_answer") or "").strip()
        if not question or not correct_answer or not player_answer:
            return error_response(
                status=400,
                code="invalid_input",
                message="question, correct_answer and player_answer are required.",
            )

        limited = _rate_limited_response("judge")
        if limited is not None:
            return limited

        def _validate():
            is_correct, explanation = ai_worker.validate_answer(
                question, correct_answer, player_answer
            )
            services.increment_metric("answers_judged")
            return {"is_correct": bool(is_correct), "explanation": explanation}

        return _ai_response(_validate)

    @bp.route(
        "/api/trivia/generate-board",
        methods=["POST"],
        endpoint="api_trivia_generate_board",
    )
    def api_trivia_generate_board():
        data = request.get_json(silent=True) or {}
        chunks = data.get("chunks")
        if not isinstance(chunks, list) or not any(str(c).strip() for c in chunks):
            return error_response(
                status=400,
                code="invalid_input",
                message="chunks must be a non-empty list of source text.",
            )

        limited = _rate_limited_response("board")
        if limited is not None:
            return limited

        def _generate():
            try:
                board = ai_worker.generate_board(
                    chunks,
                    difficulty=str(data.get("difficulty") or "").strip() or None,
                    model=str(data.get("model") or "").strip() or None,
                )
            except Exception:
                services.increment_metric("board_generation_failed")
                raise
            services.increment_metric("boards_generated")
            return {"board": board.model_dump()}

        return _ai_response(_generate)

    @bp.route(
        "/api/trivia/text-to-speech",
        methods=["POST"],
        endpoint="api_trivia_text_to_speech",
    )
    def api_trivia_text_to_speech():
        data = request.get_json(silent=True) or {}
        text = str(data.get("text") or "").strip()
        if not text:
            return error_response(
                status=400, code="invalid_input", message="text is required."
            )

        limited = _rate_limited_response("narration")
        if limited is not None:
            return limited

        services.increment_metric("narration_requested")
        try:
            audio = ai_worker.text_to_speech(text)
        except Exception as exc:
            services.increment_metric("narration_failed")
            services.set_runtime_status("ai_last_error", str(exc))
            status_code = int(getattr(exc, "status_code", 500))
            masked = status_code >= 500 and status_code != 503
            if masked:
                current_app.logger.error("Narration failed: %s", exc)
            return error_response(
                status=status_code,
                code=error_code_for(exc, "narration_failed"),
                message="Narration is temporarily unavailable." if masked else str(exc),
            )

        return Response(
            audio,
            mimetype="audio/mpeg",
            headers={"Cache-Control": f"public, max-age={NARRATION_CACHE_SECONDS}"},
        )

    @bp.route("/api/trivia/extract", methods=["POST"], endpoint="api_trivia_extract")
    def api_trivia_extract():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return error_response(
                status=400, code="invalid_input", message="A PDF file is required."
            )
        is_pdf = upload.filename.lower().endswith(".pdf") or (
            upload.mimetype == "application/pdf"
        )
        if not is_pdf:
            return error_response(
                status=400, code="invalid_input", message="Only PDF uploads are supported."
            )

        def _extract():
            payload = extract_pdf_text(upload.stream)
            services.increment_metric("pdf_extracted")
            return payload

        return _ai_response(_extract)
