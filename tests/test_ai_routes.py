import io

from ai_helpers import AIGenerationError
from blueprints.api_routes import ai as ai_routes


def test_validate_answer_route(client, stub_ai, services):
    response = client.post(
        "/api/trivia/validate-answer",
        json={
            "question": "Who wrote the first algorithm?",
            "correct_answer": "Ada Lovelace",
            "player_answer": "lovelace",
        },
    )
    assert response.status_code == 200
    assert response.get_json() == {
        "is_correct": True,
        "explanation": "Exact or close match.",
    }
    assert len(stub_ai.validation_requests) == 1
    assert services.get_runtime_metrics()["answers_judged"] == 1

    missing = client.post(
        "/api/trivia/validate-answer", json={"question": "Q", "correct_answer": "A"}
    )
    assert missing.status_code == 400
    assert missing.get_json()["code"] == "invalid_input"


def test_validate_answer_route_is_rate_limited(client):
    body = {"question": "Q", "correct_answer": "A", "player_answer": "B"}
    for _ in range(50):
        assert client.post("/api/trivia/validate-answer", json=body).status_code == 200
    limited = client.post("/api/trivia/validate-answer", json=body)
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers


def test_generate_board_route(client, stub_ai, services):
    response = client.post(
        "/api/trivia/generate-board",
        json={"chunks": ["Some source text."], "difficulty": "medium"},
    )
    assert response.status_code == 200
    board = response.get_json()["board"]
    assert len(board["categories"]) == 5
    assert board["final"]["answer"] == "Ada Lovelace"
    assert stub_ai.board_requests[0]["difficulty"] == "medium"
    assert services.get_runtime_metrics()["boards_generated"] == 1

    empty = client.post("/api/trivia/generate-board", json={"chunks": []})
    assert empty.status_code == 400


def test_generate_board_route_reports_validation_failure(client, stub_ai, services, monkeypatch):
    def _fail(_chunks, difficulty=None, model=None):
        raise AIGenerationError(
            "Board validation failed.",
            502,
            code="board_validation_failed",
            details=["categories: too short"],
        )

    monkeypatch.setattr(stub_ai, "generate_board", _fail)
    response = client.post("/api/trivia/generate-board", json={"chunks": ["text"]})
    assert response.status_code == 502
    body = response.get_json()
    assert body["code"] == "board_validation_failed"
    assert body["details"] == ["categories: too short"]
    metrics = services.get_runtime_metrics()
    assert metrics["board_generation_failed"] == 1
    assert metrics["ai_last_error"] == "Board validation failed."


def test_text_to_speech_route(client, stub_ai):
    response = client.post("/api/trivia/text-to-speech", json={"text": "Category one."})
    assert response.status_code == 200
    assert response.mimetype == "audio/mpeg"
    assert response.headers["Cache-Control"] == "public, max-age=86400"
    assert response.data == b"ID3-fake-mpeg"
    assert stub_ai.narration_requests == ["Category one."]

    assert client.post("/api/trivia/text-to-speech", json={}).status_code == 400


def test_text_to_speech_route_masks_provider_failures(client, stub_ai, services, monkeypatch):
    def _provider_down(_text):
        raise AIGenerationError("upstream said 500 with secrets", 502, code="narration_failed")

    monkeypatch.setattr(stub_ai, "text_to_speech", _provider_down)
    response = client.post("/api/trivia/text-to-speech", json={"text": "Hello"})
    assert response.status_code == 502
    assert response.get_json()["message"] == "Narration is temporarily unavailable."
    assert services.get_runtime_metrics()["narration_failed"] == 1

    def _no_key(_text):
        raise AIGenerationError(
            "ELEVEN_LABS_API_KEY not set; narration disabled.",
            503,
            code="narration_unavailable",
        )

    monkeypatch.setattr(stub_ai, "text_to_speech", _no_key)
    unavailable = client.post("/api/trivia/text-to-speech", json={"text": "Hello"})
    assert unavailable.status_code == 503
    assert unavailable.get_json()["code"] == "narration_unavailable"


def test_extract_route(client, services, monkeypatch):
    monkeypatch.setattr(
        ai_routes,
        "extract_pdf_text",
        lambda _stream: {"chunks": ["chunk one"], "meta": {"pages": 1, "chunkCount": 1}},
    )
    response = client.post(
        "/api/trivia/extract",
        data={"file": (io.BytesIO(b"%PDF-1.4 fake"), "notes.pdf")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    assert response.get_json()["meta"]["chunkCount"] == 1
    assert services.get_runtime_metrics()["pdf_extracted"] == 1


def test_extract_route_rejects_non_pdf_and_missing_file(client):
    wrong_type = client.post(
        "/api/trivia/extract",
        data={"file": (io.BytesIO(b"plain"), "notes.txt", "text/plain")},
        content_type="multipart/form-data",
    )
    assert wrong_type.status_code == 400
    assert "PDF" in wrong_type.get_json()["message"]

    missing = client.post(
        "/api/trivia/extract", data={}, content_type="multipart/form-data"
    )
    assert missing.status_code == 400
