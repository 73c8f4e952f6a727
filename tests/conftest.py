import sys
from pathlib import Path

import pytest
from flask import Flask

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai_helpers import is_obvious_match
from app_services import AppServiceConfig, AppServices
from blueprints.api import create_api_blueprint
from board_factory import make_board_payload
from trivia_board import validate_generated_board
from trivia_game import TriviaGameService


class StubAI:
    board_generation_enabled = True
    narration_enabled = True

    def __init__(self):
        self.board_requests = []
        self.validation_requests = []
        self.narration_requests = []

    def generate_board(self, chunks, difficulty=None, model=None):
        self.board_requests.append(
            {"chunks": list(chunks), "difficulty": difficulty, "model": model}
        )
        return validate_generated_board(make_board_payload())

    def validate_answer(self, question, correct_answer, player_answer):
        self.validation_requests.append((question, correct_answer, player_answer))
        if is_obvious_match(correct_answer, player_answer):
            return True, "Exact or close match."
        return False, "Different answer."

    def text_to_speech(self, text):
        self.narration_requests.append(text)
        return b"ID3-fake-mpeg"


@pytest.fixture
def app_ctx(tmp_path):
    db_path = tmp_path / "trivia-test.db"
    stub_ai = StubAI()

    app = Flask(__name__)
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"

    services = AppServices(
        app=app,
        ai_worker=stub_ai,
        config=AppServiceConfig(
            public_base_url="http://localhost:8040",
            db_path=str(db_path),
            gemini_api_key="test-gemini",
            eleven_labs_api_key="test-eleven",
            is_prod=False,
            ai_rate_limit_per_minute=50,
            presence_timeout_seconds=0,
            log_file=str(tmp_path / "app.log"),
        ),
    )
    trivia_service = TriviaGameService(
        db_path=str(db_path),
        ai_worker=stub_ai,
        presence_timeout_seconds=0,
        sleep=lambda _seconds: None,
    )

    app.register_blueprint(
        create_api_blueprint(
            services=services,
            trivia_service=trivia_service,
            ai_worker=stub_ai,
            ai_rate_limit_per_minute=50,
        )
    )
    return {
        "app": app,
        "services": services,
        "trivia_service": trivia_service,
        "stub_ai": stub_ai,
    }


@pytest.fixture
def app(app_ctx):
    return app_ctx["app"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app_ctx):
    return app_ctx["services"]


@pytest.fixture
def trivia_service(app_ctx):
    return app_ctx["trivia_service"]


@pytest.fixture
def stub_ai(app_ctx):
    return app_ctx["stub_ai"]


@pytest.fixture
def board_payload():
    return make_board_payload()
