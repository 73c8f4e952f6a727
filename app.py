import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

import ai_helpers
from app_services import AppServiceConfig, AppServices
from blueprints.api import create_api_blueprint
from trivia_game import TriviaGameService

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)

# Load the .env file
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return int(raw_value)
    except ValueError:
        logging.getLogger(__name__).warning(
            "%s=%r is not an integer; using %s.", name, raw_value, default
        )
        return default


IS_PROD = os.getenv("IS_PROD", "False").lower() in ("true", "1", "t")
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8040"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip()
TRIVIA_DB = os.getenv("TRIVIA_DB", "trivia.db").strip() or "trivia.db"

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024

config = AppServiceConfig(
    public_base_url=PUBLIC_BASE_URL,
    db_path=TRIVIA_DB,
    gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
    eleven_labs_api_key=os.getenv("ELEVEN_LABS_API_KEY", "").strip(),
    is_prod=IS_PROD,
    gemini_model=os.getenv("GEMINI_MODEL", "").strip(),
    eleven_labs_voice_id=os.getenv("ELEVEN_LABS_VOICE_ID", "").strip(),
    ai_rate_limit_per_minute=_env_int("AI_RATE_LIMIT_PER_MINUTE", 20),
    presence_timeout_seconds=_env_int("PRESENCE_TIMEOUT_SECONDS", 60),
)

ai_worker = ai_helpers.AI(
    gemini_api_key=config.gemini_api_key,
    gemini_model=config.gemini_model,
    eleven_labs_api_key=config.eleven_labs_api_key,
    eleven_labs_voice_id=config.eleven_labs_voice_id,
)
services = AppServices(app=app, ai_worker=ai_worker, config=config)
services.configure_logging()
services.validate_runtime_config()

trivia_service = TriviaGameService(
    db_path=config.db_path,
    ai_worker=ai_worker,
    presence_timeout_seconds=config.presence_timeout_seconds,
)

app.before_request(services.start_timer)
app.after_request(services.log_request)
app.teardown_request(services.log_exception)

app.register_blueprint(
    create_api_blueprint(
        services=services,
        trivia_service=trivia_service,
        ai_worker=ai_worker,
        ai_rate_limit_per_minute=config.ai_rate_limit_per_minute,
    )
)


@app.route("/health")
def health():
    return jsonify(status="ok")


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify(error=e.name, description=e.description), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    app.logger.error(
        "Unhandled exception",
        exc_info=(type(e), e, e.__traceback__),
    )
    description = (
        "The server encountered an internal error and was unable to complete your request. "
        "Either the server is overloaded or there is an error in the application."
    )
    return jsonify(error="Internal Server Error", description=description), 500


if __name__ == "__main__":
    app.run(debug=not IS_PROD, host=HOST, port=PORT, threaded=True)
