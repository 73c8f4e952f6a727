from flask import Blueprint, jsonify

from blueprints.api_routes.ai import register_ai_api_routes
from blueprints.api_routes.games import register_game_api_routes


def create_api_blueprint(
    *,
    services,
    trivia_service,
    ai_worker,
    ai_rate_limit_per_minute: int = 20,
):
    bp = Blueprint("api", __name__)

    context = {
        "services": services,
        "trivia_service": trivia_service,
        "ai_worker": ai_worker,
        "ai_rate_limit_per_minute": int(ai_rate_limit_per_minute),
    }
    register_game_api_routes(bp, context)
    register_ai_api_routes(bp, context)

    @bp.route("/api/ops/metrics", methods=["GET"], endpoint="api_ops_metrics")
    def api_ops_metrics():
        return jsonify(metrics=services.get_runtime_metrics())

    return bp
