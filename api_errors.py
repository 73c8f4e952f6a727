from __future__ import annotations

from typing import Any, Callable

from flask import current_app, jsonify


def build_error_payload(
    *,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "unknown_error",
        "message": str(message).strip() or "Unknown error.",
        "details": details if details is not None else {},
    }
    # Backward-compatible alias for older clients that still read "error".
    payload["error"] = payload["message"]
    return payload


def error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
):
    response = jsonify(build_error_payload(code=code, message=message, details=details))
    response.status_code = int(status)
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


def error_code_for(exc: Exception, fallback: str) -> str:
    kind = getattr(exc, "kind", None)
    if kind is not None:
        return str(getattr(kind, "value", kind))
    return str(getattr(exc, "code", "") or fallback)


def build_service_responder(
    *,
    log_label: str,
    unavailable_code: str,
    unavailable_message: str,
    error_code: str,
    public_codes: tuple[str, ...] = (),
    on_error: Callable[[Exception, str], None] | None = None,
):
    def _respond(fn):
        try:
            payload = fn()
            return jsonify(payload)
        except Exception as exc:
            status_code = int(getattr(exc, "status_code", 500))
            code = error_code_for(exc, error_code)
            if on_error:
                on_error(exc, code)
            if status_code >= 500 and code not in public_codes:
                current_app.logger.error("%s API failure: %s", log_label, exc)
                return error_response(
                    status=status_code if status_code in (502, 503) else 500,
                    code=unavailable_code,
                    message=unavailable_message,
                )
            return error_response(
                status=status_code,
                code=code,
                message=str(exc),
                details=getattr(exc, "details", None),
            )

    return _respond
