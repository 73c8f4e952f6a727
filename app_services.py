from __future__ import annotations

import logging
import os
import re
import threading
import time as timelib
from collections import deque
from dataclasses import dataclass
from urllib.parse import urljoin

from flask import g, request

SERVICE_LOGGERS = ("trivia_game", "ai_helpers", "source_text")


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename: str, max_bytes: int, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


@dataclass(frozen=True)
class AppServiceConfig:
    public_base_url: str
    db_path: str
    gemini_api_key: str
    eleven_labs_api_key: str
    is_prod: bool
    gemini_model: str = ""
    eleven_labs_voice_id: str = ""
    ai_rate_limit_per_minute: int = 20
    presence_timeout_seconds: int = 60
    log_file: str = "app.log"


class AppServices:
    def __init__(self, app, ai_worker, config: AppServiceConfig):
        self.app = app
        self.ai_worker = ai_worker
        self.config = config

        self.metrics_lock = threading.Lock()
        self.runtime_metrics: dict[str, int] = {
            "rooms_created": 0,
            "games_started": 0,
            "boards_generated": 0,
            "board_generation_failed": 0,
            "answers_judged": 0,
            "narration_requested": 0,
            "narration_failed": 0,
            "pdf_extracted": 0,
            "transition_conflicts": 0,
            "rate_limited": 0,
        }
        self.runtime_status: dict[str, str] = {
            "ai_last_error": "",
        }
        self._rate_limit_lock = threading.Lock()
        self._rate_limit_hits: dict[str, deque[float]] = {}

    # ------------------------
    # Runtime validation + metrics
    # ------------------------

    def validate_runtime_config(self) -> list[str]:
        warnings: list[str] = []
        if self.config.public_base_url and not re.match(
            r"^https?://", self.config.public_base_url, re.IGNORECASE
        ):
            warnings.append("PUBLIC_BASE_URL should start with http:// or https://.")

        if not self.config.gemini_api_key:
            warnings.append(
                "GEMINI_API_KEY is not set; boards must be uploaded as JSON and answers are matched literally."
            )

        if not self.config.eleven_labs_api_key:
            warnings.append("ELEVEN_LABS_API_KEY is not set; narration is disabled.")

        if self.config.eleven_labs_voice_id and not self.config.eleven_labs_api_key:
            warnings.append(
                "ELEVEN_LABS_VOICE_ID is set without ELEVEN_LABS_API_KEY."
            )

        if self.config.ai_rate_limit_per_minute < 0:
            warnings.append("AI_RATE_LIMIT_PER_MINUTE should be 0 or greater.")

        if self.config.presence_timeout_seconds < 0:
            warnings.append("PRESENCE_TIMEOUT_SECONDS should be 0 or greater.")

        if self.config.is_prod and not self.config.db_path:
            warnings.append("TRIVIA_DB should point at a persistent SQLite file.")

        if warnings:
            for warning in warnings:
                self.app.logger.warning("Config warning: %s", warning)
        else:
            self.app.logger.info("Runtime configuration checks passed.")
        return warnings

    def increment_metric(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self.metrics_lock:
            self.runtime_metrics[name] = self.runtime_metrics.get(name, 0) + amount

    def set_runtime_status(self, key: str, value: str) -> None:
        text = (value or "").strip()
        if len(text) > 500:
            text = text[:497] + "..."
        with self.metrics_lock:
            self.runtime_status[key] = text

    def get_runtime_metrics(self) -> dict:
        with self.metrics_lock:
            snapshot = dict(self.runtime_metrics)
            snapshot.update(self.runtime_status)
        snapshot["board_generation_enabled"] = bool(
            getattr(self.ai_worker, "board_generation_enabled", False)
        )
        snapshot["narration_enabled"] = bool(
            getattr(self.ai_worker, "narration_enabled", False)
        )
        return snapshot

    # ------------------------
    # Request helpers
    # ------------------------

    def build_public_url(self, path: str) -> str:
        base = (self.config.public_base_url or "").strip()
        if not base:
            try:
                base = request.url_root
            except RuntimeError:
                base = ""
        if not base:
            return path
        if not base.endswith("/"):
            base = f"{base}/"
        return urljoin(base, path.lstrip("/"))

    @staticmethod
    def get_request_client_ip() -> str:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            first = forwarded.split(",", 1)[0].strip()
            if first:
                return first
        real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if real_ip:
            return real_ip
        return (request.remote_addr or "unknown").strip() or "unknown"

    def consume_rate_limit(
        self,
        *,
        key: str,
        limit: int,
        window_seconds: int,
        now_ts: float | None = None,
    ) -> tuple[bool, int]:
        if limit <= 0 or window_seconds <= 0:
            return True, 0

        now = float(now_ts if now_ts is not None else timelib.time())
        min_allowed = now - float(window_seconds)

        with self._rate_limit_lock:
            bucket = self._rate_limit_hits.setdefault(key, deque())
            while bucket and bucket[0] < min_allowed:
                bucket.popleft()

            if len(bucket) >= int(limit):
                retry_after = max(1, int(bucket[0] + float(window_seconds) - now))
                self.increment_metric("rate_limited", 1)
                return False, retry_after

            bucket.append(now)

            if len(self._rate_limit_hits) > 5000:
                stale_keys = [name for name, values in self._rate_limit_hits.items() if not values]
                for stale_key in stale_keys:
                    self._rate_limit_hits.pop(stale_key, None)

        return True, 0

    # ------------------------
    # Logging + request hooks
    # ------------------------

    def configure_logging(self) -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)

        file_handler = MaxSizeFileHandler(
            self.config.log_file, max_bytes=2 * 1024 * 1024
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)

        self.app.logger.handlers.clear()
        self.app.logger.setLevel(logging.INFO)
        self.app.logger.propagate = False
        self.app.logger.addHandler(console_handler)
        self.app.logger.addHandler(file_handler)

        for name in SERVICE_LOGGERS:
            service_logger = logging.getLogger(name)
            service_logger.handlers.clear()
            service_logger.setLevel(logging.INFO)
            service_logger.propagate = False
            service_logger.addHandler(console_handler)
            service_logger.addHandler(file_handler)

        logging.getLogger("werkzeug").setLevel(logging.ERROR)
        self.app.logger.info("Logging initialised")

    @staticmethod
    def start_timer():
        g.start_time = timelib.time()

    def log_request(self, response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)
        self.app.logger.info(
            "%s %s (%s) -> %s [%ss]",
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )
        return response

    def log_exception(self, exception):
        if exception:
            self.app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )
