import json
import logging
import os

import requests
from dotenv import load_dotenv

from trivia_board import (
    BoardValidationError,
    board_from_model_text,
    extract_json_from_text,
)

load_dotenv()

logger = logging.getLogger(__name__)

GEMINI_URL_TEMPLATE = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
DEFAULT_GEMINI_MODELS = ("gemini-2.5-flash", "gemini-2.5-flash-lite")
FALLBACK_STATUS_CODES = (404, 429)

ELEVEN_LABS_URL_TEMPLATE = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
DEFAULT_VOICE_ID = "pNInz6obpgDQGcFmaJgB"
ELEVEN_LABS_MODEL = "eleven_turbo_v2_5"
MAX_NARRATION_CHARS = 2500

UNVALIDATED_EXPLANATION = "Unable to validate - defaulting to incorrect."


class AIGenerationError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 502,
        code: str = "ai_error",
        details=None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.details = details


def is_obvious_match(correct_answer: str, player_answer: str) -> bool:
    correct = str(correct_answer or "").lower().strip()
    player = str(player_answer or "").lower().strip()
    if not correct or not player:
        return False
    return player == correct or correct in player or player in correct


class AI:
    def __init__(
        self,
        *,
        gemini_api_key: str | None = None,
        gemini_model: str | None = None,
        eleven_labs_api_key: str | None = None,
        eleven_labs_voice_id: str | None = None,
    ):
        if gemini_api_key is None:
            gemini_api_key = os.getenv("GEMINI_API_KEY", "")
        if gemini_model is None:
            gemini_model = os.getenv("GEMINI_MODEL", "")
        if eleven_labs_api_key is None:
            eleven_labs_api_key = os.getenv("ELEVEN_LABS_API_KEY", "")
        if eleven_labs_voice_id is None:
            eleven_labs_voice_id = os.getenv("ELEVEN_LABS_VOICE_ID", "")

        self.GEMINI_KEY = str(gemini_api_key or "").strip()
        self.ELEVEN_LABS_KEY = str(eleven_labs_api_key or "").strip()
        self.voice_id = str(eleven_labs_voice_id or "").strip() or DEFAULT_VOICE_ID

        preferred = str(gemini_model or "").strip()
        self.model_candidates = tuple(
            dict.fromkeys(
                ([preferred] if preferred else []) + list(DEFAULT_GEMINI_MODELS)
            )
        )

        self.board_generation_enabled = bool(self.GEMINI_KEY)
        self.narration_enabled = bool(self.ELEVEN_LABS_KEY)
        if not self.board_generation_enabled:
            logger.warning(
                "GEMINI_API_KEY not set; board generation and AI answer judging are disabled."
            )
        if not self.narration_enabled:
            logger.warning("ELEVEN_LABS_API_KEY not set; narration is disabled.")

    # ------------------------
    # Gemini
    # ------------------------

    def generate_json(
        self, prompt: str, *, temperature: float = 0.4, model: str | None = None
    ) -> str:
        if not self.board_generation_enabled:
            raise AIGenerationError(
                "GEMINI_API_KEY not set; AI generation disabled.",
                503,
                code="ai_unavailable",
            )

        candidates = [model] if model else list(self.model_candidates)
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": "application/json",
            },
        }
        headers = {
            "x-goog-api-key": self.GEMINI_KEY,
            "Content-Type": "application/json",
        }

        last_error = "Gemini request failed."
        for candidate in candidates:
            logger.debug("Requesting JSON from Gemini (%s).", candidate)
            try:
                response = requests.post(
                    GEMINI_URL_TEMPLATE.format(model=candidate),
                    headers=headers,
                    json=payload,
                    timeout=90,
                )
            except requests.RequestException as exc:
                logger.error("Gemini request to %s failed: %s", candidate, exc)
                raise AIGenerationError(
                    "The AI provider could not be reached.", 502
                ) from exc

            if response.status_code in FALLBACK_STATUS_CODES:
                last_error = f"{candidate} returned {response.status_code}"
                logger.warning(
                    "Gemini model %s unavailable (%s); trying next model.",
                    candidate,
                    response.status_code,
                )
                continue
            if not response.ok:
                logger.error(
                    "Gemini model %s failed with %s: %s",
                    candidate,
                    response.status_code,
                    response.text[:300],
                )
                raise AIGenerationError(
                    f"Gemini request failed ({response.status_code}).", 502
                )

            try:
                body = response.json()
            except ValueError as exc:
                logger.error("Gemini model %s returned a non-JSON body.", candidate)
                raise AIGenerationError(
                    "Gemini returned an unreadable response.", 502
                ) from exc
            text = self._response_text(body)
            if not text:
                raise AIGenerationError("Gemini returned an empty response.", 502)
            return text

        raise AIGenerationError(last_error, 502)

    @staticmethod
    def _response_text(body) -> str:
        try:
            parts = body["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return ""
        return "".join(
            str(part.get("text", "")) for part in parts if isinstance(part, dict)
        ).strip()

    def build_board_prompt(self, chunks, difficulty: str | None = None) -> str:
        joined_chunks = "\n\n".join(
            f"Chunk {index}:\n{chunk}" for index, chunk in enumerate(chunks, start=1)
        )
        difficulty_line = f"Difficulty: {difficulty}.\n" if difficulty else ""
        return f"""You are generating a quiz-show trivia board in JSON only.
Rules:
- Output JSON only. No markdown, no extra text.
- Exactly 5 categories, each with a "title" and exactly 5 "clues".
- Clue values must be 200, 400, 600, 800, 1000 (one of each per category).
- Each clue has: id (string, unique), value (int), question (string), answer (string), source_snippet (1-2 sentences).
- Add a "final" object for the final round with: category, question, answer, source_snippet.
Use the provided source text chunks to derive questions.
{difficulty_line}
Source text chunks:
{joined_chunks}
"""

    def build_fix_prompt(self, bad_json: str, issues: str) -> str:
        return f"""Fix the JSON to match the schema.
Return JSON only. No markdown, no extra text.
Issues:
{issues}

Invalid JSON:
{bad_json}
"""

    def generate_board(self, chunks, difficulty: str | None = None, model: str | None = None):
        chunks = [str(chunk).strip() for chunk in (chunks or []) if str(chunk).strip()]
        if not chunks:
            raise AIGenerationError(
                "Source text is required to generate a board.", 400, code="invalid_input"
            )

        raw = self.generate_json(self.build_board_prompt(chunks, difficulty), model=model)
        try:
            return board_from_model_text(raw)
        except BoardValidationError as first_error:
            issues = "\n".join(str(item) for item in first_error.details) or str(
                first_error
            )
            logger.warning("Generated board failed validation; requesting a repair.")

        fixed = self.generate_json(self.build_fix_prompt(raw, issues), model=model)
        try:
            return board_from_model_text(fixed)
        except BoardValidationError as exc:
            logger.error("Repaired board still invalid: %s", exc.details)
            raise AIGenerationError(
                "Board validation failed.",
                502,
                code="board_validation_failed",
                details=exc.details,
            ) from exc

    # ------------------------
    # Answer judging
    # ------------------------

    def build_validation_prompt(
        self, question: str, correct_answer: str, player_answer: str
    ) -> str:
        return f"""You are a quiz-show answer validator. Determine if the player's answer is correct.
Be lenient with:
- Minor spelling errors
- Different phrasing that means the same thing
- Partial answers that capture the key concept
- Missing articles (a, an, the)
- Synonyms and equivalent terms

Be strict about:
- Completely wrong answers
- Answers that mention a different concept entirely
- Numerical/factual errors

Question: {question}
Correct Answer: {correct_answer}
Player's Answer: {player_answer}

Respond with JSON only: {{ "isCorrect": true/false, "explanation": "brief reason" }}
"""

    def validate_answer(
        self, question: str, correct_answer: str, player_answer: str
    ) -> tuple[bool, str]:
        if is_obvious_match(correct_answer, player_answer):
            return True, "Exact or close match."
        if not str(player_answer or "").strip():
            return False, "No answer given."
        if not self.board_generation_enabled:
            return False, UNVALIDATED_EXPLANATION

        try:
            raw = self.generate_json(
                self.build_validation_prompt(question, correct_answer, player_answer),
                temperature=0.1,
            )
            verdict = json.loads(extract_json_from_text(raw))
        except (AIGenerationError, json.JSONDecodeError) as exc:
            logger.warning("Answer validation fell back to incorrect: %s", exc)
            return False, UNVALIDATED_EXPLANATION

        if not isinstance(verdict, dict):
            return False, UNVALIDATED_EXPLANATION
        is_correct = verdict.get("isCorrect", verdict.get("is_correct"))
        return is_correct is True, str(verdict.get("explanation") or "").strip()

    # ------------------------
    # Narration
    # ------------------------

    def text_to_speech(self, text: str) -> bytes:
        text = str(text or "").strip()
        if not text:
            raise AIGenerationError("Text is required.", 400, code="invalid_input")
        if not self.narration_enabled:
            raise AIGenerationError(
                "ELEVEN_LABS_API_KEY not set; narration disabled.",
                503,
                code="narration_unavailable",
            )

        payload = {
            "text": text[:MAX_NARRATION_CHARS],
            "model_id": ELEVEN_LABS_MODEL,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "style": 0.5,
                "use_speaker_boost": True,
            },
        }
        headers = {
            "xi-api-key": self.ELEVEN_LABS_KEY,
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                ELEVEN_LABS_URL_TEMPLATE.format(voice_id=self.voice_id),
                headers=headers,
                json=payload,
                timeout=60,
            )
        except requests.RequestException as exc:
            logger.error("ElevenLabs request failed: %s", exc)
            raise AIGenerationError(
                "The narration provider could not be reached.",
                502,
                code="narration_failed",
            ) from exc

        if not response.ok:
            logger.error(
                "ElevenLabs returned %s: %s", response.status_code, response.text[:300]
            )
            raise AIGenerationError(
                f"Text-to-speech failed ({response.status_code}).",
                502,
                code="narration_failed",
            )
        return response.content
