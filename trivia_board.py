"""Typed clue board plus the tolerant parser used on model output."""

from __future__ import annotations

import json
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

CLUE_VALUES = (200, 400, 600, 800, 1000)
BOARD_CATEGORY_COUNT = 5
BOARD_CLUES_PER_CATEGORY = 5

ClueValue = Literal[200, 400, 600, 800, 1000]


class BoardValidationError(ValueError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details if details is not None else {}


class Clue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    category_id: str = ""
    value: ClueValue
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    source_snippet: str = ""


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    clues: tuple[Clue, ...] = Field(min_length=1)


class FinalClue(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str = Field(min_length=1)
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    source_snippet: str = ""


class Board(BaseModel):
    """Immutable grid of categories and clues, plus the final-round clue."""

    model_config = ConfigDict(frozen=True)

    categories: tuple[Category, ...] = Field(min_length=1)
    final: Optional[FinalClue] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_category_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        categories = data.get("categories")
        if not isinstance(categories, (list, tuple)):
            return data

        filled = []
        for index, category in enumerate(categories, start=1):
            if not isinstance(category, dict):
                filled.append(category)
                continue
            category = dict(category)
            category_id = str(category.get("id") or f"cat-{index}")
            category["id"] = category_id
            clues = category.get("clues")
            if isinstance(clues, (list, tuple)):
                category["clues"] = [
                    {**clue, "category_id": category_id}
                    if isinstance(clue, dict)
                    else clue
                    for clue in clues
                ]
            filled.append(category)
        return {**data, "categories": filled}

    @model_validator(mode="after")
    def _require_unique_ids(self) -> "Board":
        ids = [clue.id for clue in self.iter_clues()]
        if len(ids) != len(set(ids)):
            raise ValueError("Clue ids must be unique across the board.")
        return self

    def iter_clues(self):
        for category in self.categories:
            yield from category.clues

    @property
    def clue_ids(self) -> list[str]:
        return [clue.id for clue in self.iter_clues()]

    @property
    def total_clues(self) -> int:
        return sum(len(category.clues) for category in self.categories)

    def find_clue(self, clue_id: str) -> Clue | None:
        for clue in self.iter_clues():
            if clue.id == clue_id:
                return clue
        return None

    def category_title(self, category_id: str) -> str:
        for category in self.categories:
            if category.id == category_id:
                return category.title
        return ""

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw_value: str) -> "Board":
        return cls.model_validate_json(raw_value)


class GeneratedBoard(Board):
    """A board fit to start a game: full 5x5 grid and a final clue."""

    final: FinalClue

    @model_validator(mode="after")
    def _require_full_grid(self) -> "GeneratedBoard":
        if len(self.categories) != BOARD_CATEGORY_COUNT:
            raise ValueError(
                f"Board must have exactly {BOARD_CATEGORY_COUNT} categories."
            )
        for category in self.categories:
            if len(category.clues) != BOARD_CLUES_PER_CATEGORY:
                raise ValueError(
                    f"Category '{category.title}' must have exactly "
                    f"{BOARD_CLUES_PER_CATEGORY} clues."
                )
        missing = [clue.id for clue in self.iter_clues() if not clue.source_snippet.strip()]
        if missing:
            raise ValueError(f"Clues missing source_snippet: {', '.join(missing)}.")
        if not self.final.source_snippet.strip():
            raise ValueError("Final clue is missing source_snippet.")
        return self


def validate_generated_board(candidate: Any) -> Board:
    """Validate a decoded candidate and return it as a plain ``Board``."""
    try:
        generated = GeneratedBoard.model_validate(candidate)
    except ValidationError as exc:
        raise BoardValidationError(
            "Board validation failed.",
            details=_summarize_errors(exc),
        ) from exc
    return Board.model_validate(generated.model_dump())


def _summarize_errors(exc: ValidationError) -> list[str]:
    summary = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid")
        summary.append(f"{location}: {message}" if location else message)
    return summary


# ------------------------
# Model output parsing
# ------------------------


def extract_json_from_text(text: str) -> str:
    """
    Handles:
    - raw JSON
    - ```json { ... } ```
    - prose around a single { ... } object
    """
    trimmed = (text or "").strip()
    if trimmed.startswith("{") or trimmed.startswith("["):
        return trimmed

    fenced = re.search(r"```(?:json)?([\s\S]*?)```", trimmed, flags=re.IGNORECASE)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start != -1 and end > start:
        return trimmed[start : end + 1]
    return trimmed


def parse_board_candidate(raw_text: str) -> Any:
    parsed = json.loads(extract_json_from_text(raw_text))

    if isinstance(parsed, dict) and "board" in parsed:
        inner = parsed["board"]
        final = parsed.get("final")
        if isinstance(inner, list):
            candidate = {"categories": inner}
        elif isinstance(inner, dict) and "categories" not in inner:
            candidate = {"categories": list(inner.values())}
        else:
            candidate = inner
        if final is not None and isinstance(candidate, dict):
            candidate = {**candidate, "final": candidate.get("final") or final}
        return candidate

    if isinstance(parsed, list):
        return {"categories": parsed}

    if isinstance(parsed, dict) and "categories" not in parsed:
        final = parsed.pop("final", None)
        values = list(parsed.values())
        if values:
            candidate: dict = {"categories": values}
            if final is not None:
                candidate["final"] = final
            return candidate

    return parsed


def normalize_board_candidate(candidate: Any) -> Any:
    if not isinstance(candidate, dict) or "categories" not in candidate:
        return candidate

    raw_categories = candidate.get("categories")
    categories = raw_categories if isinstance(raw_categories, list) else []

    seen_ids: set[str] = set()
    normalized_categories = []
    for cat_index, category in enumerate(categories, start=1):
        if not isinstance(category, dict):
            normalized_categories.append(category)
            continue
        category = dict(category)
        if "title" not in category:
            if "category" in category:
                category["title"] = category["category"]
            elif "name" in category:
                category["title"] = category["name"]

        clues = category.get("clues")
        if isinstance(clues, list):
            fixed_clues = []
            for clue_index, clue in enumerate(clues, start=1):
                if not isinstance(clue, dict):
                    fixed_clues.append(clue)
                    continue
                clue = dict(clue)
                clue_id = str(clue.get("id") or "").strip()
                if not clue_id or clue_id in seen_ids:
                    clue_id = f"c{cat_index}-{clue_index}"
                seen_ids.add(clue_id)
                clue["id"] = clue_id
                if "source_snippet" not in clue and "sourceSnippet" in clue:
                    clue["source_snippet"] = clue["sourceSnippet"]
                fixed_clues.append(clue)
            category["clues"] = fixed_clues
        normalized_categories.append(category)

    normalized = {**candidate, "categories": normalized_categories}
    final = normalized.get("final")
    if isinstance(final, dict):
        final = dict(final)
        if "question" not in final and "clue" in final:
            final["question"] = final["clue"]
        if "source_snippet" not in final and "sourceSnippet" in final:
            final["source_snippet"] = final["sourceSnippet"]
        normalized["final"] = final
    return normalized


def board_from_model_text(raw_text: str) -> Board:
    """Parse, normalize and validate raw model output in one step."""
    try:
        candidate = parse_board_candidate(raw_text)
    except json.JSONDecodeError as exc:
        raise BoardValidationError(
            "Board response was not valid JSON.", details=[str(exc)]
        ) from exc
    return validate_generated_board(normalize_board_candidate(candidate))
