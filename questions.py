"""Question bank model, save-time validation and per-attempt question selection."""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

QUESTION_TYPES = ("multiple", "truefalse", "identification", "enumeration", "essay")
ACCESS_LEVELS = ("Public", "Private")

Number = Union[int, float]


class TestValidationError(ValueError):
    """Raised when a test payload cannot be saved as authored."""

    __test__ = False


def as_number(value: Any) -> Number:
    """Coerce a stored points value; integral floats collapse to int."""
    try:
        n = float(value or 0)
    except (TypeError, ValueError):
        return 0
    if n != n:  # NaN
        return 0
    return int(n) if n.is_integer() else n


def authored_number(value: Any, field_name: str) -> Number:
    """Parse a points value as the author typed it. Blank means 0; anything else must be a finite number."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0
    if isinstance(value, bool):
        raise TestValidationError(f"{field_name} must be a number")
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise TestValidationError(f"{field_name} must be a number, got {value!r}") from None
    if not math.isfinite(n):
        raise TestValidationError(f"{field_name} must be a finite number")
    return int(n) if n.is_integer() else n


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    s = str(value)
    return [s] if s.strip() else []


# -----------------------------------------------------------------------------
# Question variants (one per type)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class BaseQuestion:
    id: str
    text: str
    points: Number
    feedback_when_correct: Any = None
    feedback_when_incorrect: Any = None
    files: Tuple[str, ...] = ()

    type = ""

    def feedback_for(self, is_correct: bool) -> Any:
        return self.feedback_when_correct if is_correct else self.feedback_when_incorrect

    def _base_doc(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.type,
            "points": self.points,
            "files": list(self.files),
            "feedbackWhenCorrect": self.feedback_when_correct,
            "feedbackWhenIncorrect": self.feedback_when_incorrect,
        }

    def to_doc(self) -> Dict[str, Any]:
        return self._base_doc()

    def public_view(self) -> Dict[str, Any]:
        """What a student sees while taking the test (no answer key, no feedback)."""
        return {"id": self.id, "text": self.text, "type": self.type,
                "points": self.points, "files": list(self.files)}


@dataclass(frozen=True)
class MultipleChoiceQuestion(BaseQuestion):
    choices: Tuple[str, ...] = ()
    correct_letters: Tuple[str, ...] = ()
    # True when the author stored a list of letters ("select all that apply")
    select_all: bool = False

    type = "multiple"

    def correct_indices(self) -> List[int]:
        return sorted(letter_to_index(l) for l in self.correct_letters)

    def to_doc(self) -> Dict[str, Any]:
        doc = self._base_doc()
        doc["choices"] = list(self.choices)
        doc["correctAnswer"] = list(self.correct_letters) if self.select_all else (
            self.correct_letters[0] if self.correct_letters else "")
        return doc

    def public_view(self) -> Dict[str, Any]:
        view = super().public_view()
        view["choices"] = list(self.choices)
        view["selectAll"] = self.select_all
        return view


@dataclass(frozen=True)
class TrueFalseQuestion(BaseQuestion):
    correct: bool = True

    type = "truefalse"

    def to_doc(self) -> Dict[str, Any]:
        doc = self._base_doc()
        doc["correctAnswer"] = "true" if self.correct else "false"
        return doc


@dataclass(frozen=True)
class IdentificationQuestion(BaseQuestion):
    answers: Tuple[str, ...] = ()

    type = "identification"

    def to_doc(self) -> Dict[str, Any]:
        doc = self._base_doc()
        doc["answers"] = list(self.answers)
        return doc


@dataclass(frozen=True)
class EnumerationQuestion(BaseQuestion):
    answers: Tuple[str, ...] = ()

    type = "enumeration"

    def to_doc(self) -> Dict[str, Any]:
        doc = self._base_doc()
        doc["answers"] = list(self.answers)
        return doc

    def public_view(self) -> Dict[str, Any]:
        view = super().public_view()
        view["expectedCount"] = len([a for a in self.answers if a.strip()])
        return view


@dataclass(frozen=True)
class EssayQuestion(BaseQuestion):
    type = "essay"


Question = Union[MultipleChoiceQuestion, TrueFalseQuestion, IdentificationQuestion,
                 EnumerationQuestion, EssayQuestion]


def letter_to_index(letter: str) -> int:
    """'A' -> 0, 'B' -> 1, ..."""
    s = str(letter or "").strip().upper()
    return (ord(s[0]) - ord("A")) if s else -1


def index_to_letter(index: int) -> str:
    return chr(ord("A") + int(index)) if 0 <= int(index) < 26 else str(index)


def parse_question(doc: Dict[str, Any]) -> Question:
    """Build the typed variant for a stored (or submitted) question document.

    Raises TestValidationError for unknown types or missing answer keys.
    """
    if not isinstance(doc, dict):
        raise TestValidationError("question must be an object")
    qtype = str(doc.get("type") or "").strip().lower()
    if qtype not in QUESTION_TYPES:
        raise TestValidationError(f"unsupported question type '{doc.get('type')}'")

    points = authored_number(doc.get("points"), "points")
    if points < 0:
        raise TestValidationError("question points must be non-negative")

    base = {
        "id": str(doc.get("id") or doc.get("_id") or uuid.uuid4().hex),
        "text": str(doc.get("text") or "").strip(),
        "points": points,
        "feedback_when_correct": doc.get("feedbackWhenCorrect") or None,
        "feedback_when_incorrect": doc.get("feedbackWhenIncorrect") or None,
        "files": tuple(_str_list(doc.get("files"))),
    }

    if qtype == "multiple":
        raw = doc.get("correctAnswer")
        select_all = isinstance(raw, (list, tuple))
        letters = tuple(s.strip().upper() for s in _str_list(raw))
        choices = tuple(_str_list(doc.get("choices")))
        for l in letters:
            idx = letter_to_index(l)
            if len(l) != 1 or not (0 <= idx < max(len(choices), 1)):
                raise TestValidationError(f"correct answer '{l}' does not name a choice")
        if not letters:
            raise TestValidationError("multiple choice question needs a correct answer")
        return MultipleChoiceQuestion(choices=choices, correct_letters=letters,
                                      select_all=select_all, **base)

    if qtype == "truefalse":
        raw = doc.get("correctAnswer")
        if isinstance(raw, (list, tuple)):
            raw = raw[0] if raw else None
        correct = str(raw if raw is not None else "").strip().lower()
        if correct not in ("true", "false"):
            raise TestValidationError("true/false question needs 'true' or 'false'")
        return TrueFalseQuestion(correct=(correct == "true"), **base)

    if qtype == "identification":
        answers = _str_list(doc.get("answers"))
        if not answers:
            # legacy documents kept the single answer in correctAnswer/answer
            answers = _str_list(doc.get("correctAnswer")) or _str_list(doc.get("answer"))
        if not answers:
            raise TestValidationError("identification question needs at least one answer")
        return IdentificationQuestion(answers=tuple(answers), **base)

    if qtype == "enumeration":
        answers = _str_list(doc.get("answers"))
        if not answers:
            raise TestValidationError("enumeration question needs its list of answers")
        return EnumerationQuestion(answers=tuple(answers), **base)

    return EssayQuestion(**base)


def normalize_questions(docs: Iterable[Dict[str, Any]]) -> List[Question]:
    out: List[Question] = []
    seen = set()
    for i, d in enumerate(docs or [], start=1):
        try:
            q = parse_question(d)
        except TestValidationError as e:
            raise TestValidationError(f"Question {i}: {e}") from None
        if q.id in seen:
            raise TestValidationError(f"Question {i}: duplicate id '{q.id}'")
        seen.add(q.id)
        out.append(q)
    return out


# -----------------------------------------------------------------------------
# Selection
# -----------------------------------------------------------------------------
def select_questions(all_questions: Sequence[Any], how_many: int,
                     rng: Optional[random.Random] = None) -> List[Any]:
    """Fisher-Yates shuffle of a copy, truncated to how_many (clamped to the bank size)."""
    if not all_questions:
        return []
    try:
        count = min(int(how_many), len(all_questions))
    except (TypeError, ValueError):
        return []
    if count <= 0:
        return []
    rnd = rng or random
    pool = list(all_questions)
    for i in range(len(pool) - 1, 0, -1):
        j = rnd.randint(0, i)
        pool[i], pool[j] = pool[j], pool[i]
    return pool[:count]


def max_points_for_how_many(questions: Iterable[Any], how_many: int) -> Number:
    """Sum of the how_many largest point values in the bank."""
    pts = []
    for q in questions or []:
        raw = q.get("points") if isinstance(q, dict) else getattr(q, "points", 0)
        pts.append(as_number(raw))
    pts.sort(reverse=True)
    return as_number(sum(pts[:max(0, int(how_many or 0))]))


# -----------------------------------------------------------------------------
# Save-time validation
# -----------------------------------------------------------------------------
def _parse_deadline(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise TestValidationError(f"deadline '{value}' is not an ISO-8601 date") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _id_list(value: Any, field_name: str) -> List[int]:
    out: List[int] = []
    for v in (value if isinstance(value, (list, tuple)) else []):
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            raise TestValidationError(f"{field_name} must contain test ids") from None
    return list(dict.fromkeys(out))


def validate_test_payload(payload: Dict[str, Any], test_id: Optional[int] = None) -> Dict[str, Any]:
    """Validate an authored test and return the normalized row values.

    Enforces 1 <= howManyQuestions <= |questions| and
    passingPoints <= max_points_for_how_many(questions, howManyQuestions).
    """
    payload = payload or {}
    title = str(payload.get("title") or "").strip()
    subject_code = str(payload.get("subjectCode") or "").strip()
    if not title or not subject_code:
        raise TestValidationError("title and subjectCode are required")

    questions = normalize_questions(payload.get("questions") or [])
    try:
        how_many = int(payload.get("howManyQuestions") or 0)
    except (TypeError, ValueError):
        raise TestValidationError("howManyQuestions must be a whole number") from None
    if how_many <= 0:
        raise TestValidationError("howManyQuestions must be greater than 0")
    if how_many > len(questions):
        raise TestValidationError("howManyQuestions cannot be more than total questions")

    passing_points = authored_number(payload.get("passingPoints"), "passingPoints")
    if passing_points < 0:
        raise TestValidationError("passingPoints must be non-negative")
    max_points = max_points_for_how_many(questions, how_many)
    if passing_points > max_points:
        raise TestValidationError(
            f"passingPoints cannot exceed maximum possible points ({max_points}) "
            f"for howManyQuestions={how_many}"
        )

    access = str(payload.get("access") or "Private").strip().capitalize()
    if access not in ACCESS_LEVELS:
        raise TestValidationError("access must be 'Public' or 'Private'")

    time_limit = payload.get("timeLimit")
    if time_limit in (None, ""):
        time_limit = None
    else:
        try:
            time_limit = int(time_limit)
        except (TypeError, ValueError):
            raise TestValidationError("timeLimit must be a number of minutes") from None
        if time_limit <= 0:
            raise TestValidationError("timeLimit must be positive")

    prerequisites = _id_list(payload.get("prerequisites"), "prerequisites")
    if test_id is not None and int(test_id) in prerequisites:
        raise TestValidationError("a test cannot be its own prerequisite")

    sections = payload.get("assignedSections")
    assigned = [str(s).strip() for s in (sections if isinstance(sections, (list, tuple)) else []) if str(s).strip()]

    return {
        "title": title,
        "subject_code": subject_code,
        "description": str(payload.get("description") or ""),
        "time_limit": time_limit,
        "deadline": _parse_deadline(payload.get("deadline")),
        "access": access,
        "assigned_sections": list(dict.fromkeys(assigned)),
        "prerequisites": prerequisites,
        "how_many_questions": how_many,
        "passing_points": passing_points,
        "questions": [q.to_doc() for q in questions],
    }


def bank_from_row(test_row: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Stored question docs, each with an id. Docs saved without one get `pos-<index>`
    from their place in the stored list, so the same question resolves on start and on submit.
    """
    qs = (test_row or {}).get("questions") or []
    bank = []
    for i, q in enumerate(qs):
        if not isinstance(q, dict):
            continue
        if not (q.get("id") or q.get("_id")):
            q = dict(q, id=f"pos-{i}")
        bank.append(q)
    return bank


__all__ = [
    "QUESTION_TYPES", "ACCESS_LEVELS", "TestValidationError", "as_number", "authored_number",
    "MultipleChoiceQuestion", "TrueFalseQuestion", "IdentificationQuestion",
    "EnumerationQuestion", "EssayQuestion", "Question",
    "letter_to_index", "index_to_letter", "parse_question", "normalize_questions",
    "select_questions", "max_points_for_how_many", "validate_test_payload", "bank_from_row",
]
