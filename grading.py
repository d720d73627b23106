"""Auto-grading of a submitted attempt against the questions that were actually shown."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from questions import (
    EnumerationQuestion, EssayQuestion, IdentificationQuestion, MultipleChoiceQuestion,
    TestValidationError, TrueFalseQuestion, as_number, bank_from_row, index_to_letter, parse_question,
)

ENUMERATION_MODES = ("greedy", "optimal")
NO_ANSWER = "No answer provided"
NO_KEY = "No correct answers defined"

_ENUM_SPLIT = re.compile(r"[,|\n]")


@dataclass
class QuestionResult:
    question_id: str
    question_text: str
    question_type: str
    student_answer: Any
    correct_answer: Any
    is_correct: bool
    points_earned: Any
    max_points: Any
    feedback: Any = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "questionId": self.question_id,
            "questionText": self.question_text,
            "questionType": self.question_type,
            "studentAnswer": self.student_answer,
            "correctAnswer": self.correct_answer,
            "isCorrect": self.is_correct,
            "pointsEarned": self.points_earned,
            "maxPoints": self.max_points,
            "feedback": self.feedback,
        }


@dataclass
class GradedResult:
    score: Any
    total_points: Any
    passed: bool
    results: List[QuestionResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Per-type rules
# -----------------------------------------------------------------------------
def _choice_index(value: Any) -> Optional[int]:
    """Submitted choice index ('2', 2, 2.0 -> 2). Anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        n = float(str(value).strip())
    except ValueError:
        return None
    return int(n) if n.is_integer() else None


def grade_multiple(q: MultipleChoiceQuestion, answer: Any) -> bool:
    if answer is None:
        return False
    if q.select_all:
        raw = answer if isinstance(answer, (list, tuple)) else [answer]
        submitted = [_choice_index(v) for v in raw]
        if not submitted or any(i is None for i in submitted):
            return False
        return sorted(submitted) == q.correct_indices()
    if isinstance(answer, (list, tuple)):
        if len(answer) != 1:
            return False
        answer = answer[0]
    idx = _choice_index(answer)
    return idx is not None and idx == q.correct_indices()[0]


def grade_truefalse(q: TrueFalseQuestion, answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(answer, (list, tuple)):
        answer = answer[0] if len(answer) == 1 else None
        if answer is None:
            return False
    return str(answer).strip().lower() == ("true" if q.correct else "false")


def grade_identification(q: IdentificationQuestion, answer: Any) -> bool:
    if answer is None or isinstance(answer, (list, tuple, dict)):
        return False
    given = str(answer).strip().lower()
    return given in {a.strip().lower() for a in q.answers}


def enumeration_tokens(answer: Any) -> List[str]:
    """Trimmed, lower-cased, de-duplicated tokens from a list or a ',', '|' or newline separated string."""
    if answer is None:
        return []
    if isinstance(answer, (list, tuple)):
        parts = [str(a) for a in answer if a is not None]
    else:
        parts = _ENUM_SPLIT.split(str(answer))
    return list(dict.fromkeys(p.strip().lower() for p in parts if p.strip()))


def _prefix_match(given: str, expected: str) -> bool:
    return given == expected or expected.startswith(given) or given.startswith(expected)


def _greedy_matches(given: Sequence[str], expected: Sequence[str]) -> int:
    remaining = list(expected)
    count = 0
    for s in given:
        for i, c in enumerate(remaining):
            if _prefix_match(s, c):
                count += 1
                del remaining[i]
                break
    return count


def _optimal_matches(given: Sequence[str], expected: Sequence[str]) -> int:
    """Maximum bipartite matching (augmenting paths)."""
    owner: Dict[int, int] = {}

    def _try(si: int, seen: set) -> bool:
        for ci, c in enumerate(expected):
            if ci in seen or not _prefix_match(given[si], c):
                continue
            seen.add(ci)
            if ci not in owner or _try(owner[ci], seen):
                owner[ci] = si
                return True
        return False

    return sum(1 for si in range(len(given)) if _try(si, set()))


def grade_enumeration(q: EnumerationQuestion, answer: Any, matching: str = "greedy") -> bool:
    expected = [a.strip().lower() for a in q.answers if a.strip()]
    if not expected:
        return False
    given = enumeration_tokens(answer)
    if len(given) != len(expected):
        return False
    matcher = _optimal_matches if matching == "optimal" else _greedy_matches
    return matcher(given, expected) == len(expected)


def grade_question(q: Any, answer: Any, enumeration_matching: str = "greedy") -> bool:
    if isinstance(q, MultipleChoiceQuestion):
        return grade_multiple(q, answer)
    if isinstance(q, TrueFalseQuestion):
        return grade_truefalse(q, answer)
    if isinstance(q, IdentificationQuestion):
        return grade_identification(q, answer)
    if isinstance(q, EnumerationQuestion):
        return grade_enumeration(q, answer, enumeration_matching)
    if isinstance(q, EssayQuestion):
        return True
    return False


# -----------------------------------------------------------------------------
# Display formatting
# -----------------------------------------------------------------------------
def _blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, (list, tuple)):
        return not any(str(a).strip() for a in answer if a is not None)
    return not str(answer).strip()


def _cap(value: Any) -> str:
    s = str(value)
    return s[:1].upper() + s[1:].lower()


def display_answers(q: Any, answer: Any):
    """(student answer, correct answer) as shown on the results page."""
    if isinstance(q, EnumerationQuestion):
        if isinstance(answer, (list, tuple)):
            shown = ", ".join(str(a).strip() for a in answer if a is not None and str(a).strip())
        else:
            shown = str(answer).strip() if answer is not None else ""
        key = ", ".join(a for a in q.answers if a.strip())
        return (shown or NO_ANSWER), (key or NO_KEY)

    if _blank(answer):
        shown = NO_ANSWER
    elif isinstance(q, TrueFalseQuestion):
        shown = _cap(answer[0] if isinstance(answer, (list, tuple)) else answer)
    elif isinstance(q, MultipleChoiceQuestion):
        raw = answer if isinstance(answer, (list, tuple)) else [answer]
        letters = []
        for v in raw:
            i = _choice_index(v)
            letters.append(index_to_letter(i) if i is not None else str(v))
        shown = ", ".join(letters)
    else:
        shown = answer

    if isinstance(q, MultipleChoiceQuestion):
        key = ", ".join(q.correct_letters)
    elif isinstance(q, TrueFalseQuestion):
        key = "True" if q.correct else "False"
    elif isinstance(q, IdentificationQuestion):
        key = ", ".join(q.answers)
    else:
        key = None
    return shown, key


# -----------------------------------------------------------------------------
# Attempt
# -----------------------------------------------------------------------------
def _answer_at(answers: Any, index: int, question_id: str) -> Any:
    if isinstance(answers, dict):
        if question_id in answers:
            return answers[question_id]
        return answers.get(str(index))
    if isinstance(answers, (list, tuple)) and index < len(answers):
        return answers[index]
    return None


def grade_attempt(test: Dict[str, Any], shown_question_ids: Sequence[Any], student_answers: Any,
                  enumeration_matching: str = "greedy") -> GradedResult:
    """Grade answer i against the bank question whose id is shown_question_ids[i].

    Ids that no longer resolve (question removed or broken by an edit) are skipped
    and reported in `warnings`; they add nothing to score or total.
    """
    bank = {}
    for doc in bank_from_row(test):
        bank.setdefault(str(doc.get("id") or doc.get("_id")), doc)

    score = 0
    total = 0
    results: List[QuestionResult] = []
    warnings: List[str] = []

    for index, qid in enumerate(shown_question_ids or []):
        doc = bank.get(str(qid))
        if doc is None:
            msg = f"question {qid} not found in test {(test or {}).get('id')}"
            print(f"[grading] skipped: {msg}")
            warnings.append(msg)
            continue
        try:
            q = parse_question(doc)
        except TestValidationError as e:
            msg = f"question {qid} could not be graded: {e}"
            print(f"[grading] skipped: {msg}")
            warnings.append(msg)
            continue

        answer = _answer_at(student_answers, index, str(qid))
        ok = grade_question(q, answer, enumeration_matching)
        earned = q.points if ok else 0
        score += earned
        total += q.points

        shown, key = display_answers(q, answer)
        results.append(QuestionResult(
            question_id=q.id,
            question_text=q.text,
            question_type=q.type,
            student_answer=shown,
            correct_answer=key,
            is_correct=ok,
            points_earned=earned,
            max_points=q.points,
            feedback=q.feedback_for(ok),
        ))

    score = as_number(score)
    passing = as_number((test or {}).get("passing_points", (test or {}).get("passingPoints")))
    return GradedResult(
        score=score,
        total_points=as_number(total),
        passed=bool(score >= passing),
        results=results,
        warnings=warnings,
    )


__all__ = [
    "ENUMERATION_MODES", "QuestionResult", "GradedResult",
    "grade_multiple", "grade_truefalse", "grade_identification", "grade_enumeration",
    "enumeration_tokens", "grade_question", "display_answers", "grade_attempt",
]
