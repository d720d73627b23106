"""Attempt records: one current attempt per (student, test); a retake replaces it."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from psycopg import errors as pg_errors

from grading import grade_attempt
from questions import as_number

ATTEMPT_COLUMNS = "id, student_id, test_id, score, passed, question_results, taken_at, is_retake"

INSERT_ATTEMPT = """
    INSERT INTO public.test_attempts
        (student_id, test_id, score, passed, question_results, taken_at, is_retake)
    VALUES (%s, %s, %s, %s, %s::jsonb, now(), %s)
    RETURNING id, taken_at;
"""

DELETE_PRIOR = "DELETE FROM public.test_attempts WHERE student_id = %s AND test_id = %s;"


class AttemptConflict(RuntimeError):
    """The student already has an attempt for this test and did not ask for a retake."""


def serialize_attempt(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    taken = row.get("taken_at")
    out = {
        "id": row.get("id"),
        "studentId": row.get("student_id"),
        "testId": row.get("test_id"),
        "score": as_number(row.get("score")),
        "passed": bool(row.get("passed")),
        "questionResults": row.get("question_results") or [],
        "takenAt": taken.isoformat() if isinstance(taken, datetime) else taken,
        "isRetake": bool(row.get("is_retake")),
    }
    for extra in ("full_name", "user_id", "section", "title"):
        if extra in row:
            out[{"full_name": "fullName", "user_id": "userId"}.get(extra, extra)] = row[extra]
    return out


class AttemptRecords:
    def __init__(self, fetch_one: Callable, fetch_all: Callable,
                 execute_returning: Callable, execute_in_transaction: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute_returning = execute_returning
        self.execute_in_transaction = execute_in_transaction

    def get(self, student_id: int, test_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.test_attempts
             WHERE student_id = %s AND test_id = %s;
        """, (student_id, test_id))

    def list_for_student(self, student_id: int) -> List[Dict[str, Any]]:
        return self.fetch_all(f"""
            SELECT {ATTEMPT_COLUMNS}
              FROM public.test_attempts
             WHERE student_id = %s
             ORDER BY taken_at DESC;
        """, (student_id,)) or []

    def passed_test_ids(self, student_id: int) -> List[int]:
        rows = self.fetch_all("""
            SELECT test_id
              FROM public.test_attempts
             WHERE student_id = %s AND passed;
        """, (student_id,)) or []
        return [r["test_id"] for r in rows]

    def list_for_test(self, test_id: int) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT t.id, t.student_id, t.test_id, t.score, t.passed, t.question_results,
                   t.taken_at, t.is_retake, a.full_name, a.user_id, a.section
              FROM public.test_attempts t
              JOIN public.accounts a ON a.id = t.student_id
             WHERE t.test_id = %s
             ORDER BY t.taken_at DESC;
        """, (test_id,)) or []

    def record(self, student_id: int, test_id: int, score: Any, passed: bool,
               question_results: List[Dict[str, Any]], is_retake: bool) -> Dict[str, Any]:
        """Insert the attempt; a retake first deletes the prior one in the same transaction.

        Raises AttemptConflict when the (student, test) unique index rejects the insert.
        """
        params = (student_id, test_id, score, passed,
                  json.dumps(question_results, ensure_ascii=False), is_retake)
        try:
            if is_retake:
                rows = self.execute_in_transaction([
                    (DELETE_PRIOR, (student_id, test_id)),
                    (INSERT_ATTEMPT, params),
                ])
            else:
                rows = self.execute_returning(INSERT_ATTEMPT, params)
        except pg_errors.UniqueViolation:
            raise AttemptConflict("Test already attempted. Use retake option if available.") from None
        return rows[0]

    def student_performance(self) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT a.id AS student_id, a.user_id, a.full_name, a.course, a.section, a.year_level,
                   COUNT(t.id) AS tests_taken,
                   COUNT(t.id) FILTER (WHERE t.passed) AS tests_passed,
                   AVG(t.score) AS average_score,
                   MAX(t.score) AS best_score,
                   MAX(t.taken_at) AS last_taken_at
              FROM public.accounts a
              LEFT JOIN public.test_attempts t ON t.student_id = a.id
             WHERE a.role = 'Student'
             GROUP BY a.id
             ORDER BY a.full_name ASC;
        """, ()) or []


def submit_attempt(records: AttemptRecords, student: Dict[str, Any], test: Dict[str, Any],
                   shown_ids: Sequence[Any], answers: Any, is_retake: bool,
                   enumeration_matching: str = "greedy") -> Dict[str, Any]:
    """Grade against the shown subset and persist; returns the client-facing result."""
    graded = grade_attempt(test, shown_ids, answers, enumeration_matching)
    results = [r.to_json() for r in graded.results]
    row = records.record(student["id"], test["id"], graded.score, graded.passed, results, bool(is_retake))
    taken = row.get("taken_at")
    print(f"[exam] attempt saved student={student['id']} test={test['id']} "
          f"score={graded.score}/{graded.total_points} passed={graded.passed} retake={bool(is_retake)}")
    out = {
        "success": True,
        "score": graded.score,
        "totalPoints": graded.total_points,
        "passed": graded.passed,
        "results": results,
        "isRetake": bool(is_retake),
        "attemptId": row.get("id"),
        "takenAt": taken.isoformat() if isinstance(taken, datetime) else taken,
    }
    if graded.warnings:
        out["warnings"] = list(graded.warnings)
    return out
