import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg import errors as pg_errors


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempts import AttemptRecords


TAKEN_AT = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeAttemptDB:
    """In-memory test_attempts table with the (student_id, test_id) unique index."""

    def __init__(self):
        self.rows = {}
        self.next_id = 1
        self.transactions = 0

    def _insert(self, params):
        student_id, test_id, score, passed, results_json, is_retake = params
        key = (student_id, test_id)
        if key in self.rows:
            raise pg_errors.UniqueViolation("duplicate key value violates unique constraint")
        row = {
            "id": self.next_id, "student_id": student_id, "test_id": test_id, "score": score,
            "passed": passed, "question_results": json.loads(results_json),
            "taken_at": TAKEN_AT, "is_retake": is_retake,
        }
        self.next_id += 1
        self.rows[key] = row
        return [{"id": row["id"], "taken_at": TAKEN_AT}]

    def _run(self, sql, params):
        if "INSERT INTO public.test_attempts" in sql:
            return self._insert(params)
        if "DELETE FROM public.test_attempts" in sql:
            self.rows.pop(tuple(params), None)
            return None
        raise AssertionError(f"unexpected SQL: {sql}")

    def execute_returning(self, sql, params=()):
        return self._run(sql, params)

    def execute_in_transaction(self, steps):
        self.transactions += 1
        snapshot = dict(self.rows)
        rows = []
        try:
            for sql, params in steps:
                out = self._run(sql, params)
                if out is not None:
                    rows = out
        except Exception:
            self.rows = snapshot
            raise
        return rows

    def fetch_one(self, sql, params=()):
        if "WHERE student_id = %s AND test_id = %s" in sql:
            return self.rows.get(tuple(params))
        return None

    def fetch_all(self, sql, params=()):
        if "AND passed" in sql:
            return [{"test_id": r["test_id"]} for r in self.rows.values()
                    if r["student_id"] == params[0] and r["passed"]]
        if "WHERE student_id = %s" in sql:
            return [r for r in self.rows.values() if r["student_id"] == params[0]]
        if "WHERE t.test_id = %s" in sql:
            return [dict(r, full_name=f"Student {r['student_id']}", user_id=str(r["student_id"]), section="A")
                    for r in self.rows.values() if r["test_id"] == params[0]]
        return []


class FakeTestRecords:
    """Stands in for records.TestRecords over a dict of rows keyed by id."""

    def __init__(self, rows=()):
        self.rows = {r["id"]: dict(r) for r in rows}
        self.next_id = max(self.rows, default=0) + 1

    def get(self, test_id):
        return self.rows.get(test_id)

    def list_all(self, created_by=None):
        rows = list(self.rows.values())
        if created_by is not None:
            rows = [r for r in rows if r.get("created_by") == created_by]
        return rows

    def list_public(self):
        return [r for r in self.rows.values() if r.get("access") == "Public"]

    def titles(self, ids):
        out = {}
        for i in ids or []:
            try:
                i = int(i)
            except (TypeError, ValueError):
                continue
            if i in self.rows:
                out[i] = self.rows[i]["title"]
        return out

    def existing_ids(self, ids):
        return list(self.titles(ids).keys())

    def create(self, values, created_by):
        row = dict(values, id=self.next_id, created_by=created_by, created_at=TAKEN_AT, updated_at=TAKEN_AT)
        self.rows[row["id"]] = row
        self.next_id += 1
        return row

    def update(self, test_id, values):
        if test_id not in self.rows:
            return None
        self.rows[test_id].update(values)
        return self.rows[test_id]

    def delete(self, test_id):
        return self.rows.pop(test_id, None) is not None


@pytest.fixture
def attempt_db():
    return FakeAttemptDB()


@pytest.fixture
def attempt_records(attempt_db):
    return AttemptRecords(attempt_db.fetch_one, attempt_db.fetch_all,
                          attempt_db.execute_returning, attempt_db.execute_in_transaction)


@pytest.fixture
def make_test():
    def _make(test_id, **overrides):
        row = {
            "id": test_id,
            "title": f"Test {test_id}",
            "subject_code": "GEN101",
            "description": "",
            "time_limit": None,
            "deadline": None,
            "access": "Public",
            "assigned_sections": ["BSIT3-A"],
            "prerequisites": [],
            "how_many_questions": 1,
            "passing_points": 1,
            "questions": [{"id": f"t{test_id}q1", "type": "truefalse", "text": "True?",
                           "points": 1, "correctAnswer": "true"}],
            "created_by": 100,
        }
        row.update(overrides)
        return row
    return _make
