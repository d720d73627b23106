# exam.py
# -----------------------------------------------------------------------------
# Student test-taking blueprint (JSON).
# - Dashboard / search list only tests the student is eligible for
# - Start: eligibility + deadline + existing-attempt check, random subset of the bank
# - The shown subset lives in the session and is the only thing ever graded
# - One current attempt per (student, test); retakes replace it on submit
# -----------------------------------------------------------------------------

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Callable

import psycopg
from flask import Blueprint, request, jsonify, session, url_for, g

from attempts import AttemptConflict, AttemptRecords, serialize_attempt, submit_attempt
from eligibility import check_eligibility, deadline_passed, deadline_status, visible_tests
from grading import ENUMERATION_MODES
from questions import (
    TestValidationError, as_number, bank_from_row, max_points_for_how_many, parse_question, select_questions,
)
from records import TestRecords, serialize_test


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns the student Blueprint mounted at base_path (default "/student").
    Required deps: fetch_one, fetch_all, execute_returning, execute_in_transaction
    Optional deps: test_records, attempt_records, now, rng
    """
    url_prefix = base_path or "/student"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Deps ----------------------------------------------------------------
    tests: TestRecords = deps.get("test_records") or TestRecords(
        deps["fetch_one"], deps["fetch_all"], deps["execute_returning"])
    attempts: AttemptRecords = deps.get("attempt_records") or AttemptRecords(
        deps["fetch_one"], deps["fetch_all"], deps["execute_returning"], deps["execute_in_transaction"])
    now: Callable[[], datetime] = deps.get("now") or (lambda: datetime.now(timezone.utc))
    rng = deps.get("rng")

    # ---- Config --------------------------------------------------------------
    ENFORCE_DEADLINE         = os.getenv("ENFORCE_DEADLINE", "1").lower() in ("1", "true", "yes")
    DEADLINE_GRACE_SECONDS   = int(os.getenv("DEADLINE_GRACE_SECONDS") or 0)
    ENFORCE_TIME_LIMIT       = os.getenv("ENFORCE_TIME_LIMIT", "0").lower() in ("1", "true", "yes")
    TIME_LIMIT_GRACE_SECONDS = int(os.getenv("TIME_LIMIT_GRACE_SECONDS") or 60)
    ENUMERATION_MATCHING     = (os.getenv("ENUMERATION_MATCHING") or "greedy").strip().lower()
    if ENUMERATION_MATCHING not in ENUMERATION_MODES:
        print(f"[exam] unknown ENUMERATION_MATCHING={ENUMERATION_MATCHING!r}; using greedy")
        ENUMERATION_MATCHING = "greedy"

    # ------------------------------- helpers ----------------------------------
    def _student() -> Optional[Dict[str, Any]]:
        u = getattr(g, "user", None)
        return u if u and u.get("role") == "Student" else None

    def _denied():
        if not getattr(g, "user", None):
            return jsonify({"success": False, "message": "unauthorized"}), 401
        return jsonify({"success": False, "message": "students only"}), 403

    def _fail(message: str, status: int, **extra):
        body = {"success": False, "message": message}
        body.update(extra)
        return jsonify(body), status

    def _summary(t: Dict[str, Any]) -> Dict[str, Any]:
        status = deadline_status(t, now())
        bank = bank_from_row(t)
        return {
            "id": t["id"],
            "title": t.get("title"),
            "subjectCode": t.get("subject_code"),
            "description": t.get("description") or "",
            "timeLimit": t.get("time_limit"),
            "deadline": serialize_test(t, include_questions=False)["deadline"],
            "questionCount": len(bank),
            "howManyQuestions": t.get("how_many_questions"),
            "totalPoints": max_points_for_how_many(bank, t.get("how_many_questions") or 0),
            "passingPoints": as_number(t.get("passing_points")),
            "status": status,
            "isExpired": status == "expired",
            "hasDeadline": status != "no-deadline",
        }

    def _eligibility_for(student: Dict[str, Any], t: Dict[str, Any]):
        passed = attempts.passed_test_ids(student["id"])
        titles = tests.titles(t.get("prerequisites") or [])
        return check_eligibility(student, t, passed, titles)

    def _results_url(test_id: int) -> str:
        return url_for(f"{bp.name}.test_results", test_id=test_id)

    @bp.errorhandler(psycopg.Error)
    def _db_error(e):
        print(f"[exam] database error on {request.method} {request.path}: {e}")
        return _fail("Server error", 500)

    # --------------------------------- routes ---------------------------------
    @bp.get("/dashboard")
    def dashboard():
        student = _student()
        if not student:
            return _denied()

        rows = attempts.list_for_student(student["id"])
        by_test = {r["test_id"]: r for r in rows}
        passed = [tid for tid, r in by_test.items() if r.get("passed")]
        visible = visible_tests(student, tests.list_public(), passed)

        assigned = [_summary(t) for t in visible if t["id"] not in by_test]
        titles = tests.titles(by_test.keys())
        completed = []
        for r in rows:
            item = serialize_attempt(r)
            item.pop("questionResults", None)
            item["title"] = titles.get(r["test_id"]) or f"Test {r['test_id']}"
            item["resultsUrl"] = _results_url(r["test_id"])
            completed.append(item)

        return jsonify({
            "success": True,
            "student": {k: student.get(k) for k in ("id", "userId", "fullName", "course", "section", "yearLevel")},
            "assignedTests": assigned,
            "completedTests": completed,
        })

    @bp.get("/search")
    def search():
        student = _student()
        if not student:
            return _denied()
        q = (request.args.get("q") or "").strip().lower()

        rows = attempts.list_for_student(student["id"])
        done = {r["test_id"] for r in rows}
        passed = [r["test_id"] for r in rows if r.get("passed")]
        found: List[Dict[str, Any]] = []
        for t in visible_tests(student, tests.list_public(), passed):
            if deadline_status(t, now()) == "expired":
                continue
            hay = " ".join(str(t.get(k) or "") for k in ("title", "subject_code", "description")).lower()
            if q and q not in hay:
                continue
            item = _summary(t)
            item["completed"] = t["id"] in done
            found.append(item)
        return jsonify({"success": True, "query": q, "tests": found})

    @bp.get("/test/<int:test_id>")
    def test_details(test_id: int):
        student = _student()
        if not student:
            return _denied()
        t = tests.get(test_id)
        if not t:
            return _fail("Test not found", 404)
        verdict = _eligibility_for(student, t)
        if not verdict.eligible:
            return _fail(verdict.message, 403, reason=verdict.reason, missing=verdict.missing)

        prior = attempts.get(student["id"], test_id)
        details = _summary(t)
        details["attempt"] = None
        if prior:
            details["attempt"] = {
                "score": as_number(prior.get("score")),
                "passed": bool(prior.get("passed")),
                "takenAt": serialize_attempt(prior)["takenAt"],
                "resultsUrl": _results_url(test_id),
            }
        return jsonify({"success": True, "test": details})

    @bp.get("/take-test/<int:test_id>")
    def take_test(test_id: int):
        student = _student()
        if not student:
            return _denied()
        t = tests.get(test_id)
        if not t:
            return _fail("Test not found", 404)

        verdict = _eligibility_for(student, t)
        if not verdict.eligible:
            return _fail(verdict.message, 403, reason=verdict.reason, missing=verdict.missing)
        if ENFORCE_DEADLINE and deadline_passed(t, now(), DEADLINE_GRACE_SECONDS):
            return _fail("The deadline for this test has passed.", 403, reason="expired")

        retake = (request.args.get("retake") or "").lower() in ("1", "true", "yes")
        prior = attempts.get(student["id"], test_id)
        if prior and not retake:
            return _fail("Test already attempted. Use retake option if available.", 409,
                         resultsUrl=_results_url(test_id))

        bank = bank_from_row(t)
        shown = select_questions(bank, t.get("how_many_questions") or 0, rng)
        try:
            parsed = [parse_question(d) for d in shown]
        except TestValidationError as e:
            print(f"[exam] test={test_id} has an unusable question: {e}")
            return _fail("This test contains a question that cannot be shown. Ask the author to fix it.",
                         500, reason="invalid_question")
        started = now()

        session["current_test"] = {
            "test_id": test_id,
            "original_questions": len(bank),
            "shown_questions": [q.id for q in parsed],
            "start_time": started.isoformat(),
            "is_retake": bool(prior and retake),
        }
        print(f"[exam] start student={student['id']} test={test_id} "
              f"shown={len(parsed)}/{len(bank)} retake={bool(prior and retake)}")

        return jsonify({
            "success": True,
            "test": {
                "id": test_id,
                "title": t.get("title"),
                "subjectCode": t.get("subject_code"),
                "timeLimit": t.get("time_limit"),
                "deadline": serialize_test(t, include_questions=False)["deadline"],
                "passingPoints": as_number(t.get("passing_points")),
                "totalPoints": as_number(sum(q.points for q in parsed)),
            },
            "questions": [q.public_view() for q in parsed],
            "isRetake": bool(prior and retake),
            "startTime": started.isoformat(),
            "submitUrl": url_for(f"{bp.name}.submit_test", test_id=test_id),
        })

    @bp.post("/submit-test/<int:test_id>")
    def submit_test(test_id: int):
        student = _student()
        if not student:
            return _denied()

        marker = session.get("current_test") or {}
        if marker.get("test_id") != test_id:
            return _fail("No active attempt for this test. Start the test first.", 400)

        try:
            t = tests.get(test_id)
            if not t:
                return _fail("Test not found", 404)
            if ENFORCE_DEADLINE and deadline_passed(t, now(), DEADLINE_GRACE_SECONDS):
                return _fail("The deadline for this test has passed.", 403, reason="expired")
            if ENFORCE_TIME_LIMIT and t.get("time_limit"):
                started = datetime.fromisoformat(marker["start_time"])
                limit = timedelta(minutes=int(t["time_limit"]), seconds=TIME_LIMIT_GRACE_SECONDS)
                if now() > started + limit:
                    return _fail("Time limit exceeded.", 400, reason="time_limit")

            data = request.get_json(silent=True) or {}
            answers = data.get("answers")
            if not isinstance(answers, (list, dict)):
                answers = []
            is_retake = bool(marker.get("is_retake") or data.get("isRetake"))

            try:
                result = submit_attempt(
                    attempts, student, t, marker.get("shown_questions") or [], answers,
                    is_retake, ENUMERATION_MATCHING,
                )
            except AttemptConflict as e:
                return _fail(str(e), 409, resultsUrl=_results_url(test_id))
            result["resultsUrl"] = _results_url(test_id)
            return jsonify(result)
        finally:
            session.pop("current_test", None)

    @bp.get("/test-results/<int:test_id>", endpoint="test_results")
    def test_results(test_id: int):
        student = _student()
        if not student:
            return _denied()
        row = attempts.get(student["id"], test_id)
        if not row:
            return _fail("No attempt found for this test.", 404)
        t = tests.get(test_id) or {}
        out = serialize_attempt(row)
        out["title"] = t.get("title") or f"Test {test_id}"
        out["subjectCode"] = t.get("subject_code")
        out["passingPoints"] = as_number(t.get("passing_points"))
        out["totalPoints"] = as_number(sum(as_number(r.get("maxPoints")) for r in out["questionResults"]))
        out["retakeUrl"] = url_for(f"{bp.name}.take_test", test_id=test_id, retake="true")
        return jsonify({"success": True, "attempt": out})

    return bp
