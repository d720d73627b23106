import os
import re
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import errors as pg_errors
from flask import Blueprint, jsonify, request, g
from werkzeug.security import generate_password_hash

from attempts import AttemptRecords, serialize_attempt
from eligibility import missing_prerequisites
from questions import TestValidationError, validate_test_payload
from records import (
    ROLES, AccountRecords, SectionRecords, TestRecords,
    serialize_account, serialize_section, serialize_test,
)

# =========================
# Staff gating / constants
# =========================
STAFF_ROLES = ("Professor", "Dean")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH") or 8)


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Staff JSON API (Professor and Dean):
      • Test bank CRUD with save-time validation
      • Prerequisite eligibility check
      • Attempts per test, student performance report
      • Sections; accounts (Dean only)
    deps:
      - fetch_one(sql, params), fetch_all(sql, params)
      - execute_returning(sql, params), execute_in_transaction(steps)
      - optional prebuilt test_records / section_records / account_records / attempt_records
    """
    tests: TestRecords = deps.get("test_records") or TestRecords(
        deps["fetch_one"], deps["fetch_all"], deps["execute_returning"])
    sections: SectionRecords = deps.get("section_records") or SectionRecords(
        deps["fetch_all"], deps["execute_returning"])
    accounts: AccountRecords = deps.get("account_records") or AccountRecords(
        deps["fetch_one"], deps["fetch_all"], deps["execute_returning"])
    attempts: AttemptRecords = deps.get("attempt_records") or AttemptRecords(
        deps["fetch_one"], deps["fetch_all"], deps["execute_returning"], deps["execute_in_transaction"])

    bp = Blueprint(name, __name__, url_prefix=url_prefix or "/api")

    # ---------- Role gates ----------
    def _gate(*roles: str):
        """None when the current user holds one of `roles`, else the error response."""
        u = getattr(g, "user", None)
        if not u:
            return jsonify({"success": False, "message": "unauthorized"}), 401
        if u.get("role") not in roles:
            return jsonify({"success": False, "message": "forbidden"}), 403
        return None

    def _fail(message: str, status: int, **extra):
        body = {"success": False, "message": message}
        body.update(extra)
        return jsonify(body), status

    def _owns(row: Dict[str, Any]) -> bool:
        u = g.user
        return u.get("role") == "Dean" or row.get("created_by") in (None, u.get("id"))

    @bp.errorhandler(psycopg.Error)
    def _db_error(e):
        print(f"[admin] database error on {request.method} {request.path}: {e}")
        return _fail("Server error", 500)

    # ---------- Tests ----------
    def _validated(payload: Dict[str, Any], test_id: Optional[int] = None) -> Dict[str, Any]:
        values = validate_test_payload(payload, test_id)
        prereqs = values["prerequisites"]
        if prereqs:
            known = set(tests.existing_ids(prereqs))
            unknown = [p for p in prereqs if p not in known]
            if unknown:
                raise TestValidationError(f"unknown prerequisite test(s): {', '.join(map(str, unknown))}")
        return values

    @bp.get("/tests")
    def list_tests():
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        mine = (request.args.get("mine") or "").lower() in ("1", "true", "yes")
        rows = tests.list_all(created_by=g.user["id"] if mine else None)
        return jsonify([serialize_test(r, include_questions=False) for r in rows])

    @bp.post("/tests")
    def create_test():
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        try:
            values = _validated(request.get_json(silent=True) or {})
        except TestValidationError as e:
            return _fail(str(e), 400)
        row = tests.create(values, g.user["id"])
        print(f"[admin] test created id={row['id']} by={g.user['id']} questions={len(values['questions'])}")
        return jsonify(serialize_test(row)), 201

    @bp.get("/tests/<int:test_id>")
    def get_test(test_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = tests.get(test_id)
        if not row:
            return _fail("Test not found", 404)
        return jsonify(serialize_test(row))

    @bp.put("/tests/<int:test_id>")
    def update_test(test_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = tests.get(test_id)
        if not row:
            return _fail("Test not found", 404)
        if not _owns(row):
            return _fail("Only the author or the Dean can edit this test", 403)
        try:
            values = _validated(request.get_json(silent=True) or {}, test_id)
        except TestValidationError as e:
            return _fail(str(e), 400)
        updated = tests.update(test_id, values)
        if not updated:
            return _fail("Test not found", 404)
        return jsonify(serialize_test(updated))

    @bp.delete("/tests/<int:test_id>")
    def delete_test(test_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = tests.get(test_id)
        if not row:
            return _fail("Test not found", 404)
        if not _owns(row):
            return _fail("Only the author or the Dean can delete this test", 403)
        if not tests.delete(test_id):
            return _fail("Test not found", 404)
        print(f"[admin] test deleted id={test_id} by={g.user['id']}")
        return jsonify({"success": True, "message": "Deleted"})

    @bp.post("/tests/<int:test_id>/check-eligibility")
    def check_test_eligibility(test_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = tests.get(test_id)
        if not row:
            return _fail("Test not found", 404)
        if not row.get("prerequisites"):
            return jsonify({"eligible": True})

        data = request.get_json(silent=True) or {}
        completed: List[Dict[str, Any]] = []
        for ct in data.get("completedTests") or []:
            if isinstance(ct, dict):
                completed.append({"testId": ct.get("testId"),
                                  "passed": ct.get("passed") is True or ct.get("passed") == "true"})
        student_id = data.get("studentId")
        if student_id not in (None, ""):
            try:
                completed += [{"testId": t, "passed": True} for t in attempts.passed_test_ids(int(student_id))]
            except (TypeError, ValueError):
                return _fail("studentId must be an account id", 400)

        missing = missing_prerequisites(row, completed)
        if not missing:
            return jsonify({"eligible": True})
        return jsonify({"eligible": False, "missing": missing})

    @bp.get("/tests/<int:test_id>/attempts")
    def test_attempts(test_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = tests.get(test_id)
        if not row:
            return _fail("Test not found", 404)
        rows = attempts.list_for_test(test_id)
        return jsonify({
            "test": serialize_test(row, include_questions=False),
            "attempts": [serialize_attempt(r) for r in rows],
        })

    # ---------- Sections ----------
    @bp.get("/sections")
    def list_sections():
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        return jsonify([serialize_section(r) for r in sections.list_all()])

    def _section_values(data: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Body fields over the current row; blank strings clear optional fields."""
        values = {k: (current or {}).get(k) for k in SectionRecords.FIELDS}
        for key, field in (("name", "name"), ("school_year", "schoolYear"), ("course", "course"),
                           ("subject", "subject"), ("campus", "campus"), ("year_level", "yearLevel")):
            if field in data:
                values[key] = str(data.get(field) or "").strip() or None
        return values

    @bp.post("/sections")
    def create_section():
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        values = _section_values(request.get_json(silent=True) or {})
        if not values["name"]:
            return _fail("name is required", 400)
        try:
            row = sections.create(values)
        except pg_errors.UniqueViolation:
            return _fail(f"Section '{values['name']}' already exists", 409)
        return jsonify(serialize_section(row)), 201

    @bp.get("/sections/<int:section_id>")
    def get_section(section_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = sections.get(section_id)
        if not row:
            return _fail("Section not found", 404)
        return jsonify(serialize_section(row))

    @bp.put("/sections/<int:section_id>")
    def update_section(section_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        row = sections.get(section_id)
        if not row:
            return _fail("Section not found", 404)
        values = _section_values(request.get_json(silent=True) or {}, row)
        if not values["name"]:
            return _fail("name is required", 400)
        try:
            updated = sections.update(section_id, values)
        except pg_errors.UniqueViolation:
            return _fail(f"Section '{values['name']}' already exists", 409)
        if not updated:
            return _fail("Section not found", 404)
        return jsonify(serialize_section(updated))

    @bp.delete("/sections/<int:section_id>")
    def delete_section(section_id: int):
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        if not sections.delete(section_id):
            return _fail("Section not found", 404)
        return jsonify({"success": True, "message": "Deleted"})

    # ---------- Accounts (Dean) ----------
    @bp.get("/accounts")
    def list_accounts():
        denied = _gate("Dean")
        if denied:
            return denied
        role = (request.args.get("role") or "").strip() or None
        if role and role not in ROLES:
            return _fail(f"role must be one of {', '.join(ROLES)}", 400)
        return jsonify([serialize_account(r) for r in accounts.list_all(role)])

    @bp.post("/accounts")
    def create_account():
        denied = _gate("Dean")
        if denied:
            return denied
        data = request.get_json(silent=True) or {}
        role = (data.get("role") or "").strip().capitalize()
        values = {
            "user_id": (data.get("userId") or "").strip(),
            "email": (data.get("email") or "").strip().lower(),
            "full_name": (data.get("fullName") or "").strip(),
            "role": role,
        }
        password = data.get("password") or ""

        if not all(values.values()):
            return _fail("userId, email, fullName and role are required", 400)
        if role not in ROLES:
            return _fail(f"role must be one of {', '.join(ROLES)}", 400)
        if not EMAIL_RE.match(values["email"]):
            return _fail("email is not valid", 400)
        if len(password) < MIN_PASSWORD_LENGTH:
            return _fail(f"password must be at least {MIN_PASSWORD_LENGTH} characters", 400)

        if role == "Student":
            for key, field in (("course", "course"), ("section", "section"), ("year_level", "yearLevel")):
                values[key] = (str(data.get(field) or "")).strip()
                if not values[key]:
                    return _fail("students need course, section and yearLevel", 400)
        else:
            values["department"] = (data.get("department") or "").strip() or None
            values["designation"] = (data.get("designation") or "").strip() or role
        values["password_hash"] = generate_password_hash(password)

        try:
            row = accounts.create(values)
        except pg_errors.UniqueViolation:
            return _fail("An account with that userId or email already exists", 409)
        print(f"[admin] account created {row['user_id']} role={role} by={g.user['id']}")
        return jsonify(serialize_account(row)), 201

    @bp.delete("/accounts/<int:account_id>")
    def delete_account(account_id: int):
        denied = _gate("Dean")
        if denied:
            return denied
        if account_id == g.user.get("id"):
            return _fail("You cannot delete your own account", 400)
        if not accounts.delete(account_id):
            return _fail("Account not found", 404)
        print(f"[admin] account deleted id={account_id} by={g.user['id']}")
        return jsonify({"success": True, "message": "Deleted"})

    # ---------- Reports ----------
    @bp.get("/reports/student-performance")
    def student_performance():
        denied = _gate(*STAFF_ROLES)
        if denied:
            return denied
        report = []
        for r in attempts.student_performance():
            avg = r.get("average_score")
            taken = int(r.get("tests_taken") or 0)
            passed = int(r.get("tests_passed") or 0)
            report.append({
                "studentId": r.get("student_id"),
                "userId": r.get("user_id"),
                "fullName": r.get("full_name"),
                "course": r.get("course"),
                "section": r.get("section"),
                "yearLevel": r.get("year_level"),
                "testsTaken": taken,
                "testsPassed": passed,
                "passRate": round(100.0 * passed / taken, 2) if taken else None,
                "averageScore": round(float(avg), 2) if avg is not None else None,
                "bestScore": float(r["best_score"]) if r.get("best_score") is not None else None,
                "lastTakenAt": serialize_attempt({"taken_at": r.get("last_taken_at")})["takenAt"],
            })
        return jsonify({"students": report})

    return bp
