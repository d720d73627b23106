import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask, g


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import FakeTestRecords
from exam import create_exam_blueprint


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
STUDENT = {"id": 5, "role": "Student", "course": "BSIT", "yearLevel": "3rd Year", "section": "A"}
POINTS = {f"q{i}": i for i in range(1, 6)}


@pytest.fixture
def clock():
    return {"now": NOW}


@pytest.fixture
def bank_test(make_test):
    questions = [{"id": qid, "type": "truefalse", "text": f"Statement {qid}", "points": pts,
                  "correctAnswer": "true"} for qid, pts in POINTS.items()]
    return make_test(1, title="Cell Biology", questions=questions, how_many_questions=3, passing_points=3)


def _make_app(tests, attempt_records, clock, user=STUDENT):
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test-secret"

    @app.before_request
    def _set_user():
        g.user = user

    app.register_blueprint(create_exam_blueprint("/student", {
        "test_records": tests,
        "attempt_records": attempt_records,
        "now": lambda: clock["now"],
        "rng": random.Random(7),
    }))
    return app


@pytest.fixture
def client(bank_test, make_test, attempt_records, clock):
    tests = FakeTestRecords([
        bank_test,
        make_test(2, title="Private Quiz", access="Private"),
        make_test(3, title="Other Section", assigned_sections=["BSCS1-B"]),
        make_test(4, title="Advanced", prerequisites=[1]),
    ])
    return _make_app(tests, attempt_records, clock).test_client()


def _answer_all_true(client, test_id=1, **query):
    started = client.get(f"/student/take-test/{test_id}", query_string=query)
    assert started.status_code == 200
    shown = [q["id"] for q in started.get_json()["questions"]]
    return shown, client.post(f"/student/submit-test/{test_id}", json={"answers": {qid: "true" for qid in shown}})


def test_requires_student_role(bank_test, attempt_records, clock):
    tests = FakeTestRecords([bank_test])
    anonymous = _make_app(tests, attempt_records, clock, user=None).test_client()
    assert anonymous.get("/student/dashboard").status_code == 401
    professor = _make_app(tests, attempt_records, clock, user={"id": 9, "role": "Professor"}).test_client()
    assert professor.get("/student/dashboard").status_code == 403


def test_dashboard_lists_only_eligible_tests(client):
    body = client.get("/student/dashboard").get_json()
    assert [t["id"] for t in body["assignedTests"]] == [1]
    assigned = body["assignedTests"][0]
    assert assigned["questionCount"] == 5
    assert assigned["totalPoints"] == 12
    assert assigned["status"] == "no-deadline"
    assert body["completedTests"] == []


def test_take_test_hides_answer_key_and_stores_marker(client):
    resp = client.get("/student/take-test/1")
    assert resp.status_code == 200
    body = resp.get_json()
    assert len(body["questions"]) == 3
    for q in body["questions"]:
        assert "correctAnswer" not in q and "answers" not in q
    assert body["isRetake"] is False
    assert body["submitUrl"] == "/student/submit-test/1"
    with client.session_transaction() as sess:
        marker = sess["current_test"]
    assert marker["test_id"] == 1
    assert marker["original_questions"] == 5
    assert marker["shown_questions"] == [q["id"] for q in body["questions"]]


def test_submit_grades_only_the_shown_subset(client):
    shown, resp = _answer_all_true(client)
    assert resp.status_code == 200
    body = resp.get_json()
    expected = sum(POINTS[qid] for qid in shown)
    assert body["score"] == expected
    assert body["totalPoints"] == expected
    assert body["passed"] is True
    assert [r["questionId"] for r in body["results"]] == shown
    with client.session_transaction() as sess:
        assert "current_test" not in sess


def test_submit_ignores_client_supplied_question_list(client):
    started = client.get("/student/take-test/1").get_json()
    shown = [q["id"] for q in started["questions"]]
    resp = client.post("/student/submit-test/1", json={
        "answers": {qid: "true" for qid in POINTS},
        "shownQuestions": list(POINTS),
    })
    assert [r["questionId"] for r in resp.get_json()["results"]] == shown


def test_submit_without_start_is_rejected(client):
    resp = client.post("/student/submit-test/1", json={"answers": []})
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_second_start_requires_retake(client, attempt_db):
    _answer_all_true(client)
    again = client.get("/student/take-test/1")
    assert again.status_code == 409
    assert again.get_json()["resultsUrl"] == "/student/test-results/1"

    _, retake = _answer_all_true(client, retake="true")
    assert retake.status_code == 200
    assert retake.get_json()["isRetake"] is True
    assert list(attempt_db.rows) == [(5, 1)]
    assert attempt_db.rows[(5, 1)]["is_retake"] is True


def test_conflict_on_submit_clears_marker(client, attempt_records):
    client.get("/student/take-test/1")
    attempt_records.record(5, 1, 0, False, [], False)
    resp = client.post("/student/submit-test/1", json={"answers": []})
    assert resp.status_code == 409
    with client.session_transaction() as sess:
        assert "current_test" not in sess


def test_private_and_unassigned_tests_are_refused(client):
    private = client.get("/student/take-test/2")
    assert private.status_code == 403
    assert private.get_json()["reason"] == "not_public"
    other = client.get("/student/take-test/3")
    assert other.get_json()["reason"] == "not_assigned"


def test_unmet_prerequisite_lists_missing_tests(client):
    resp = client.get("/student/take-test/4")
    assert resp.status_code == 403
    body = resp.get_json()
    assert body["reason"] == "prerequisites"
    assert body["missing"] == [{"id": 1, "title": "Cell Biology"}]


def test_passing_prerequisite_unlocks_dependent_test(client):
    _answer_all_true(client)
    assert client.get("/student/take-test/4").status_code == 200
    ids = [t["id"] for t in client.get("/student/dashboard").get_json()["assignedTests"]]
    assert ids == [4]


def test_expired_deadline_blocks_start(make_test, attempt_records, clock):
    tests = FakeTestRecords([make_test(1, deadline=NOW - timedelta(minutes=5))])
    client = _make_app(tests, attempt_records, clock).test_client()
    resp = client.get("/student/take-test/1")
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "expired"
    assert client.get("/student/search").get_json()["tests"] == []


def test_deadline_passing_mid_attempt_blocks_submit(make_test, attempt_records, clock):
    tests = FakeTestRecords([make_test(1, deadline=NOW + timedelta(minutes=5))])
    client = _make_app(tests, attempt_records, clock).test_client()
    assert client.get("/student/take-test/1").status_code == 200
    clock["now"] = NOW + timedelta(minutes=6)
    resp = client.post("/student/submit-test/1", json={"answers": ["true"]})
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "expired"


def test_time_limit_enforced_when_enabled(monkeypatch, make_test, attempt_records, clock):
    monkeypatch.setenv("ENFORCE_TIME_LIMIT", "1")
    monkeypatch.setenv("TIME_LIMIT_GRACE_SECONDS", "0")
    tests = FakeTestRecords([make_test(1, time_limit=10)])
    client = _make_app(tests, attempt_records, clock).test_client()
    client.get("/student/take-test/1")
    clock["now"] = NOW + timedelta(minutes=11)
    resp = client.post("/student/submit-test/1", json={"answers": ["true"]})
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "time_limit"


def test_search_matches_title_and_marks_completed(client):
    _answer_all_true(client)
    found = client.get("/student/search", query_string={"q": "cell"}).get_json()["tests"]
    assert [(t["id"], t["completed"]) for t in found] == [(1, True)]
    assert client.get("/student/search", query_string={"q": "zzz"}).get_json()["tests"] == []


def test_results_show_stored_attempt(client):
    shown, _ = _answer_all_true(client)
    resp = client.get("/student/test-results/1")
    assert resp.status_code == 200
    attempt = resp.get_json()["attempt"]
    assert attempt["title"] == "Cell Biology"
    assert attempt["totalPoints"] == sum(POINTS[qid] for qid in shown)
    assert attempt["retakeUrl"] == "/student/take-test/1?retake=true"
    assert client.get("/student/test-results/2").status_code == 404


def test_questions_saved_without_id_are_graded(make_test, attempt_records, clock):
    legacy = [{"type": "truefalse", "text": "Water boils at 100C", "points": 2, "correctAnswer": "true"}]
    tests = FakeTestRecords([make_test(1, questions=legacy)])
    client = _make_app(tests, attempt_records, clock).test_client()
    started = client.get("/student/take-test/1").get_json()
    assert [q["id"] for q in started["questions"]] == ["pos-0"]

    body = client.post("/student/submit-test/1", json={"answers": ["true"]}).get_json()
    assert body["score"] == 2 and body["totalPoints"] == 2
    assert "warnings" not in body


def test_unusable_stored_question_fails_start_cleanly(make_test, attempt_records, clock):
    broken = [{"id": "b1", "type": "truefalse", "text": "?", "points": 1, "correctAnswer": "maybe"}]
    tests = FakeTestRecords([make_test(1, questions=broken)])
    client = _make_app(tests, attempt_records, clock).test_client()
    resp = client.get("/student/take-test/1")
    assert resp.status_code == 500
    assert resp.get_json()["reason"] == "invalid_question"
    with client.session_transaction() as sess:
        assert "current_test" not in sess
