import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eligibility import (
    check_eligibility,
    deadline_passed,
    deadline_status,
    missing_prerequisites,
    normalize_section,
    student_section_ids,
    visible_tests,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def student():
    return {"id": 5, "role": "Student", "course": "BSIT", "yearLevel": "3rd Year", "section": "A"}


def _test(**overrides):
    base = {"id": 20, "access": "Public", "assigned_sections": ["bsit3-a"], "prerequisites": []}
    base.update(overrides)
    return base


def test_normalize_section_is_total():
    assert normalize_section("  bsit 3 - a ") == "BSIT3-A"
    assert normalize_section(None) == ""
    assert normalize_section("") == ""


def test_student_section_ids_include_composed_form(student):
    assert student_section_ids(student) == {"A", "BSIT3-A"}
    assert student_section_ids({"section": "B"}) == {"B"}
    assert student_section_ids({}) == set()


def test_private_test_is_never_eligible(student):
    verdict = check_eligibility(student, _test(access="Private"), passed_test_ids=[])
    assert verdict.eligible is False
    assert verdict.reason == "not_public"


def test_section_mismatch(student):
    verdict = check_eligibility(student, _test(assigned_sections=["BSIT3-B", ""]), passed_test_ids=[])
    assert verdict.eligible is False
    assert verdict.reason == "not_assigned"


def test_plain_section_token_matches(student):
    assert check_eligibility(student, _test(assigned_sections=[" a "]), []).eligible is True


def test_unmet_prerequisite_is_listed(student):
    verdict = check_eligibility(student, _test(prerequisites=[1, 2]), passed_test_ids=[2],
                                titles={1: "Intro Quiz"})
    assert verdict.eligible is False
    assert verdict.reason == "prerequisites"
    assert verdict.missing == [{"id": 1, "title": "Intro Quiz"}]
    assert "Intro Quiz" in verdict.message


def test_met_prerequisites(student):
    verdict = check_eligibility(student, _test(prerequisites=[1, 2]), passed_test_ids=["1", 2])
    assert verdict.eligible is True
    assert verdict.to_json()["missing"] == []


def test_missing_prerequisites_from_completed_list():
    t = _test(prerequisites=[1, 2, 3])
    completed = [{"testId": 1, "passed": True}, {"testId": "2", "passed": False}]
    assert missing_prerequisites(t, completed) == [2, 3]


def test_visible_tests_filters_each_rule(student):
    tests = [
        _test(id=1),
        _test(id=2, access="Private"),
        _test(id=3, assigned_sections=["BSCS1-A"]),
        _test(id=4, prerequisites=[9]),
    ]
    assert [t["id"] for t in visible_tests(student, tests, passed_test_ids=[])] == [1]
    assert [t["id"] for t in visible_tests(student, tests, passed_test_ids=[9])] == [1, 4]


def test_deadline_status():
    assert deadline_status({"deadline": None}, NOW) == "no-deadline"
    assert deadline_status({"deadline": NOW - timedelta(minutes=1)}, NOW) == "expired"
    assert deadline_status({"deadline": "2026-03-02T00:00:00Z"}, NOW) == "active"


def test_deadline_passed_honors_grace():
    t = {"deadline": NOW - timedelta(seconds=30)}
    assert deadline_passed(t, NOW) is True
    assert deadline_passed(t, NOW, grace_seconds=60) is False
    assert deadline_passed({"deadline": None}, NOW) is False


def test_section_number_forms_match(student):
    numbered = dict(student, section="Section 1")
    assert student_section_ids(numbered) == {"SECTION1", "1", "BSIT3-SECTION1", "BSIT3-1"}
    for assigned in (["BSIT3-1"], ["1"], ["section 1"]):
        assert check_eligibility(numbered, _test(assigned_sections=assigned), []).eligible is True
    assert check_eligibility(numbered, _test(assigned_sections=["BSIT3-2"]), []).reason == "not_assigned"
