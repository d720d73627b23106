"""Who may see and start a test: access, section targeting, prerequisites, deadline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

_WS = re.compile(r"\s+")
_DIGITS = re.compile(r"\d+")

NOT_PUBLIC_MSG = ("This test is not publicly available. Only private tests are "
                  "accessible to assigned students.")
NOT_ASSIGNED_MSG = ("You are not assigned to this test. Please contact your instructor "
                    "if you believe this is an error.")


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None  # "not_public" | "not_assigned" | "prerequisites"
    message: str = ""
    missing: List[Dict[str, Any]] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {"eligible": self.eligible, "reason": self.reason,
                "message": self.message, "missing": list(self.missing)}


def normalize_section(token: Any) -> str:
    """Canonical section id: trimmed, upper-cased, whitespace removed. Empty never matches."""
    if token is None:
        return ""
    return _WS.sub("", str(token)).upper()


def student_section_ids(student: Dict[str, Any]) -> Set[str]:
    """Every id an assigned section may use for this student.

    - the recorded section
    - its first run of digits (the section number), when it has one
    - `<course><year digit>-<section>` and `<course><year digit>-<section number>`

    e.g. course 'BSIT', yearLevel '3rd Year', section 'Section 1'
    -> {'SECTION1', '1', 'BSIT3-SECTION1', 'BSIT3-1'}
    """
    student = student or {}
    section = normalize_section(student.get("section"))
    ids: Set[str] = set()
    if not section:
        return ids
    ids.add(section)
    number = _DIGITS.search(section)
    if number:
        ids.add(number.group(0))
    course = normalize_section(student.get("course"))
    year = normalize_section(student.get("yearLevel") or student.get("year_level"))
    if course and year:
        prefix = f"{course}{year[0]}-"
        ids.update(prefix + token for token in list(ids))
    return ids


def check_eligibility(student: Dict[str, Any], test: Dict[str, Any],
                      passed_test_ids: Iterable[Any],
                      titles: Optional[Dict[Any, str]] = None) -> Eligibility:
    """Apply the three access rules in order; the first failing rule wins.

    `titles` maps prerequisite test id -> title for the `missing` list.
    """
    test = test or {}
    if str(test.get("access") or "") != "Public":
        return Eligibility(False, "not_public", NOT_PUBLIC_MSG)

    mine = student_section_ids(student)
    assigned = {normalize_section(s) for s in (test.get("assigned_sections") or test.get("assignedSections") or [])}
    assigned.discard("")
    if not (mine & assigned):
        return Eligibility(False, "not_assigned", NOT_ASSIGNED_MSG)

    passed = {str(t) for t in (passed_test_ids or [])}
    titles = {str(k): v for k, v in (titles or {}).items()}
    missing = []
    for prereq in (test.get("prerequisites") or []):
        if str(prereq) not in passed:
            missing.append({"id": prereq, "title": titles.get(str(prereq)) or f"Test {prereq}"})
    if missing:
        names = ", ".join(m["title"] for m in missing)
        return Eligibility(
            False, "prerequisites",
            f"You must pass all prerequisite tests before taking this exam. Missing: {names}",
            missing,
        )
    return Eligibility(True)


def missing_prerequisites(test: Dict[str, Any], completed: Iterable[Dict[str, Any]]) -> List[Any]:
    """Prerequisite ids without a passed entry in [{testId, passed}, ...]."""
    passed = {str(c.get("testId")) for c in (completed or []) if isinstance(c, dict) and c.get("passed")}
    return [p for p in ((test or {}).get("prerequisites") or []) if str(p) not in passed]


# -----------------------------------------------------------------------------
# Deadline
# -----------------------------------------------------------------------------
def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _deadline_of(test: Dict[str, Any]) -> Optional[datetime]:
    raw = (test or {}).get("deadline")
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return _aware(raw)
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return _aware(datetime.fromisoformat(s))
    except ValueError:
        return None


def deadline_status(test: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """'expired' | 'active' | 'no-deadline'."""
    dl = _deadline_of(test)
    if dl is None:
        return "no-deadline"
    now = _aware(now or datetime.now(timezone.utc))
    return "expired" if dl < now else "active"


def deadline_passed(test: Dict[str, Any], now: Optional[datetime] = None, grace_seconds: int = 0) -> bool:
    dl = _deadline_of(test)
    if dl is None:
        return False
    now = _aware(now or datetime.now(timezone.utc))
    return now > dl + timedelta(seconds=max(0, int(grace_seconds or 0)))


def visible_tests(student: Dict[str, Any], tests: Iterable[Dict[str, Any]],
                  passed_test_ids: Iterable[Any]) -> List[Dict[str, Any]]:
    passed = list(passed_test_ids or [])
    return [t for t in (tests or []) if check_eligibility(student, t, passed).eligible]


__all__ = [
    "Eligibility", "normalize_section", "student_section_ids", "check_eligibility",
    "missing_prerequisites", "deadline_status", "deadline_passed", "visible_tests",
]
