"""Persistence for tests, sections and accounts (raw SQL over the pooled helpers)."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from questions import as_number

ROLES = ("Student", "Professor", "Dean")

TEST_COLUMNS = """
    id, title, subject_code, description, time_limit, deadline, access,
    assigned_sections, prerequisites, how_many_questions, passing_points,
    questions, created_by, created_at, updated_at
"""

SECTION_COLUMNS = "id, name, school_year, course, subject, campus, year_level, created_at, updated_at"

ACCOUNT_COLUMNS = """
    id, user_id, email, full_name, role, course, section, year_level,
    department, designation, created_at
"""


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def serialize_test(row: Optional[Dict[str, Any]], include_questions: bool = True) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    questions = row.get("questions") or []
    out = {
        "id": row.get("id"),
        "title": row.get("title"),
        "subjectCode": row.get("subject_code"),
        "description": row.get("description") or "",
        "timeLimit": row.get("time_limit"),
        "deadline": _iso(row.get("deadline")),
        "access": row.get("access"),
        "assignedSections": list(row.get("assigned_sections") or []),
        "prerequisites": list(row.get("prerequisites") or []),
        "howManyQuestions": row.get("how_many_questions"),
        "passingPoints": as_number(row.get("passing_points")),
        "questionCount": len(questions),
        "createdBy": row.get("created_by"),
        "createdAt": _iso(row.get("created_at")),
        "updatedAt": _iso(row.get("updated_at")),
    }
    if include_questions:
        out["questions"] = questions
    return out


def serialize_account(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    out = {
        "id": row.get("id"),
        "userId": row.get("user_id"),
        "email": row.get("email"),
        "fullName": row.get("full_name"),
        "role": row.get("role"),
        "createdAt": _iso(row.get("created_at")),
    }
    if row.get("role") == "Student":
        out.update(course=row.get("course"), section=row.get("section"), yearLevel=row.get("year_level"))
    else:
        out.update(department=row.get("department"), designation=row.get("designation"))
    return out


def serialize_section(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "schoolYear": row.get("school_year"),
        "course": row.get("course"),
        "subject": row.get("subject"),
        "campus": row.get("campus"),
        "yearLevel": row.get("year_level"),
        "createdAt": _iso(row.get("created_at")),
        "updatedAt": _iso(row.get("updated_at")),
    }


class TestRecords:
    """public.tests; questions, sections and prerequisites live in JSONB columns."""

    __test__ = False

    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute_returning: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute_returning = execute_returning

    def get(self, test_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {TEST_COLUMNS} FROM public.tests WHERE id = %s;", (test_id,))

    def list_all(self, created_by: Optional[int] = None) -> List[Dict[str, Any]]:
        if created_by is not None:
            return self.fetch_all(f"""
                SELECT {TEST_COLUMNS}
                  FROM public.tests
                 WHERE created_by = %s
                 ORDER BY created_at DESC, id DESC;
            """, (created_by,)) or []
        return self.fetch_all(f"""
            SELECT {TEST_COLUMNS}
              FROM public.tests
             ORDER BY created_at DESC, id DESC;
        """, ()) or []

    def list_public(self) -> List[Dict[str, Any]]:
        return self.fetch_all(f"""
            SELECT {TEST_COLUMNS}
              FROM public.tests
             WHERE access = 'Public'
             ORDER BY deadline ASC NULLS LAST, created_at DESC;
        """, ()) or []

    def titles(self, ids: Iterable[Any]) -> Dict[int, str]:
        wanted = []
        for i in ids or []:
            try:
                wanted.append(int(i))
            except (TypeError, ValueError):
                continue
        if not wanted:
            return {}
        rows = self.fetch_all("SELECT id, title FROM public.tests WHERE id = ANY(%s);", (wanted,)) or []
        return {r["id"]: r["title"] for r in rows}

    def existing_ids(self, ids: Iterable[int]) -> List[int]:
        return list(self.titles(ids).keys())

    def create(self, values: Dict[str, Any], created_by: Optional[int]) -> Dict[str, Any]:
        rows = self.execute_returning(f"""
            INSERT INTO public.tests
                (title, subject_code, description, time_limit, deadline, access,
                 assigned_sections, prerequisites, how_many_questions, passing_points,
                 questions, created_by, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s::jsonb, %s, now(), now())
            RETURNING {TEST_COLUMNS};
        """, (
            values["title"], values["subject_code"], values["description"], values["time_limit"],
            values["deadline"], values["access"],
            json.dumps(values["assigned_sections"]), json.dumps(values["prerequisites"]),
            values["how_many_questions"], values["passing_points"],
            json.dumps(values["questions"], ensure_ascii=False), created_by,
        ))
        return rows[0]

    def update(self, test_id: int, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.execute_returning(f"""
            UPDATE public.tests
               SET title = %s, subject_code = %s, description = %s, time_limit = %s,
                   deadline = %s, access = %s, assigned_sections = %s::jsonb,
                   prerequisites = %s::jsonb, how_many_questions = %s, passing_points = %s,
                   questions = %s::jsonb, updated_at = now()
             WHERE id = %s
            RETURNING {TEST_COLUMNS};
        """, (
            values["title"], values["subject_code"], values["description"], values["time_limit"],
            values["deadline"], values["access"],
            json.dumps(values["assigned_sections"]), json.dumps(values["prerequisites"]),
            values["how_many_questions"], values["passing_points"],
            json.dumps(values["questions"], ensure_ascii=False), test_id,
        ))
        return rows[0] if rows else None

    def delete(self, test_id: int) -> bool:
        rows = self.execute_returning("DELETE FROM public.tests WHERE id = %s RETURNING id;", (test_id,))
        return bool(rows)


class SectionRecords:
    FIELDS = ("name", "school_year", "course", "subject", "campus", "year_level")

    def __init__(self, fetch_all: Callable, execute_returning: Callable):
        self.fetch_all = fetch_all
        self.execute_returning = execute_returning

    def list_all(self) -> List[Dict[str, Any]]:
        return self.fetch_all(f"""
            SELECT {SECTION_COLUMNS}
              FROM public.sections
             ORDER BY name ASC;
        """, ()) or []

    def get(self, section_id: int) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(f"SELECT {SECTION_COLUMNS} FROM public.sections WHERE id = %s;", (section_id,)) or []
        return rows[0] if rows else None

    def create(self, values: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.execute_returning(f"""
            INSERT INTO public.sections
                (name, school_year, course, subject, campus, year_level, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, now(), now())
            RETURNING {SECTION_COLUMNS};
        """, tuple(values.get(k) for k in self.FIELDS))
        return rows[0]

    def update(self, section_id: int, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.execute_returning(f"""
            UPDATE public.sections
               SET name = %s, school_year = %s, course = %s, subject = %s, campus = %s,
                   year_level = %s, updated_at = now()
             WHERE id = %s
            RETURNING {SECTION_COLUMNS};
        """, tuple(values.get(k) for k in self.FIELDS) + (section_id,))
        return rows[0] if rows else None

    def delete(self, section_id: int) -> bool:
        rows = self.execute_returning("DELETE FROM public.sections WHERE id = %s RETURNING id;", (section_id,))
        return bool(rows)


class AccountRecords:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute_returning: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute_returning = execute_returning

    def get(self, account_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {ACCOUNT_COLUMNS} FROM public.accounts WHERE id = %s;", (account_id,))

    def get_by_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {ACCOUNT_COLUMNS} FROM public.accounts WHERE user_id = %s;", (user_id,))

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"""
            SELECT {ACCOUNT_COLUMNS}
              FROM public.accounts
             WHERE lower(email) = lower(%s);
        """, (email,))

    def get_for_login(self, identifier: str) -> Optional[Dict[str, Any]]:
        """Student/employee ID or email, with the password hash."""
        return self.fetch_one(f"""
            SELECT {ACCOUNT_COLUMNS}, password_hash
              FROM public.accounts
             WHERE user_id = %s OR lower(email) = lower(%s)
             ORDER BY (user_id = %s) DESC
             LIMIT 1;
        """, (identifier, identifier, identifier))

    def list_all(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        if role:
            return self.fetch_all(f"""
                SELECT {ACCOUNT_COLUMNS}
                  FROM public.accounts
                 WHERE role = %s
                 ORDER BY full_name ASC;
            """, (role,)) or []
        return self.fetch_all(f"""
            SELECT {ACCOUNT_COLUMNS}
              FROM public.accounts
             ORDER BY role ASC, full_name ASC;
        """, ()) or []

    def create(self, values: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.execute_returning(f"""
            INSERT INTO public.accounts
                (user_id, email, full_name, password_hash, role,
                 course, section, year_level, department, designation, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
            RETURNING {ACCOUNT_COLUMNS};
        """, (
            values["user_id"], values["email"], values["full_name"], values["password_hash"],
            values["role"], values.get("course"), values.get("section"), values.get("year_level"),
            values.get("department"), values.get("designation"),
        ))
        return rows[0]

    def delete(self, account_id: int) -> bool:
        rows = self.execute_returning("DELETE FROM public.accounts WHERE id = %s RETURNING id;", (account_id,))
        return bool(rows)
