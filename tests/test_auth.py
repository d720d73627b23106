import sys
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import main


ANA = {
    "id": 5, "user_id": "2021-0001", "email": "ana@school.edu", "full_name": "Ana Cruz",
    "role": "Student", "course": "BSIT", "section": "A", "year_level": "3rd Year",
    "password_hash": generate_password_hash("correct-horse"),
}


@pytest.fixture
def client(monkeypatch):
    lookups = []

    def fake_fetch_one(sql, params=None):
        lookups.append(params)
        if "password_hash" in sql and params and params[0] in (ANA["user_id"], ANA["email"]):
            return dict(ANA)
        return None

    monkeypatch.setattr(main, "_BOOTSTRAPPED", True)
    monkeypatch.setattr(main, "AUTH_REQUIRED", True)
    monkeypatch.setattr(main, "fetch_one", fake_fetch_one)
    monkeypatch.setitem(main.app.config, "SESSION_COOKIE_SECURE", False)
    main.app.testing = True
    c = main.app.test_client()
    c.lookups = lookups
    return c


def test_login_page_renders(client):
    resp = client.get("/login?next=https://evil.example/x")
    assert resp.status_code == 200
    html = resp.get_data(as_text=True)
    assert "Sign in" in html
    assert "evil.example" not in html


def test_protected_json_routes_require_session(client):
    assert client.get("/student/dashboard").status_code == 401
    assert client.get("/api/tests").status_code == 401
    resp = client.get("/")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")


def test_json_login_sets_session_user(client):
    resp = client.post("/login", json={"identifier": "2021-0001", "password": "correct-horse"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["user"]["role"] == "Student"
    assert body["user"]["section"] == "A"
    assert "password_hash" not in body["user"]

    who = client.get("/whoami").get_json()
    assert who["authenticated"] is True
    assert who["user"]["userId"] == "2021-0001"

    landing = client.get("/")
    assert landing.status_code == 302
    assert landing.headers["Location"].endswith("/student/dashboard")


def test_form_login_by_email_redirects_to_next(client):
    resp = client.post("/login", data={"email": "ana@school.edu", "password": "correct-horse",
                                       "next": "/student/search?q=bio"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/student/search?q=bio")


def test_bad_password_is_rejected(client):
    resp = client.post("/login", json={"identifier": "2021-0001", "password": "wrong"})
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "message": "Invalid credentials"}
    form = client.post("/login", data={"identifier": "nobody", "password": "x"})
    assert form.status_code == 401
    assert "Invalid ID/email or password." in form.get_data(as_text=True)


def test_missing_credentials_skip_lookup(client):
    resp = client.post("/login", json={"identifier": "", "password": ""})
    assert resp.status_code == 401
    assert client.lookups == []


def test_logout_clears_session(client):
    client.post("/login", json={"identifier": "2021-0001", "password": "correct-horse"})
    assert client.post("/logout").get_json() == {"success": True}
    assert client.get("/whoami").get_json()["authenticated"] is False


def test_google_login_unavailable_without_config(client, monkeypatch):
    monkeypatch.setattr(main, "oauth", None)
    assert client.get("/login/google").status_code == 503
