# home.py
from typing import Any, Dict
from flask import jsonify, redirect, url_for, g

DEFAULT_LANDING = {
    "Student": "exam.dashboard",
    "Professor": "admin.list_tests",
    "Dean": "admin.list_accounts",
}


def register_home_routes(app, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/"       -> endpoint 'index' (role landing redirect, or the login page)
      - GET "/whoami" -> endpoint 'whoami' (current session identity)
    deps:
      - AUTH_REQUIRED
      - landing: optional {role: endpoint} override
    """
    AUTH_REQUIRED = bool(deps.get("AUTH_REQUIRED", True))
    landing = dict(DEFAULT_LANDING)
    landing.update(deps.get("landing") or {})

    def index():
        u = getattr(g, "user", None)
        if not u:
            return redirect(url_for("login"))
        endpoint = landing.get(u.get("role"))
        if not endpoint:
            print(f"[index] no landing page for role {u.get('role')!r}")
            return redirect(url_for("logout"))
        return redirect(url_for(endpoint))

    def whoami():
        u = getattr(g, "user", None)
        return jsonify({
            "auth_required": AUTH_REQUIRED,
            "authenticated": bool(u),
            "user": u,
        })

    app.add_url_rule("/", view_func=index, methods=["GET"], endpoint="index")
    app.add_url_rule("/whoami", view_func=whoami, methods=["GET"], endpoint="whoami")
