from __future__ import annotations

import os
import uuid
from functools import wraps
from pathlib import Path
from typing import Any, Optional

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from jinja2 import DictLoader
from msal import ConfidentialClientApplication
from werkzeug.middleware.proxy_fix import ProxyFix

from helpdesk import admin, config, kb, tickets
from helpdesk.errors import OperationResult
from helpdesk.guard import OperationContext
from helpdesk.models import build_engine, build_session_factory
from helpdesk.models import init_db as _init_schema
from helpdesk.notifier import Notifier, build_notifier
from helpdesk.roles import Principal, Role, at_least
from helpdesk.sessions import (
    SESSION_COOKIE_KEY,
    credentials_from_request,
    open_session,
    resolve_principal,
    revoke_session,
    upsert_user_by_email,
)

# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # JSON bodies only

if config.TRUST_PROXY_HEADERS:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:":
        return None

    if cleaned.startswith("file:") or "://" in cleaned:
        # Raw SQLite connection string (e.g. file::memory:?cache=shared)
        return None

    if "?" in cleaned:
        cleaned = cleaned.split("?", 1)[0]

    return Path(cleaned)


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Determine the SQLite database location and ensure the directory exists."""

    env_value = env_override if env_override is not None else os.environ.get("HELPDESK_DB")
    data_dir = data_dir_override if data_dir_override is not None else os.environ.get("RENDER_DATA_DIR")
    base_dir = Path(data_dir) if data_dir else Path(app.instance_path)

    if env_value:
        candidate = _candidate_path_from_env(env_value)
        if candidate is None:
            return env_value
        candidate = candidate.expanduser()
    else:
        candidate = Path("helpdesk.db")

    if not candidate.is_absolute():
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / candidate).resolve()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    path = _resolve_db_path()
    if path.startswith("sqlite:"):
        return path
    return f"sqlite:///{path}"


# --------------------------------------------------------------------------------------
# DB helpers
# --------------------------------------------------------------------------------------
engine = None
SessionLocal = None


def configure_database(url: str) -> None:
    """Bind the app to ``url``; called at import and by tests."""

    global engine, SessionLocal
    if SessionLocal is not None:
        SessionLocal.remove()
    engine = build_engine(url)
    SessionLocal = build_session_factory(engine)
    app.logger.info("DB engine: %s", engine.dialect.name)


configure_database(_database_url())


def get_session():
    return SessionLocal()


def close_session(exc: BaseException | None = None):  # noqa: ARG001
    SessionLocal.remove()


@app.teardown_appcontext
def _teardown_sqlalchemy(exc: BaseException | None):  # noqa: ARG001
    close_session(exc)


def init_db():
    _init_schema(engine, SessionLocal)


NOTIFIER: Notifier = build_notifier()

# --------------------------------------------------------------------------------------
# Auth helpers
# --------------------------------------------------------------------------------------


def msal_app() -> ConfidentialClientApplication:
    if not (config.CLIENT_ID and config.CLIENT_SECRET and config.AUTHORITY):
        raise RuntimeError("M365 env vars missing (MICROSOFT_CLIENT_ID/SECRET, MICROSOFT_TENANT_ID).")
    return ConfidentialClientApplication(
        config.CLIENT_ID,
        authority=config.AUTHORITY,
        client_credential=config.CLIENT_SECRET,
    )


def current_principal() -> Principal:
    if "principal" not in g:
        g.principal = resolve_principal(get_session(), credentials_from_request(request, session))
    return g.principal


def operation_context() -> OperationContext:
    return OperationContext(
        db=get_session(),
        principal=current_principal(),
        notifier=NOTIFIER,
        ip_address=request.remote_addr,
    )


def role_required(minimum: Role):
    """Gate a page on ``minimum``: anonymous callers go to sign-in, the rest go home."""

    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            principal = current_principal()
            if principal.is_anonymous:
                return redirect(url_for("login", next=request.path))
            if not at_least(principal, minimum):
                flash("You do not have access to that page.")
                return redirect(url_for("home"))
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def _safe_next(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return None


# --------------------------------------------------------------------------------------
# JSON helpers
# --------------------------------------------------------------------------------------
STATUS_BY_KIND = {
    "validation": 400,
    "unauthorized": 403,
    "not_found": 404,
    "conflict": 409,
    "internal": 500,
}


def respond(result: OperationResult, success_status: int = 200):
    if result.success:
        return jsonify(result.to_dict()), success_status
    return jsonify(result.to_dict()), STATUS_BY_KIND.get(result.kind or "", 500)


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _flag(value: Any) -> bool:
    """Read a checkbox-style value from JSON (bool) or a form (string)."""
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "on", "yes"}
    return value is True


# --------------------------------------------------------------------------------------
# Templates
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Help Desk</title>
</head>
<body>
  <nav>
    <a href="{{ url_for('home') }}">Home</a>
    {% if principal.is_anonymous %}
      <a href="{{ url_for('login') }}">Sign in with Microsoft</a>
    {% else %}
      <a href="{{ url_for('my_tickets_page') }}">My tickets</a>
      {% if at_least(principal, Role.STAFF) %}<a href="{{ url_for('staff_page') }}">Ticket queue</a>{% endif %}
      {% if at_least(principal, Role.ADMIN) %}<a href="{{ url_for('admin_page') }}">Admin</a>{% endif %}
      <span>{{ principal.name or principal.email }}</span>
      <a href="{{ url_for('logout') }}">Sign out</a>
    {% endif %}
  </nav>
  {% with messages = get_flashed_messages() %}
    {% for message in messages %}<p class="flash">{{ message }}</p>{% endfor %}
  {% endwith %}
  <main>{% block content %}{% endblock %}</main>
</body>
</html>
"""

HOME_HTML = """
{% extends 'base.html' %}
{% block content %}
<h1>Help Desk</h1>
<p>Submit a ticket, check on an existing one, or browse the knowledge base.</p>
{% endblock %}
"""

TICKET_LIST_HTML = """
{% extends 'base.html' %}
{% block content %}
<h1>{{ heading }}</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<table>
  <thead><tr><th>Subject</th><th>Status</th><th>Requester</th><th>Last update</th></tr></thead>
  <tbody>
  {% for ticket in tickets %}
    <tr>
      <td>{{ ticket.subject }}</td>
      <td>{{ ticket.status }}</td>
      <td>{{ ticket.user.email if ticket.user else '' }}</td>
      <td>{{ ticket.last_update }}</td>
    </tr>
  {% else %}
    <tr><td colspan="4">No tickets.</td></tr>
  {% endfor %}
  </tbody>
</table>
{% endblock %}
"""

ADMIN_HTML = """
{% extends 'base.html' %}
{% block content %}
<h1>Administration</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<ul>
{% for name, value in stats.items() %}<li>{{ name.replace('_', ' ') }}: {{ value }}</li>{% endfor %}
</ul>
<h2>Recent activity</h2>
<ul>
{% for entry in logs %}<li>{{ entry.created_at }} {{ entry.action }} {{ entry.entity_type }} {{ entry.details or '' }}</li>{% endfor %}
</ul>
{% endblock %}
"""

app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "home.html": HOME_HTML,
    "ticket_list.html": TICKET_LIST_HTML,
    "admin.html": ADMIN_HTML,
})


@app.context_processor
def _inject_principal():
    return {"principal": current_principal(), "at_least": at_least, "Role": Role}


# --------------------------------------------------------------------------------------
# Pages
# --------------------------------------------------------------------------------------


@app.route("/")
def home():
    return render_template_string(HOME_HTML)


@app.route("/tickets")
@role_required(Role.USER)
def my_tickets_page():
    result = tickets.list_my_tickets(operation_context())
    return render_template_string(
        TICKET_LIST_HTML,
        heading="My tickets",
        tickets=result.data.get("tickets", []),
        error=result.error,
    )


@app.route("/staff")
@role_required(Role.STAFF)
def staff_page():
    result = tickets.list_tickets_for_staff(
        operation_context(),
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        category=request.args.get("category"),
        search=request.args.get("q"),
    )
    return render_template_string(
        TICKET_LIST_HTML,
        heading="Ticket queue",
        tickets=result.data.get("tickets", []),
        error=result.error,
    )


@app.route("/admin")
@role_required(Role.ADMIN)
def admin_page():
    ctx = operation_context()
    stats = admin.get_dashboard_stats(ctx)
    logs = admin.get_activity_logs(ctx, limit=20)
    return render_template_string(
        ADMIN_HTML,
        stats=stats.data.get("stats", {}),
        logs=logs.data.get("logs", []),
        error=stats.error or logs.error,
    )


# --------------------------------------------------------------------------------------
# Public & customer API
# --------------------------------------------------------------------------------------


@app.route("/api/categories")
def api_categories():
    return respond(tickets.list_categories_public(operation_context()))


@app.route("/api/priorities")
def api_priorities():
    return respond(tickets.list_priorities(operation_context()))


@app.route("/api/tickets", methods=["POST"])
def api_create_ticket():
    data = _payload()
    result = tickets.create_ticket(
        operation_context(),
        subject=data.get("subject"),
        message=data.get("message"),
        name=data.get("name"),
        email=data.get("email"),
        category_id=data.get("category_id"),
        priority_id=data.get("priority_id"),
    )
    return respond(result, 201)


@app.route("/api/tickets/status", methods=["POST"])
def api_ticket_status():
    data = _payload()
    return respond(tickets.get_ticket_status(operation_context(), data.get("ticket_id"), data.get("email")))


@app.route("/api/my/tickets")
def api_my_tickets():
    return respond(tickets.list_my_tickets(operation_context()))


@app.route("/api/tickets/<ticket_id>/replies", methods=["POST"])
def api_add_reply(ticket_id: str):
    data = _payload()
    result = tickets.add_ticket_reply(
        operation_context(),
        ticket_id,
        data.get("message"),
        is_internal=_flag(data.get("is_internal")),
    )
    return respond(result, 201)


@app.route("/api/kb/articles")
def api_kb_articles():
    return respond(
        kb.list_published_articles(
            operation_context(),
            category_id=request.args.get("category_id"),
            search=request.args.get("q"),
        )
    )


@app.route("/api/kb/articles/<article_id>")
def api_kb_article(article_id: str):
    return respond(kb.get_published_article(operation_context(), article_id))


@app.route("/api/kb/categories")
def api_kb_categories():
    return respond(kb.list_kb_categories(operation_context()))


# --------------------------------------------------------------------------------------
# Staff API
# --------------------------------------------------------------------------------------


@app.route("/api/staff/tickets")
def api_staff_tickets():
    return respond(
        tickets.list_tickets_for_staff(
            operation_context(),
            status=request.args.get("status"),
            priority=request.args.get("priority"),
            category=request.args.get("category"),
            search=request.args.get("q"),
        )
    )


@app.route("/api/staff/tickets/<ticket_id>")
def api_staff_ticket(ticket_id: str):
    return respond(tickets.get_ticket_for_staff(operation_context(), ticket_id))


@app.route("/api/staff/tickets/<ticket_id>/status", methods=["POST"])
def api_update_status(ticket_id: str):
    return respond(tickets.update_ticket_status(operation_context(), ticket_id, _payload().get("status")))


@app.route("/api/staff/tickets/<ticket_id>/priority", methods=["POST"])
def api_update_priority(ticket_id: str):
    return respond(tickets.update_ticket_priority(operation_context(), ticket_id, _payload().get("priority_id")))


@app.route("/api/staff/tickets/<ticket_id>/category", methods=["POST"])
def api_update_category(ticket_id: str):
    return respond(tickets.update_ticket_category(operation_context(), ticket_id, _payload().get("category_id")))


@app.route("/api/staff/tickets/<ticket_id>/assign", methods=["POST"])
def api_assign(ticket_id: str):
    return respond(tickets.assign_ticket(operation_context(), ticket_id, _payload().get("assignee_id")))


@app.route("/api/staff/kb/articles", methods=["GET", "POST"])
def api_staff_articles():
    ctx = operation_context()
    if request.method == "GET":
        return respond(kb.list_articles_for_staff(ctx))
    data = _payload()
    result = kb.create_kb_article(
        ctx,
        data.get("title"),
        data.get("content"),
        keywords=data.get("keywords", ""),
        category_id=data.get("category_id"),
        published=bool(data.get("published")),
    )
    return respond(result, 201)


@app.route("/api/staff/kb/articles/<article_id>", methods=["GET", "PUT", "DELETE"])
def api_staff_article(article_id: str):
    ctx = operation_context()
    if request.method == "GET":
        return respond(kb.get_article_for_staff(ctx, article_id))
    if request.method == "DELETE":
        return respond(kb.delete_kb_article(ctx, article_id))
    data = _payload()
    return respond(
        kb.update_kb_article(
            ctx,
            article_id,
            data.get("title"),
            data.get("content"),
            keywords=data.get("keywords", ""),
            category_id=data.get("category_id"),
            published=bool(data.get("published")),
        )
    )


@app.route("/api/staff/kb/articles/<article_id>/toggle", methods=["POST"])
def api_toggle_article(article_id: str):
    return respond(kb.toggle_kb_article_published(operation_context(), article_id))


# --------------------------------------------------------------------------------------
# Admin API
# --------------------------------------------------------------------------------------


@app.route("/api/admin/team", methods=["GET", "POST"])
def api_team():
    ctx = operation_context()
    if request.method == "GET":
        return respond(admin.list_team_members(ctx))
    data = _payload()
    return respond(admin.create_team_member(ctx, data.get("email"), data.get("name"), data.get("role")), 201)


@app.route("/api/admin/team/<member_id>", methods=["PUT", "DELETE"])
def api_team_member(member_id: str):
    ctx = operation_context()
    if request.method == "DELETE":
        return respond(admin.delete_team_member(ctx, member_id))
    return respond(admin.update_team_member(ctx, member_id, _payload()))


@app.route("/api/admin/users")
def api_users():
    return respond(admin.list_users(operation_context()))


@app.route("/api/admin/users/<user_id>", methods=["PUT", "DELETE"])
def api_user(user_id: str):
    ctx = operation_context()
    if request.method == "DELETE":
        return respond(admin.delete_user(ctx, user_id))
    return respond(admin.update_user(ctx, user_id, _payload()))


@app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
def api_user_role(user_id: str):
    return respond(admin.update_user_role(operation_context(), user_id, _payload().get("role")))


@app.route("/api/admin/settings", methods=["GET", "PUT"])
def api_settings():
    ctx = operation_context()
    if request.method == "GET":
        return respond(admin.list_settings(ctx, category=request.args.get("category")))
    data = _payload()
    return respond(
        admin.update_setting(ctx, data.get("key"), data.get("value"), category=data.get("category") or "general")
    )


@app.route("/api/admin/settings/<setting_id>", methods=["DELETE"])
def api_delete_setting(setting_id: str):
    return respond(admin.delete_setting(operation_context(), setting_id))


@app.route("/api/admin/email-templates", methods=["GET", "POST"])
def api_email_templates():
    ctx = operation_context()
    if request.method == "GET":
        return respond(admin.list_email_templates(ctx))
    data = _payload()
    result = admin.create_email_template(
        ctx,
        data.get("name"),
        data.get("subject"),
        data.get("body"),
        variables=data.get("variables", ""),
        description=data.get("description"),
    )
    return respond(result, 201)


@app.route("/api/admin/email-templates/<template_id>", methods=["GET", "PUT", "DELETE"])
def api_email_template(template_id: str):
    ctx = operation_context()
    if request.method == "GET":
        return respond(admin.get_email_template(ctx, template_id))
    if request.method == "DELETE":
        return respond(admin.delete_email_template(ctx, template_id))
    return respond(admin.update_email_template(ctx, template_id, _payload()))


@app.route("/api/admin/categories", methods=["GET", "POST"])
def api_admin_categories():
    ctx = operation_context()
    if request.method == "GET":
        return respond(admin.list_categories(ctx))
    data = _payload()
    return respond(admin.create_category(ctx, data.get("name"), parent_id=data.get("parent_id")), 201)


@app.route("/api/admin/categories/<category_id>", methods=["PUT", "DELETE"])
def api_admin_category(category_id: str):
    ctx = operation_context()
    if request.method == "DELETE":
        return respond(admin.delete_category(ctx, category_id))
    return respond(admin.update_category(ctx, category_id, _payload()))


@app.route("/api/admin/stats")
def api_dashboard_stats():
    return respond(admin.get_dashboard_stats(operation_context()))


@app.route("/api/admin/stats/tickets")
def api_ticket_stats():
    return respond(admin.get_ticket_stats(operation_context(), days=request.args.get("days", 30)))


@app.route("/api/admin/activity")
def api_activity():
    return respond(admin.get_activity_logs(operation_context(), limit=request.args.get("limit", 50)))


# --------------------------------------------------------------------------------------
# Microsoft 365 sign-in routes
# --------------------------------------------------------------------------------------


@app.route("/login")
def login():
    if not (config.CLIENT_ID and config.CLIENT_SECRET and config.AUTHORITY and config.REDIRECT_URI):
        flash("Microsoft login not configured.")
        return redirect(url_for("home"))
    state = str(uuid.uuid4())
    session["state"] = state
    session["next"] = _safe_next(request.args.get("next"))
    auth_url = msal_app().get_authorization_request_url(
        scopes=config.SCOPE,
        redirect_uri=config.REDIRECT_URI,
        state=state,
        response_mode="query",
        prompt="select_account",
    )
    return redirect(auth_url)


@app.route("/auth/callback", methods=["GET", "POST"])
def auth_callback():
    # state & code can arrive via GET (args) or POST (form)
    state = request.values.get("state")
    if not state or state != session.pop("state", None):
        return ("State mismatch", 400)

    code = request.values.get("code")
    if not code:
        flash("No authorization code returned.")
        return redirect(url_for("home"))

    result = msal_app().acquire_token_by_authorization_code(
        code,
        scopes=config.SCOPE,
        redirect_uri=config.REDIRECT_URI,
    )
    claims = result.get("id_token_claims")
    email = (claims or {}).get("preferred_username") or (claims or {}).get("email")
    if not email:
        app.logger.warning("Sign-in failed: %s", result.get("error_description") or result.get("error"))
        flash("Login failed.")
        return redirect(url_for("home"))

    db = get_session()
    user = upsert_user_by_email(db, email, claims.get("name"))
    db.commit()
    session[SESSION_COOKIE_KEY] = open_session(db, user)
    g.pop("principal", None)
    app.logger.info("Signed in %s", user.email)
    flash(f"Signed in as {user.email}")
    return redirect(_safe_next(session.pop("next", None)) or url_for("home"))


@app.route("/logout")
def logout():
    revoke_session(get_session(), session.get(SESSION_COOKIE_KEY))
    session.clear()
    g.pop("principal", None)
    flash("Signed out.")
    return redirect(url_for("home"))


# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    with app.app_context():
        init_db()
    # Render provides a PORT env var; bind to 0.0.0.0 for external access
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
