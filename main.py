# main.py: course portal app: Google sign-in, identity, security headers, route wiring
import atexit
import os
import re
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import bleach
import markdown
from flask import Flask, abort, g, jsonify, redirect, render_template, request, session, url_for
from markupsafe import Markup, escape

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from admin import create_admin_blueprint, is_admin_email
from catalog import format_duration
from course import register_course_routes
from database import close_pool, deps as db_deps, execute_returning, fetch_one
from home import register_home_routes
from image_utils import BLUR_DATA_URL, placeholder_class
from progress import create_progress_blueprint
from search import create_search_blueprint
from validation import SITE_URL, RedirectTarget, safe_validate_data

# =============================================================================
# Flask app
# =============================================================================
APP_ENV = (os.getenv("APP_ENV") or os.getenv("FLASK_ENV") or "production").lower()
SITE_NAME = os.getenv("SITE_NAME", "Course Portal")
DEFAULT_NEXT = "/courses"

app = Flask(
    __name__,
    static_folder="static",
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=APP_ENV == "production",
)
if app.secret_key == "dev-secret" and APP_ENV == "production":
    print("[config] SECRET_KEY not set; sessions are signed with the development key.", flush=True)

# =============================================================================
# OAuth (Google): OAUTH_REDIRECT_BASE may be a base URL or the full callback
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
else:
    print("[auth] Google OAuth not configured; sign-in is disabled.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or request.url_root.rstrip("/")
    if base.endswith("/auth/callback"):
        return base
    return base.rstrip("/") + "/auth/callback"

# =============================================================================
# Lesson and course descriptions: Markdown -> sanitized HTML
# =============================================================================
ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "0").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

DESCRIPTION_CLEANER = bleach.sanitizer.Cleaner(
    tags={
        "a", "b", "blockquote", "br", "code", "em", "h2", "h3", "h4", "hr", "i",
        "img", "li", "ol", "p", "pre", "strong", "table", "tbody", "td", "th",
        "thead", "tr", "ul",
    },
    attributes={
        "a": ["href", "title", "rel", "target"],
        "img": ["src", "alt", "loading"],
        "*": ["class"],
    },
    protocols={"http", "https", "mailto"},
    strip=True,
)
_MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "sane_lists"]
_LOOKS_LIKE_HTML = re.compile(r"</?[a-zA-Z][^>]*>")

@lru_cache(maxsize=512)
def _description_html(text: str, allow_raw: bool, sanitize: bool) -> str:
    if not text:
        return ""
    source = text if allow_raw or not _LOOKS_LIKE_HTML.search(text) else str(escape(text))
    html = markdown.markdown(source, extensions=_MARKDOWN_EXTENSIONS, output_format="html")
    return DESCRIPTION_CLEANER.clean(html) if sanitize else html

def render_rich(text: Any) -> Markup:
    """Jinja ``rich`` filter: Markdown description rendered to safe HTML."""
    if text is None:
        return Markup("")
    return Markup(_description_html(str(text), ALLOW_RAW_HTML, SANITIZE_HTML))

app.jinja_env.filters["rich"] = render_rich
app.jinja_env.filters["duration"] = format_duration

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def current_user_email() -> Optional[str]:
    return _session_email()

def upsert_profile(email: str, full_name: Optional[str] = None, avatar_url: Optional[str] = None,
                   google_id: Optional[str] = None) -> Dict[str, Any]:
    """Create or refresh the profile row for a signed-in Google account."""
    rows = execute_returning("""
        INSERT INTO profiles (email, full_name, avatar_url, google_id)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (email) DO UPDATE
           SET full_name  = COALESCE(EXCLUDED.full_name, profiles.full_name),
               avatar_url = COALESCE(EXCLUDED.avatar_url, profiles.avatar_url),
               google_id  = COALESCE(EXCLUDED.google_id, profiles.google_id),
               updated_at = now()
        RETURNING id, email, full_name, avatar_url, is_admin;
    """, (email, full_name, avatar_url, google_id))
    return rows[0]

def profile_for(email: str) -> Dict[str, Any]:
    row = fetch_one("SELECT id, email, full_name, avatar_url, is_admin FROM profiles WHERE email = %s;", (email,))
    return row or upsert_profile(email)

# =============================================================================
# Jinja helpers
# =============================================================================
@app.context_processor
def inject_user():
    user = session.get("user") or {}
    return {
        "current_user_email": getattr(g, "user_email", None),
        "current_user_name": user.get("name"),
        "current_user_picture": user.get("picture"),
        "is_admin": bool(getattr(g, "is_admin", False)),
        "site_name": SITE_NAME,
        "blur_data_url": BLUR_DATA_URL,
        "placeholder_class": placeholder_class,
    }

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

def _sanitize_next(next_url: Optional[str]) -> str:
    """Same-site relative path to land on after sign-in; anything else -> DEFAULT_NEXT."""
    if not next_url:
        return DEFAULT_NEXT
    ok, target, _ = safe_validate_data(RedirectTarget, {"target": next_url})
    if not ok or "\\" in next_url:
        return DEFAULT_NEXT
    next_url = target.target
    if next_url.startswith(SITE_URL + "/"):
        next_url = next_url[len(SITE_URL):]
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return DEFAULT_NEXT
    path = parts.path or "/"
    if not path.startswith("/"):
        return DEFAULT_NEXT
    blocked_prefixes = {"/login", "/auth", "/logout"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return DEFAULT_NEXT
    safe = urlunsplit(("", "", path, parts.query, ""))
    return safe or DEFAULT_NEXT

@app.route("/login", methods=["GET", "POST"])
def login():
    source = request.form if request.method == "POST" else request.args
    next_url = _sanitize_next(source.get("next") or source.get("redirect") or session.get("login_next"))
    if getattr(g, "user_email", None):
        return redirect(next_url)

    if request.method == "GET":
        return render_template(
            "login.html",
            next_url=next_url,
            error=request.args.get("error"),
            oauth_enabled=oauth is not None,
        )

    provider = _require_oauth()
    session["login_next"] = next_url
    print(f"[auth] starting Google sign-in, next={next_url}", flush=True)
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/auth/callback")
def auth_callback():
    provider = _require_oauth()
    try:
        token = provider.google.authorize_access_token()
    except Exception as e:
        print(f"[auth] token exchange failed: {e}", flush=True)
        return redirect(url_for("login", error="auth_callback_error"))

    # Prefer ID token claims; fall back to userinfo
    claims = token.get("userinfo") if isinstance(token, dict) else None
    if not claims:
        resp = provider.google.get("https://openidconnect.googleapis.com/v1/userinfo")
        claims = resp.json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "picture": claims.get("picture"),
        "sub": claims.get("sub"),
    }
    try:
        upsert_profile(email, claims.get("name"), claims.get("picture"), claims.get("sub"))
    except Exception as e:
        print(f"[auth] profile upsert failed for {email}: {e}", flush=True)

    next_url = _sanitize_next(session.pop("login_next", None))
    print(f"[auth] signed in {email}", flush=True)
    return redirect(next_url)

@app.get("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))

@app.post("/api/auth/signout")
def api_signout():
    email = _session_email()
    session.clear()
    if email:
        print(f"[auth] signed out {email}", flush=True)
    if request.accept_mimetypes.best == "application/json":
        return jsonify({"success": True})
    return redirect(url_for("index"), code=303)

# =============================================================================
# Identity + response headers
# =============================================================================
_SKIP_IDENTITY_PREFIXES = ("/static/", "/healthz", "/favicon.ico")

@app.before_request
def attach_identity():
    g.user_email = None
    g.user_id = None
    g.is_admin = False
    if request.path.startswith(_SKIP_IDENTITY_PREFIXES):
        return
    email = current_user_email()
    if not email:
        return
    g.user_email = email
    try:
        profile = profile_for(email)
        g.user_id = profile["id"]
        g.is_admin = bool(profile.get("is_admin")) or is_admin_email(email)
    except Exception as e:
        print(f"[auth] profile lookup failed for {email}: {e}", flush=True)

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' https://www.youtube.com https://s.ytimg.com",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "img-src 'self' data: blob: https://img.youtube.com https://i.ytimg.com https://lh3.googleusercontent.com https://images.unsplash.com https://picsum.photos",
    "font-src 'self' https://fonts.gstatic.com",
    "connect-src 'self' https://accounts.google.com",
    "frame-src 'self' https://www.youtube.com https://accounts.google.com",
    "object-src 'none'",
    "base-uri 'self'",
    "form-action 'self' https://accounts.google.com",
    "frame-ancestors 'none'",
])

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-XSS-Protection": "1; mode=block",
}

@app.after_request
def security_headers(resp):
    for k, v in SECURITY_HEADERS.items():
        resp.headers.setdefault(k, v)
    return resp

@app.errorhandler(404)
def not_found(_e):
    return render_template("error.html", code=404, message="Page not found."), 404

# =============================================================================
# Register area routes
# =============================================================================
_deps = db_deps()
register_home_routes(app, _deps)
register_course_routes(app, _deps)
app.register_blueprint(create_progress_blueprint(_deps))
app.register_blueprint(create_search_blueprint(_deps))
app.register_blueprint(create_admin_blueprint("", _deps, name="admin"))

atexit.register(close_pool)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=APP_ENV == "development")
