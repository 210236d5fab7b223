#!/usr/bin/env python3
"""
inkwell – a small multi-user blog with a nested category editor.
"""

import logging
import os
import re
import secrets
import sqlite3
import unicodedata
from collections import defaultdict, deque
from datetime import date, datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

from inkwell import media
from inkwell.categories import (
    CategoryService,
    CategoryStore,
    InternalError,
    flatten,
    materialize,
)
from inkwell.media import ImageError
from inkwell.messages import DOMAIN_LOCALES, dictionary

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKWELL_DATABASE") or ROOT / "blog.sqlite3")

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if not SECRET_FILE.exists():
    SECRET_FILE.write_text(SECRET_KEY)

ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "").strip().lower()
PER_PAGE = int(os.environ.get("PER_PAGE", "10"))
UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR") or ROOT.parent / "uploads")
UPLOAD_MAX_BYTES = int(os.environ.get("UPLOAD_MAX_BYTES", str(16 * 1024 * 1024)))
DEFAULT_LOCALE = os.environ.get("DEFAULT_LOCALE", "en")
SESSION_SECURE = os.environ.get("SESSION_SECURE", "1") != "0"
LOG_DIR = os.environ.get("LOG_DIR", "")

PASSWORD_MIN = 6
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SLUG_RE = re.compile(r"[^a-z0-9]+")
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + logging
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    ADMIN_EMAIL=ADMIN_EMAIL,
    PER_PAGE=PER_PAGE,
    UPLOAD_DIR=str(UPLOAD_DIR),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    DEFAULT_LOCALE=DEFAULT_LOCALE,
    LOG_DIR=LOG_DIR,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=SESSION_SECURE,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def configure_file_logging(log_dir: str | Path) -> logging.Handler:
    """Send warnings and errors of the whole package to LOG_DIR/YYYY-MM-DD.log."""
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path / f"{date.today().isoformat()}.log", encoding="utf-8")
    handler.setLevel(logging.WARNING)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.getLogger("inkwell").addHandler(handler)
    return handler


if LOG_DIR:
    configure_file_logging(LOG_DIR)


################################################################################
# Markdown
################################################################################
MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]


class EscapeHtmlExtension(Extension):
    """Raw HTML in a post body is shown as text, not injected."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block", strict=False)
        md.inlinePatterns.deregister("html", strict=False)


def render_markdown(text: str | None) -> str:
    return markdown.markdown(
        text or "", extensions=[*MD_EXTENSIONS, EscapeHtmlExtension()]
    )


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown(text))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return iso


################################################################################
# Database helpers
################################################################################
SCHEMA = """
------------------------------------------------------------
-- 1.  Accounts
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS user (
    id            INTEGER PRIMARY KEY,
    email         TEXT UNIQUE NOT NULL,
    name          TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role          TEXT NOT NULL DEFAULT 'user',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

------------------------------------------------------------
-- 2.  Posts + their images
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS post (
    id         INTEGER PRIMARY KEY,
    author_id  INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
    title      TEXT NOT NULL,
    body       TEXT NOT NULL,
    slug       TEXT UNIQUE NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS post_updated ON post(updated_at);

CREATE TABLE IF NOT EXISTS post_image (
    id         INTEGER PRIMARY KEY,
    post_id    INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
    uuid       TEXT NOT NULL,
    name       TEXT NOT NULL,
    extension  TEXT NOT NULL,
    mime       TEXT NOT NULL,
    size       INTEGER NOT NULL,
    ord        INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

------------------------------------------------------------
-- 3.  Categories (ordering is maintained by CategoryService)
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS category (
    id        INTEGER PRIMARY KEY,
    name      TEXT NOT NULL DEFAULT 'Untitled',
    parent_id INTEGER,
    ord       INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS category_parent_ord ON category(parent_id, ord);

CREATE TABLE IF NOT EXISTS post_category (
    post_id     INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES category(id) ON DELETE CASCADE,
    PRIMARY KEY (post_id, category_id)
);
"""


def fold(text: str | None) -> str:
    """Lower-case and strip diacritics: 'Čaj' -> 'caj'."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def open_db(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path)
    db.execute("PRAGMA foreign_keys = ON;")
    db.row_factory = sqlite3.Row
    db.create_function("fold", 1, fold, deterministic=True)
    return db


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = open_db(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db(db: sqlite3.Connection | None = None) -> None:
    (db or get_db()).executescript(SCHEMA)


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, pages


def current_page() -> int:
    return max(request.args.get("page", 1, type=int) or 1, 1)


################################################################################
# Locale + template helpers
################################################################################
def locale_for_host(host: str | None) -> str:
    """`blog.sk` -> sk, `blog.com` -> en, anything else -> DEFAULT_LOCALE."""
    hostname = (host or "").split(":", 1)[0].rstrip(".").lower()
    tld = hostname.rsplit(".", 1)[-1] if "." in hostname else ""
    return DOMAIN_LOCALES.get(tld, app.config["DEFAULT_LOCALE"])


def messages() -> dict[str, str]:
    return getattr(g, "messages", None) or dictionary(app.config["DEFAULT_LOCALE"])


def t(key: str) -> str:
    return messages().get(key, key)


def _csrf_token() -> str:
    """One token per session, issued at login."""
    return session.get("csrf", "")


def _start_session(user: sqlite3.Row) -> None:
    session.clear()
    session.permanent = True
    session["logged_in"] = True
    session["user_id"] = user["id"]
    session["csrf"] = secrets.token_hex(16)


app.jinja_env.globals.update(
    t=t,
    csrf_token=_csrf_token,
    version=__version__,
    flatten=flatten,
)


@app.before_request
def pick_locale():
    g.locale = locale_for_host(request.host)
    g.messages = dictionary(g.locale)


@app.before_request
def load_user():
    g.user = None
    uid = session.get("user_id")
    if uid is not None:
        g.user = get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()
        if g.user is None:
            session.clear()


################################################################################
# Security
################################################################################
def login_required() -> None:
    if not session.get("logged_in") or g.get("user") is None:
        abort(403)


def admin_required() -> None:
    login_required()
    if g.user["role"] != "admin":
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method in SAFE_METHODS:
                return view(*args, **kwargs)
            now = time()
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                return Response(
                    t("messages.tooManyRequests"),
                    status=429,
                    headers={"Retry-After": str(int(window - (now - dq[0])))},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # anonymous POSTs (login, register) carry no session token yet
    if not session.get("logged_in"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cross-Origin-Opener-Policy": "same-origin",
        }
    )
    return resp


################################################################################
# Templates
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="{{ g.locale or 'en' }}">
<title>{{ title or 'inkwell' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-family:Georgia,"Times New Roman",serif;font-size:62.5%}body{font-size:1.8rem;line-height:1.6;max-width:42em;margin:auto;padding:1.5rem;color:#222;background:#fdfcf8}
a{color:#1d4e89}a:hover{color:#0b2745}h1,h2,h3{line-height:1.2;margin:2.5rem 0 1rem}
header{display:flex;flex-wrap:wrap;align-items:baseline;justify-content:space-between;gap:1rem;border-bottom:1px solid #ddd;padding-bottom:1rem}
header nav{display:flex;flex-wrap:wrap;gap:1rem;align-items:baseline;font-size:.85em}header form{display:inline;margin:0}
input,textarea,select{font:inherit;font-size:.9em;padding:.4rem .6rem;border:1px solid #bbb;border-radius:4px;background:#fff;box-sizing:border-box}
textarea{width:100%;min-height:14rem}label{display:block;font-weight:600;margin:1rem 0 .3rem}
button,.button{font:inherit;font-size:.8em;padding:.3rem .8rem;border:1px solid #1d4e89;border-radius:4px;background:#1d4e89;color:#fff;cursor:pointer}
button[disabled]{opacity:.4;cursor:default}button.link{background:none;border:none;color:#1d4e89;padding:0;text-decoration:underline}
.post{margin:2rem 0;padding-bottom:1.5rem;border-bottom:1px dashed #ddd}.meta{font-size:.75em;color:#777}
.pill{display:inline-block;padding:0 .6em;margin-right:.3em;border-radius:1em;background:#e8eef6;font-size:.75em}
.pager{display:flex;justify-content:space-between;margin:2rem 0}.thumbs img{margin-right:.5rem;border-radius:4px}
.toast{padding:.75rem 1rem;margin:1rem 0;background:#fff4d6;border-left:4px solid #e0a800;font-size:.9em}
.category-list{list-style:none;padding-left:1.8rem}.category{margin:.4rem 0}.category>input{width:14rem;margin-right:.3rem}
.category>button{margin-right:.2rem}
</style>
<body>
<header>
    <h1 style="margin:0;font-size:1.6em;"><a href="{{ url_for('index') }}" style="text-decoration:none;">inkwell</a></h1>
    <nav aria-label="Primary">
        <a href="{{ url_for('index') }}">{{ t('nav.home') }}</a>
        {% if g.user %}
            <a href="{{ url_for('dashboard') }}">{{ t('nav.dashboard') }}</a>
            <a href="{{ url_for('new_post') }}">{{ t('nav.newPost') }}</a>
            {% if g.user['role'] == 'admin' %}
            <a href="{{ url_for('admin') }}">{{ t('nav.admin') }}</a>
            {% endif %}
            <form method="post" action="{{ url_for('logout') }}">
                <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                <button type="submit" class="link">{{ t('nav.logout') }}</button>
            </form>
        {% else %}
            <a href="{{ url_for('login') }}">{{ t('nav.login') }}</a>
            <a href="{{ url_for('register') }}">{{ t('nav.register') }}</a>
        {% endif %}
        <form action="{{ url_for('search') }}" method="get" role="search">
            <input type="search" name="q" aria-label="{{ t('form.search') }}"
                   placeholder="{{ t('form.search') }}" value="{{ request.args.get('q','') }}">
        </form>
    </nav>
</header>
{% macro post_list(posts) -%}
    {% for p in posts %}
    <article class="post">
        <h2 style="margin-top:0;"><a href="{{ url_for('post_detail', slug=p['slug']) }}">{{ p['title'] }}</a></h2>
        <div class="meta">{{ t('messages.written') }} {{ p['author'] }} · {{ p['updated_at']|ts }}</div>
    </article>
    {% endfor %}
{%- endmacro %}
{% macro pager(page, pages) -%}
    <nav class="pager">
        <span>{% if page > 1 %}<a href="{{ url_for(request.endpoint, page=page-1, q=request.args.get('q')) }}">&larr;</a>{% endif %}</span>
        <span>{% if page < pages %}<a href="{{ url_for(request.endpoint, page=page+1, q=request.args.get('q')) }}">{{ t('nav.olderPosts') }} &rarr;</a>{% endif %}</span>
    </nav>
{%- endmacro %}
{% macro category_options(tree, selected) -%}
    {% for node, depth in flatten(tree) %}
    <option value="{{ node.id }}" {% if node.id in selected %}selected{% endif %}>{{ '· ' * depth }}{{ node.name }}</option>
    {% endfor %}
{%- endmacro %}
{% with msgs = get_flashed_messages() %}
{% if msgs %}
    <div class="toast" role="status" aria-live="polite">{{ msgs|join('<br>'|safe) }}</div>
{% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:3rem;padding-top:1rem;border-top:1px solid #ddd;font-size:.75em;color:#777;">
    inkwell v{{ version }}
</footer>
</body>
</html>
"""


################################################################################
# Authentication
################################################################################
@app.route("/auth/register", methods=["GET", "POST"])
def register():
    form = {"name": "", "email": ""}
    if request.method == "POST":
        form = {
            "name": request.form.get("name", "").strip(),
            "email": request.form.get("email", "").strip().lower(),
        }
        password = request.form.get("password", "")
        confirm = request.form.get("confirmPassword", "")
        db = get_db()

        errors = []
        if not form["name"]:
            errors.append(f"{t('form.name')}: {t('validation.isRequired')}")
        if not form["email"]:
            errors.append(t("validation.emailIsRequired"))
        elif not EMAIL_RE.match(form["email"]):
            errors.append(t("validation.emailIsInvalid"))
        elif db.execute("SELECT 1 FROM user WHERE email=?", (form["email"],)).fetchone():
            errors.append(t("validation.emailAlreadyExists"))
        if not password:
            errors.append(t("validation.passwordIsRequired"))
        elif len(password) < PASSWORD_MIN:
            errors.append(t("validation.passwordTooShort"))
        if not confirm:
            errors.append(t("validation.confirmPasswordIsRequired"))
        elif password and confirm != password:
            errors.append(t("validation.passwordsMustMatch"))

        if not errors:
            user = create_user(
                db, email=form["email"], name=form["name"], password=password
            )
            _start_session(user)
            flash(t("messages.youAreRegisteredAndLoggedIn"))
            return redirect(url_for("dashboard"))

        for msg in errors:
            flash(msg)
        return render_template_string(
            TEMPL_REGISTER, title=t("title.register"), form=form
        ), 400

    return render_template_string(TEMPL_REGISTER, title=t("title.register"), form=form)


def create_user(db, *, email: str, name: str, password: str, role: str | None = None):
    """Insert a user; the configured ADMIN_EMAIL becomes an admin."""
    if role is None:
        admin_email = app.config.get("ADMIN_EMAIL") or ""
        role = "admin" if admin_email and email == admin_email else "user"
    stamp = now_iso()
    cur = db.execute(
        "INSERT INTO user (email, name, password_hash, role, created_at, updated_at) "
        "VALUES (?,?,?,?,?,?)",
        (email, name, generate_password_hash(password), role, stamp, stamp),
    )
    db.commit()
    return db.execute("SELECT * FROM user WHERE id=?", (cur.lastrowid,)).fetchone()


TEMPL_REGISTER = wrap("""
{% block body %}
<h2>{{ t('title.register') }}</h2>
<form method="post">
    <label for="name">{{ t('form.name') }}</label>
    <input id="name" name="name" value="{{ form.name }}" autocomplete="name">
    <label for="email">{{ t('form.email') }}</label>
    <input id="email" name="email" type="email" value="{{ form.email }}" autocomplete="email">
    <label for="password">{{ t('form.password') }}</label>
    <input id="password" name="password" type="password" autocomplete="new-password">
    <label for="confirmPassword">{{ t('form.confirmPassword') }}</label>
    <input id="confirmPassword" name="confirmPassword" type="password" autocomplete="new-password">
    <p><button type="submit">{{ t('form.register') }}</button></p>
</form>
{% endblock %}
""")


@app.route("/auth/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    email = ""
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        user = get_db().execute("SELECT * FROM user WHERE email=?", (email,)).fetchone()
        if user and check_password_hash(user["password_hash"], password):
            _start_session(user)
            flash(t("messages.youAreLoggedIn"))
            return redirect(url_for("dashboard"))

        flash(t("messages.invalidCredentials"))
        return render_template_string(
            TEMPL_LOGIN, title=t("title.login"), email=email
        ), 400

    return render_template_string(TEMPL_LOGIN, title=t("title.login"), email=email)


TEMPL_LOGIN = wrap("""
{% block body %}
<h2>{{ t('title.login') }}</h2>
<form method="post">
    <label for="email">{{ t('form.email') }}</label>
    <input id="email" name="email" type="email" value="{{ email }}" autocomplete="username">
    <label for="password">{{ t('form.password') }}</label>
    <input id="password" name="password" type="password" autocomplete="current-password">
    <p><button type="submit">{{ t('form.login') }}</button></p>
</form>
{% endblock %}
""")


@app.route("/auth/logout", methods=["POST"])
def logout():
    session.clear()
    flash(t("messages.youAreLoggedOut"))
    return redirect(url_for("index"))


################################################################################
# Posts
################################################################################
POST_LIST_SQL = """
    SELECT p.id, p.title, p.slug, p.updated_at, u.name AS author
      FROM post p
      JOIN user u ON u.id = p.author_id
"""


def per_page() -> int:
    return int(app.config.get("PER_PAGE") or PER_PAGE)


def slugify(text: str) -> str:
    ascii_ = fold(text).encode("ascii", "ignore").decode()
    return SLUG_RE.sub("-", ascii_).strip("-")[:80] or "post"


def unique_slug(title: str, *, db, exclude_id: int | None = None) -> str:
    base = slugify(title)
    slug, n = base, 1
    while True:
        row = db.execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()
        if row is None or row["id"] == exclude_id:
            return slug
        n += 1
        slug = f"{base}-{n}"


def category_tree(db) -> list[dict]:
    return materialize(CategoryStore(db).all())


def post_categories(post_id: int, *, db) -> list[sqlite3.Row]:
    return db.execute(
        """SELECT c.id, c.name
             FROM category c
             JOIN post_category pc ON pc.category_id = c.id
            WHERE pc.post_id = ?
            ORDER BY c.name""",
        (post_id,),
    ).fetchall()


def set_post_categories(post_id: int, category_ids: list[int], *, db) -> None:
    db.execute("DELETE FROM post_category WHERE post_id=?", (post_id,))
    db.executemany(
        "INSERT OR IGNORE INTO post_category (post_id, category_id) VALUES (?,?)",
        [(post_id, cid) for cid in category_ids],
    )


def _read_post_form(db) -> tuple[dict, list, list[str]]:
    """Return (fields, uploads, errors) for the new/edit post forms."""
    fields = {
        "title": request.form.get("title", "").strip(),
        "body": request.form.get("body", "").strip(),
        "categories": [],
    }
    errors = []
    if not fields["title"]:
        errors.append(f"{t('form.title')}: {t('validation.isRequired')}")
    if not fields["body"]:
        errors.append(f"{t('form.body')}: {t('validation.isRequired')}")

    uploads = [f for f in request.files.getlist("images") if f and f.filename]
    if any((f.mimetype or "").lower() not in media.IMAGE_MIMES for f in uploads):
        errors.append(t("validation.invalidImageFormat"))

    store = CategoryStore(db)
    for raw in request.form.getlist("categories"):
        try:
            cid = int(raw)
        except ValueError:
            cid = None
        if cid is None or store.get(cid) is None:
            errors.append(t("validation.unknownCategory"))
            break
        fields["categories"].append(cid)
    return fields, uploads, errors


def store_images(post_id: int, uploads: list, *, db) -> list[media.StoredImage]:
    """Process *uploads* into UPLOAD_DIR and attach them to the post."""
    upload_dir = Path(app.config["UPLOAD_DIR"])
    stored: list[media.StoredImage] = []
    try:
        for f in uploads:
            stored.append(
                media.process_image(f.stream, upload_dir, name=f.filename, mime=f.mimetype)
            )
    except ImageError:
        discard_files([img.filename for img in stored])
        raise

    start = db.execute(
        "SELECT COALESCE(MAX(ord), 0) FROM post_image WHERE post_id=?", (post_id,)
    ).fetchone()[0]
    stamp = now_iso()
    db.executemany(
        "INSERT INTO post_image (post_id, uuid, name, extension, mime, size, ord, created_at) "
        "VALUES (?,?,?,?,?,?,?,?)",
        [
            (post_id, img.uuid, img.name, img.extension, img.mime, img.size, start + i, stamp)
            for i, img in enumerate(stored, 1)
        ],
    )
    return stored


def mirror_images(images: list[media.StoredImage]) -> None:
    cfg = media.r2_config(ENV_FILE)
    if not images or not media.r2_is_configured(cfg):
        return
    client = media.r2_client(cfg)
    for img in images:
        media.mirror_to_r2(cfg, Path(app.config["UPLOAD_DIR"]), img, client=client)


def discard_files(filenames: list[str]) -> None:
    """Best-effort removal of stored renditions (local and R2)."""
    upload_dir = Path(app.config["UPLOAD_DIR"])
    cfg = media.r2_config(ENV_FILE)
    for filename in filenames:
        try:
            media.remove_image(upload_dir, filename)
        except OSError:
            app.logger.exception("could not remove %s", filename)
        if media.r2_is_configured(cfg):
            media.delete_from_r2(cfg, filename)


def save_post_content(post_id: int, fields: dict, uploads: list, *, db) -> None:
    """
    Store new images, rewrite their references in the body and set the
    categories.  Raises ImageError / BotoCoreError / ClientError after
    rolling back and cleaning up; commits otherwise.
    """
    stored: list[media.StoredImage] = []
    try:
        stored = store_images(post_id, uploads, db=db)
        body = media.replace_references(fields["body"], stored)
        db.execute("UPDATE post SET body=? WHERE id=?", (body, post_id))
        set_post_categories(post_id, fields["categories"], db=db)
        mirror_images(stored)
    except (ImageError, BotoCoreError, ClientError):
        db.rollback()
        discard_files([img.filename for img in stored])
        raise
    db.commit()
    fields["body"] = body


@app.route("/")
def index():
    page = current_page()
    rows, pages = paginate(
        POST_LIST_SQL + " ORDER BY p.updated_at DESC, p.id DESC",
        (),
        page=page,
        per_page=per_page(),
        db=get_db(),
    )
    return render_template_string(
        TEMPL_INDEX, title=t("title.home"), posts=rows, page=page, pages=pages
    )


TEMPL_INDEX = wrap("""
{% block body %}
{% if posts %}
    {{ post_list(posts) }}
    {{ pager(page, pages) }}
{% else %}
    <p>{{ t('messages.noPosts') }}</p>
{% endif %}
{% endblock %}
""")


@app.route("/search")
def search():
    q = request.args.get("q", "").strip()
    page = current_page()
    rows, pages = [], 0
    if q:
        needle = "%" + re.sub(r"([\\%_])", r"\\\1", fold(q)) + "%"
        rows, pages = paginate(
            POST_LIST_SQL
            + " WHERE fold(p.title) LIKE ? ESCAPE '\\' OR fold(p.body) LIKE ? ESCAPE '\\'"
            + " ORDER BY p.updated_at DESC, p.id DESC",
            (needle, needle),
            page=page,
            per_page=per_page(),
            db=get_db(),
        )
    return render_template_string(
        TEMPL_SEARCH, title=t("title.search"), q=q, posts=rows, page=page, pages=pages
    )


TEMPL_SEARCH = wrap("""
{% block body %}
<h2>{{ t('title.search') }}{% if q %}: “{{ q }}”{% endif %}</h2>
{% if posts %}
    {{ post_list(posts) }}
    {{ pager(page, pages) }}
{% elif q %}
    <p>{{ t('messages.noResults') }}</p>
{% endif %}
{% endblock %}
""")


def _render_post(post, *, status: int = 200, form: dict | None = None):
    db = get_db()
    images = db.execute(
        "SELECT * FROM post_image WHERE post_id=? ORDER BY ord", (post["id"],)
    ).fetchall()
    cats = post_categories(post["id"], db=db)
    is_author = g.user is not None and g.user["id"] == post["author_id"]
    return render_template_string(
        TEMPL_POST,
        title=post["title"],
        post=post,
        images=images,
        categories=cats,
        is_author=is_author,
        tree=category_tree(db) if is_author else [],
        form=form
        or {
            "title": post["title"],
            "body": post["body"],
            "categories": [c["id"] for c in cats],
        },
    ), status


def _get_post(**where):
    (col, val), = where.items()
    post = get_db().execute(
        f"""SELECT p.*, u.name AS author
              FROM post p JOIN user u ON u.id = p.author_id
             WHERE p.{col}=?""",
        (val,),
    ).fetchone()
    if post is None:
        abort(404, description=f"{t('messages.postNotFound')} {t('messages.notFound')}")
    return post


@app.route("/post/<slug>")
def post_detail(slug):
    return _render_post(_get_post(slug=slug))


TEMPL_POST = wrap("""
{% block body %}
<article class="post">
    <h2>{{ post['title'] }}</h2>
    <div class="meta">
        {{ t('messages.written') }} {{ post['author'] }} · {{ post['updated_at']|ts }}
        {% for c in categories %}<span class="pill">{{ c['name'] }}</span>{% endfor %}
    </div>
    <div class="e-content">{{ post['body']|md }}</div>
</article>
{% if is_author %}
<h3>{{ t('form.save') }}</h3>
{% if images %}
<div class="thumbs">
    {% for img in images %}
    <img src="{{ url_for('uploads', filename='thumbs/' ~ img['uuid'] ~ img['extension']) }}"
         alt="{{ img['name'] }}" title="{{ img['name'] }}" width="50" height="50">
    {% endfor %}
</div>
{% endif %}
<form method="post" action="{{ url_for('edit_post', post_id=post['id']) }}" enctype="multipart/form-data">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="title">{{ t('form.title') }}</label>
    <input id="title" name="title" value="{{ form.title }}" style="width:100%;">
    <label for="body">{{ t('form.body') }}</label>
    <textarea id="body" name="body">{{ form.body }}</textarea>
    <label for="categories">{{ t('form.categories') }}</label>
    <select id="categories" name="categories" multiple>{{ category_options(tree, form.categories) }}</select>
    <label for="images">{{ t('form.images') }}</label>
    <input id="images" name="images" type="file" accept="image/jpeg,image/png,image/gif" multiple>
    <p><button type="submit">{{ t('form.save') }}</button></p>
</form>
{% endif %}
{% endblock %}
""")


@app.route("/new-post", methods=["GET", "POST"])
def new_post():
    login_required()
    db = get_db()
    form = {"title": "", "body": "", "categories": []}

    if request.method == "POST":
        form, uploads, errors = _read_post_form(db)
        if not errors:
            stamp = now_iso()
            cur = db.execute(
                "INSERT INTO post (author_id, title, body, slug, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?)",
                (g.user["id"], form["title"], form["body"],
                 unique_slug(form["title"], db=db), stamp, stamp),
            )
            try:
                save_post_content(cur.lastrowid, form, uploads, db=db)
            except ImageError:
                errors.append(t("validation.invalidImageFormat"))
            except (BotoCoreError, ClientError):
                app.logger.exception("R2 upload failed")
                return {"message": t("messages.somethingWentWrong")}, 502
            else:
                flash(t("messages.postSaved"))
                slug = db.execute(
                    "SELECT slug FROM post WHERE id=?", (cur.lastrowid,)
                ).fetchone()["slug"]
                return redirect(url_for("post_detail", slug=slug))

        for msg in errors:
            flash(msg)
        return render_template_string(
            TEMPL_NEW_POST, title=t("title.newPost"), form=form, tree=category_tree(db)
        ), 400

    return render_template_string(
        TEMPL_NEW_POST, title=t("title.newPost"), form=form, tree=category_tree(db)
    )


TEMPL_NEW_POST = wrap("""
{% block body %}
<h2>{{ t('title.newPost') }}</h2>
<form method="post" enctype="multipart/form-data">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="title">{{ t('form.title') }}</label>
    <input id="title" name="title" value="{{ form.title }}" style="width:100%;">
    <label for="body">{{ t('form.body') }}</label>
    <textarea id="body" name="body" placeholder="![photo](photo.jpg)">{{ form.body }}</textarea>
    <label for="categories">{{ t('form.categories') }}</label>
    <select id="categories" name="categories" multiple>{{ category_options(tree, form.categories) }}</select>
    <label for="images">{{ t('form.images') }}</label>
    <input id="images" name="images" type="file" accept="image/jpeg,image/png,image/gif" multiple>
    <p><button type="submit">{{ t('form.addNewPost') }}</button></p>
</form>
{% endblock %}
""")


@app.route("/edit-post/<int:post_id>", methods=["POST"])
def edit_post(post_id):
    login_required()
    db = get_db()
    post = _get_post(id=post_id)
    if post["author_id"] != g.user["id"]:
        abort(403)

    form, uploads, errors = _read_post_form(db)
    if errors:
        for msg in errors:
            flash(msg)
        return _render_post(post, status=400, form=form)

    previous = db.execute(
        "SELECT id, uuid, extension FROM post_image WHERE post_id=?", (post_id,)
    ).fetchall()
    db.execute(
        "UPDATE post SET title=?, body=?, slug=?, updated_at=? WHERE id=?",
        (form["title"], form["body"],
         unique_slug(form["title"], db=db, exclude_id=post_id), now_iso(), post_id),
    )
    try:
        save_post_content(post_id, form, uploads, db=db)
    except ImageError:
        flash(t("validation.invalidImageFormat"))
        return _render_post(post, status=400, form=form)
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        return {"message": t("messages.somethingWentWrong")}, 502

    # images the new body no longer points at
    unused = []
    for img in previous:
        filename = f"{img['uuid']}{img['extension']}"
        if not media.is_referenced(form["body"], filename):
            db.execute("DELETE FROM post_image WHERE id=?", (img["id"],))
            unused.append(filename)
    db.commit()
    discard_files(unused)

    flash(t("messages.postSaved"))
    post = _get_post(id=post_id)
    return redirect(url_for("post_detail", slug=post["slug"]))


@app.route("/dashboard")
def dashboard():
    login_required()
    page = current_page()
    rows, pages = paginate(
        POST_LIST_SQL + " WHERE p.author_id=? ORDER BY p.updated_at DESC, p.id DESC",
        (g.user["id"],),
        page=page,
        per_page=per_page(),
        db=get_db(),
    )
    return render_template_string(
        TEMPL_DASHBOARD, title=t("title.dashboard"), posts=rows, page=page, pages=pages
    )


TEMPL_DASHBOARD = wrap("""
{% block body %}
<h2>{{ t('title.dashboard') }}</h2>
<p><a class="button" href="{{ url_for('new_post') }}" style="text-decoration:none;">{{ t('form.addNewPost') }}</a></p>
{% if posts %}
    {{ post_list(posts) }}
    {{ pager(page, pages) }}
{% else %}
    <p>{{ t('messages.noPosts') }}</p>
{% endif %}
{% endblock %}
""")


@app.route("/uploads/<path:filename>")
def uploads(filename):
    return send_from_directory(app.config["UPLOAD_DIR"], filename)


################################################################################
# Admin
################################################################################
@app.route("/admin")
def admin():
    admin_required()
    db = get_db()
    counts = {
        table: db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        for table in ("user", "post", "category")
    }
    return render_template_string(TEMPL_ADMIN, title=t("title.admin"), counts=counts)


TEMPL_ADMIN = wrap("""
{% block body %}
<h2>{{ t('title.admin') }}</h2>
<ul>
    <li>users: {{ counts.user }}</li>
    <li>posts: {{ counts.post }}</li>
    <li><a href="{{ url_for('admin_categories') }}">{{ t('title.categories') }}</a>: {{ counts.category }}</li>
</ul>
{% endblock %}
""")


@app.route("/admin/categories")
def admin_categories():
    admin_required()
    labels = {
        key: t(f"categories.{key}")
        for key in ("add", "addNested", "up", "down", "delete")
    }
    return render_template_string(
        TEMPL_CATEGORIES,
        title=t("title.categories"),
        tree=category_tree(get_db()),
        labels=labels,
    )


TEMPL_CATEGORIES = wrap("""
{% block body %}
<h2>{{ t('title.categories') }}</h2>
<div id="categories"
     data-api="{{ url_for('index') }}api"
     data-confirm="{{ t('categories.confirmDelete') }}"
     data-labels='{{ labels|tojson }}'>
    <button type="button" data-action="addFirst" {% if tree %}hidden{% endif %}>{{ t('categories.addFirst') }}</button>
    {% if tree %}
    <ul class="category-list">
    {%- for node in tree recursive %}
        <li id="{{ node.id }}" class="category">
            <input type="text" class="category-name" value="{{ node.name }}" aria-label="{{ t('form.name') }}">
            <button type="button" data-action="add">{{ labels.add }}</button>
            <button type="button" data-action="addNested">{{ labels.addNested }}</button>
            <button type="button" data-action="up" {% if loop.first %}disabled{% endif %}>{{ labels.up }}</button>
            <button type="button" data-action="down" {% if loop.last %}disabled{% endif %}>{{ labels.down }}</button>
            <button type="button" data-action="delete">{{ labels.delete }}</button>
            {%- if node.children %}
            <ul class="category-list">{{ loop(node.children) }}</ul>
            {%- endif %}
        </li>
    {%- endfor %}
    </ul>
    {% endif %}
</div>
<script>
(() => {
    const root = document.getElementById('categories');
    if (!root) return;
    const api = root.dataset.api;
    const labels = JSON.parse(root.dataset.labels);
    const addFirst = root.querySelector(':scope > [data-action="addFirst"]');
    const timers = new WeakMap();   // input -> debounce timer
    const creating = new WeakMap(); // li -> promise settled once its real id is known

    const tempId = () => 'category-' + Math.floor(10000000 + Math.random() * 90000000);

    async function send(data) {
        const tokenRes = await fetch(api + '/csrf-token', {credentials: 'same-origin'});
        if (!tokenRes.ok) throw new Error('CSRF token request failed');
        const token = (await tokenRes.json()).csrfToken;
        if (!token) throw new Error('CSRF token not found');
        const res = await fetch(api + '/categories', {
            method: 'POST',
            credentials: 'same-origin',
            headers: {'Content-Type': 'application/json', 'X-CSRFToken': token},
            body: JSON.stringify({data}),
        });
        const body = await res.json().catch(() => ({}));
        if (!res.ok) throw new Error(body.message || res.statusText);
        return body;
    }

    // ids are read only once the item's own creation has been answered
    function dispatch(li, build, placeholder) {
        const ready = (li && creating.get(li)) || Promise.resolve();
        const req = ready.then(() => send(build()));
        if (placeholder) {
            creating.set(placeholder, req.then(body => {
                if (body && body.newId !== undefined) placeholder.id = String(body.newId);
            }, () => undefined));
        }
        req.catch(err => console.error('category action failed:', err.message));
    }

    function makeItem() {
        const li = document.createElement('li');
        li.id = tempId();
        li.className = 'category';
        const input = document.createElement('input');
        input.type = 'text';
        input.className = 'category-name';
        li.append(input, ' ');
        for (const action of ['add', 'addNested', 'up', 'down', 'delete']) {
            const btn = document.createElement('button');
            btn.type = 'button';
            btn.dataset.action = action;
            btn.textContent = labels[action];
            li.append(btn, ' ');
        }
        return li;
    }

    function listOf(owner) {
        let ul = owner.querySelector(':scope > ul');
        if (!ul) {
            ul = document.createElement('ul');
            ul.className = 'category-list';
            owner.append(ul);
        }
        return ul;
    }

    function refresh() {
        root.querySelectorAll('ul').forEach(ul => {
            const items = ul.querySelectorAll(':scope > li');
            items.forEach((li, i) => {
                li.querySelector(':scope > [data-action="up"]').disabled = i === 0;
                li.querySelector(':scope > [data-action="down"]').disabled = i === items.length - 1;
            });
        });
        const top = root.querySelector(':scope > ul');
        addFirst.hidden = Boolean(top && top.children.length);
    }

    root.addEventListener('click', ev => {
        const btn = ev.target.closest('button[data-action]');
        if (!btn || !root.contains(btn)) return;
        const action = btn.dataset.action;
        const li = btn.closest('li');

        if (action === 'addFirst') {
            const item = makeItem();
            listOf(root).append(item);
            refresh();
            dispatch(null, () => ({action}), item);
            return;
        }
        if (!li) return;

        if (action === 'add') {
            const item = makeItem();
            li.after(item);
            refresh();
            dispatch(li, () => ({action, after: li.id}), item);
        } else if (action === 'addNested') {
            const item = makeItem();
            listOf(li).append(item);
            refresh();
            dispatch(li, () => ({action, nested: li.id}), item);
        } else if (action === 'delete') {
            if (!confirm(root.dataset.confirm)) return;
            li.querySelectorAll('input.category-name').forEach(input => clearTimeout(timers.get(input)));
            li.remove();
            refresh();
            dispatch(li, () => ({action, id: li.id}));
        } else if (action === 'up' && li.previousElementSibling) {
            li.previousElementSibling.before(li);
            refresh();
            dispatch(li, () => ({action, id: li.id}));
        } else if (action === 'down' && li.nextElementSibling) {
            li.nextElementSibling.after(li);
            refresh();
            dispatch(li, () => ({action, id: li.id}));
        }
    });

    root.addEventListener('input', ev => {
        const input = ev.target;
        if (!input.classList.contains('category-name')) return;
        const li = input.closest('li');
        clearTimeout(timers.get(input));
        timers.set(input, setTimeout(() => {
            timers.delete(input);
            dispatch(li, () => ({action: 'input', id: li.id, value: input.value}));
        }, 300));
    });

    refresh();
})();
</script>
{% endblock %}
""")


################################################################################
# JSON API
################################################################################
@app.route("/api/csrf-token")
def api_csrf_token():
    token = _csrf_token()
    if not token:
        return {"message": t("messages.csrfUnavailable")}, 500
    return {"csrfToken": token}


@app.route("/api/categories", methods=["POST"])
def api_categories():
    admin_required()
    envelope = request.get_json(silent=True)
    data = envelope.get("data") if isinstance(envelope, dict) else None
    if not isinstance(data, dict):
        return {"message": t("categories.invalidData")}, 400

    service = CategoryService(CategoryStore(get_db()), messages())
    body, status = service.apply_action(data.get("action"), data)
    return body, status


@app.errorhandler(InternalError)
def category_failure(exc: InternalError):
    return {"message": exc.message}, exc.status


################################################################################
# Errors
################################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


def _error_page(status: int, message: str):
    if _wants_json():
        return {"message": message}, status
    return render_template_string(
        TEMPL_ERROR, title=t("title.error"), status=status, message=message
    ), status


@app.errorhandler(403)
def forbidden(exc):
    return _error_page(403, t("messages.forbidden"))


@app.errorhandler(404)
def not_found(exc):
    description = getattr(exc, "description", "") or ""
    # werkzeug's stock text is replaced by ours
    if description.startswith("The requested URL"):
        description = t("messages.pageNotFound")
    return _error_page(404, description or t("messages.pageNotFound"))


@app.errorhandler(500)
def internal_error(exc):
    return _error_page(500, t("messages.somethingWentWrong"))


TEMPL_ERROR = wrap("""
{% block body %}
<h2>{{ status }} · {{ t('title.error') }}</h2>
<p>{{ message }}</p>
<p><a href="{{ url_for('index') }}">{{ t('nav.home') }}</a></p>
{% endblock %}
""")


################################################################################
# CLI
################################################################################
@app.cli.command("init")
@click.option("--email", prompt=True, help="Admin e-mail address")
@click.option("--name", prompt=True, help="Display name")
@click.password_option(help="Admin password")
def cli_init(email: str, name: str, password: str):
    """Initialise the DB *and* create (or promote) an admin account."""
    init_db()
    db = get_db()
    email = email.strip().lower()
    row = db.execute("SELECT id FROM user WHERE email=?", (email,)).fetchone()
    if row:
        db.execute(
            "UPDATE user SET role='admin', updated_at=? WHERE id=?", (now_iso(), row["id"])
        )
        db.commit()
        click.secho(f"\n{email} is now an admin.", fg="yellow")
        return
    create_user(db, email=email, name=name.strip(), password=password, role="admin")
    click.secho(f"\nAdmin {email} created.", fg="green")


SEED_CATEGORIES = [
    ("Travel", [("Europe", [("Slovakia", []), ("Austria", [])]), ("Asia", [])]),
    ("Food", [("Recipes", []), ("Restaurants", [])]),
    ("Notes", []),
]

SEED_POSTS = [
    ("Hello, world", "The first post on this blog.\n\nIt has *two* paragraphs.", ["Notes"]),
    ("Bratislava in a day", "Castle, old town and a walk along the Danube.", ["Slovakia"]),
    ("Halušky", "Potato dumplings with bryndza. Čerstvá slanina on top.", ["Recipes"]),
]


def seed(db) -> None:
    author = db.execute("SELECT id FROM user ORDER BY role='admin' DESC, id LIMIT 1").fetchone()
    if author is None:
        author = create_user(
            db,
            email="seed@example.com",
            name="Seed",
            password=secrets.token_urlsafe(12),
        )
    store = CategoryStore(db)
    ids: dict[str, int] = {}

    def plant(nodes, parent_id):
        base = store.max_order(parent_id)
        for i, (name, children) in enumerate(nodes, 1):
            ids[name] = store.create(name=name, parent_id=parent_id, order=base + i)
            plant(children, ids[name])

    with store.transaction():
        plant(SEED_CATEGORIES, None)
        stamp = now_iso()
        for title, body, cats in SEED_POSTS:
            cur = db.execute(
                "INSERT INTO post (author_id, title, body, slug, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?)",
                (author["id"], title, body, unique_slug(title, db=db), stamp, stamp),
            )
            set_post_categories(cur.lastrowid, [ids[c] for c in cats], db=db)


def unseed(db) -> None:
    """Remove every post, image and category (users stay)."""
    images = db.execute("SELECT uuid, extension FROM post_image").fetchall()
    with CategoryStore(db).transaction():
        for table in ("post_category", "post_image", "post", "category"):
            db.execute(f"DELETE FROM {table}")
    discard_files([f"{img['uuid']}{img['extension']}" for img in images])


@app.cli.command("seed")
@click.option("--destroy", "-d", is_flag=True, help="Delete posts and categories instead.")
def cli_seed(destroy: bool):
    """Import sample categories and posts."""
    init_db()
    db = get_db()
    if destroy:
        unseed(db)
        click.secho("Posts and categories removed.", fg="red")
    else:
        seed(db)
        click.secho("Sample data imported.", fg="green")


@app.cli.command("categories")
def cli_categories():
    """Print the category tree."""
    tree = category_tree(get_db())
    if not tree:
        click.echo("(no categories)")
    for node, depth in flatten(tree):
        click.echo(f"{'  ' * depth}{node['order']}. {node['name']}  #{node['id']}")


if __name__ == "__main__":
    app.run()
