#!/usr/bin/env python3
"""
A small blog data core: tag directory, view counter, markdown rendering.
"""

import os
import re
import secrets
import sqlite3
import unicodedata
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from functools import lru_cache
from html import escape, unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from xml.etree import ElementTree as etree

import bleach
import boto3
import click
import latex2mathml.converter as _l2m
import markdown
import pykakasi
from bleach.css_sanitizer import CSSSanitizer
from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, g, jsonify, request, session
from markdown.extensions import Extension
from markdown.preprocessors import Preprocessor
from markdown.treeprocessors import Treeprocessor
from markdown.util import ETX, STX
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound
from pypinyin import lazy_pinyin
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("FOLIO_DB", str(ROOT / "blog.sqlite3")))

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("FOLIO_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if "FOLIO_SECRET_KEY" not in os.environ:
    SECRET_FILE.write_text(SECRET_KEY)

R2_ENV_KEYS = {
    "account_id": "R2_ACCOUNT_ID",
    "access_key_id": "R2_ACCESS_KEY_ID",
    "secret_access_key": "R2_SECRET_ACCESS_KEY",
    "bucket": "R2_BUCKET",
    "public_base": "R2_PUBLIC_BASE_URL",
    "endpoint": "R2_ENDPOINT",
}
R2_REQUIRED_KEYS = ("account_id", "access_key_id", "secret_access_key", "bucket")
UPLOAD_MAX_BYTES = 8 * 1024 * 1024  # 8 MiB
UPLOAD_CACHE_CONTROL = "public, max-age=31536000, immutable"

POST_STATUSES = ("pending", "published", "rejected")
MAX_SLUG_LENGTH = 64
PREVIEW_MAX_CHARS = 50_000
HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}

_USER_SLUG_RE = re.compile(r"[a-z0-9]+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_PLACEHOLDER_RE = re.compile(rf"{STX}wzxhzdk:(\d+){ETX}")
_TAG_RE = re.compile(r"<[^>]*>")
_CJK_RE = re.compile(r"[\u3040-\u30ff\u31f0-\u31ff\u4e00-\u9fff]")
_KANA_RE = re.compile(r"[\u3040-\u30ff\u31f0-\u31ff]")
_ESCAPED_CHAR_RE = re.compile(rf"{STX}(\d+){ETX}")
_FENCE_OPEN_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
_FENCE_CLOSE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})\s*$")
_CODE_META_RE = re.compile(r"""(\w+)=["']([^"']*)["']""")
ARITH_RE = re.compile(
    r'<(?P<tag>span|div) class="arithmatex">(.*?)</(?P=tag)>',
    re.S,
)

try:
    __version__ = version("folio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("FOLIO_SECURE_COOKIES", "1") != "0",
    UPLOAD_MAX_BYTES=UPLOAD_MAX_BYTES,
)


###############################################################################
# Errors
###############################################################################
class FolioError(Exception):
    """Base for errors that reach the client as ``{"error": message}``."""

    status = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(FolioError):
    status = 400
    default_message = "Invalid request"


class Unauthorized(FolioError):
    status = 401
    default_message = "Unauthorized"


class NotFoundError(FolioError):
    status = 404
    default_message = "Not found"


class PayloadTooLarge(FolioError):
    status = 413
    default_message = f"File too large (max {UPLOAD_MAX_BYTES // (1024 * 1024)}MB)"


class UpstreamUnavailable(FolioError):
    status = 503
    default_message = "Service unavailable"


@app.errorhandler(FolioError)
def folio_error(exc: FolioError):
    return {"error": exc.message}, exc.status


@app.errorhandler(404)
def not_found(exc):
    return {"error": "Not found"}, 404


@app.errorhandler(500)
def internal_error(exc):
    # Flask has already logged the original exception at this point.
    return {"error": "Internal Server Error"}, 500


###############################################################################
# Configuration (env + .env file)
###############################################################################
def _read_env_file(path: Path = ENV_FILE) -> dict[str, str]:
    env = {}
    if not path.exists():
        return env
    for ln in path.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip().strip('"').strip("'")
    return env


@dataclass(frozen=True)
class StorageConfig:
    """R2 credentials, resolved once at start-up and handed around explicitly."""

    account_id: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    bucket: str = ""
    public_base: str = ""
    endpoint: str = ""

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, env_file: Path = ENV_FILE
    ) -> "StorageConfig":
        environ = os.environ if environ is None else environ
        file_env = _read_env_file(env_file)
        return cls(
            **{
                attr: (environ.get(key) or file_env.get(key) or "").strip()
                for attr, key in R2_ENV_KEYS.items()
            }
        )

    @property
    def configured(self) -> bool:
        return all(getattr(self, k) for k in R2_REQUIRED_KEYS)

    @property
    def endpoint_url(self) -> str:
        return self.endpoint or f"https://{self.account_id}.r2.cloudflarestorage.com"


def storage_client(cfg: StorageConfig):
    """Return a boto3 S3 client for R2, or ``None`` when credentials are missing."""
    if not cfg.configured:
        return None
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url,
        region_name="auto",
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
    )


def object_url(cfg: StorageConfig, key: str) -> str:
    if cfg.public_base:
        return f"{cfg.public_base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg.bucket}.{cfg.account_id}.r2.cloudflarestorage.com/{key.lstrip('/')}"


app.config["STORAGE"] = StorageConfig.from_env()


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"], timeout=30)
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Posts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS posts (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL,
            slug        TEXT UNIQUE NOT NULL,
            content     TEXT,
            status      TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'published', 'rejected')),
            views       INTEGER NOT NULL DEFAULT 0 CHECK (views >= 0),
            created_at  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Tags
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tags (
            id          TEXT PRIMARY KEY,
            name        TEXT UNIQUE NOT NULL,
            slug        TEXT UNIQUE NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS post_tags (
            post_id TEXT NOT NULL,
            tag_id  TEXT NOT NULL,
            PRIMARY KEY (post_id, tag_id),
            FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id)  REFERENCES tags(id)  ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 3.  Likes (one row per post + user)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post_likes (
            post_id    TEXT NOT NULL,
            user_id    TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (post_id, user_id),
            FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE
        );
        """
    )
    db.commit()


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Viewer (identity from the session cookie)
###############################################################################
@dataclass(frozen=True)
class Viewer:
    id: str
    email: str | None = None


def current_viewer() -> Viewer | None:
    user_id = session.get("user_id")
    if not user_id:
        return None
    return Viewer(id=str(user_id), email=session.get("email"))


def viewer_required() -> Viewer:
    viewer = current_viewer()
    if viewer is None:
        raise Unauthorized()
    return viewer


###############################################################################
# Tags
###############################################################################
def slugify_ascii(value: str) -> str:
    folded = unicodedata.normalize("NFKD", (value or "").lower())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "", folded)[:MAX_SLUG_LENGTH]


def _string_hash36(value: str) -> str:
    """31-based rolling hash over UTF-16 code units, 32-bit wrapped, base36."""
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | data[i + 1] << 8)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    n = abs(h)
    digits = ""
    while True:
        n, rem = divmod(n, 36)
        digits = _BASE36[rem] + digits
        if not n:
            break
    return digits[:8]


@lru_cache(maxsize=1)
def _kakasi():
    return pykakasi.kakasi()


def _to_romaji(value: str) -> str:
    return " ".join(item["hepburn"] for item in _kakasi().convert(value))


def _to_pinyin(value: str) -> str:
    return " ".join(lazy_pinyin(value))


def generate_tag_slug(name: str) -> str:
    """
    ASCII slug for a tag name.

    Japanese names (anything with kana) are romanized to Hepburn, other
    Han-only names to toneless pinyin. Whatever is still left without a
    single ASCII letter or digit (emoji, punctuation) gets a stable
    ``tag<hash>`` slug.
    """
    name = name or ""
    direct = slugify_ascii(name)
    if direct:
        return direct

    if _CJK_RE.search(name):
        stages = (_to_romaji, _to_pinyin) if _KANA_RE.search(name) else (_to_pinyin,)
        for romanize in stages:
            slug = slugify_ascii(romanize(name))
            if slug:
                return slug

    return f"tag{_string_hash36(name)}"[:MAX_SLUG_LENGTH]


def normalize_user_slug(value: str | None) -> str | None:
    """'' for blank input, None when not [a-z0-9]+, else the capped slug."""
    normalized = (value or "").strip().lower()
    if not normalized:
        return ""
    if not _USER_SLUG_RE.fullmatch(normalized):
        return None
    return normalized[:MAX_SLUG_LENGTH]


def list_tags(*, db) -> list[dict[str, str]]:
    """Every tag, ascending by name (binary collation, locale independent)."""
    try:
        rows = db.execute(
            "SELECT name, slug FROM tags ORDER BY name COLLATE BINARY ASC"
        ).fetchall()
    except sqlite3.Error as exc:
        app.logger.exception("Listing tags failed")
        raise UpstreamUnavailable() from exc
    return [{"name": r["name"], "slug": r["slug"]} for r in rows]


def create_tag(name: str, *, slug: str | None = None, db) -> dict[str, str]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Tag name is required")
    if len(name) > MAX_SLUG_LENGTH:
        raise ValidationError(f"Tag name is longer than {MAX_SLUG_LENGTH} characters")

    if slug and slug.strip():
        slug = normalize_user_slug(slug)
        if not slug:
            raise ValidationError("Slug may only contain a-z and 0-9")
    else:
        slug = generate_tag_slug(name)

    try:
        db.execute(
            "INSERT INTO tags (id, name, slug, created_at) VALUES (?,?,?,?)",
            (uuid.uuid4().hex, name, slug, utc_now().isoformat(timespec="seconds")),
        )
        db.commit()
    except sqlite3.IntegrityError as exc:
        db.rollback()
        raise ValidationError("Tag already exists") from exc
    return {"name": name, "slug": slug}


@app.route("/api/tags")
def api_tags():
    tags = list_tags(db=get_db())
    resp = jsonify(tags=tags)
    if app.debug:
        resp.headers["X-Tag-Count"] = str(len(tags))
        resp.headers["X-DB-Name"] = Path(app.config["DATABASE"]).name
    return resp


###############################################################################
# Posts: views + likes
###############################################################################
def create_post(
    title: str, content: str = "", *, status: str = "pending", db
) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if status not in POST_STATUSES:
        raise ValidationError(f"Unknown status: {status}")

    post_id = str(uuid.uuid4())
    slug = f"{slugify_heading(title) or 'post'}-{post_id[:8]}"
    db.execute(
        "INSERT INTO posts (id, title, slug, content, status, created_at) "
        "VALUES (?,?,?,?,?,?)",
        (post_id, title, slug, content, status, utc_now().isoformat(timespec="seconds")),
    )
    db.commit()
    return post_id


def increment_views(post_id: str | None, *, db) -> bool:
    """
    Add one view to *post_id*.

    The increment is evaluated by sqlite (``views = views + 1``) so
    concurrent calls never lose updates. An unknown id touches no row;
    that is not an error, the return value just says whether a row matched.
    """
    post_id = (post_id or "").strip()
    if not post_id:
        raise ValidationError("Missing postId")

    try:
        cur = db.execute("UPDATE posts SET views = views + 1 WHERE id = ?", (post_id,))
        db.commit()
    except sqlite3.Error as exc:
        app.logger.exception("View increment failed for post %s", post_id)
        raise UpstreamUnavailable() from exc

    if cur.rowcount == 0:
        app.logger.debug("View increment for unknown post %s ignored", post_id)
    return cur.rowcount > 0


def toggle_like(post_id: str | None, viewer: Viewer, *, db) -> tuple[bool, int]:
    """Like or un-like a published post; return ``(liked, total_likes)``."""
    post_id = (post_id or "").strip()
    if not post_id:
        raise ValidationError("Missing postId")

    try:
        post = db.execute(
            "SELECT id, status FROM posts WHERE id = ?", (post_id,)
        ).fetchone()
        if post is None or post["status"] != "published":
            raise NotFoundError("Not found")

        cur = db.execute(
            "INSERT OR IGNORE INTO post_likes (post_id, user_id, created_at) "
            "VALUES (?,?,?)",
            (post_id, viewer.id, utc_now().isoformat(timespec="seconds")),
        )
        liked = cur.rowcount == 1
        if not liked:
            db.execute(
                "DELETE FROM post_likes WHERE post_id = ? AND user_id = ?",
                (post_id, viewer.id),
            )
        db.commit()
        likes = db.execute(
            "SELECT COUNT(*) AS n FROM post_likes WHERE post_id = ?", (post_id,)
        ).fetchone()["n"]
    except sqlite3.Error as exc:
        app.logger.exception("Like toggle failed for post %s", post_id)
        raise UpstreamUnavailable() from exc
    return liked, likes


@app.route("/api/posts/view", methods=["POST"], defaults={"post_id": ""})
@app.route("/api/posts/<post_id>/view", methods=["POST"])
def post_view(post_id):
    increment_views(post_id, db=get_db())
    return {"ok": True}


@app.route("/api/posts/like", methods=["POST"], defaults={"post_id": ""})
@app.route("/api/posts/<post_id>/like", methods=["POST"])
def post_like(post_id):
    viewer = viewer_required()
    liked, likes = toggle_like(post_id, viewer, db=get_db())
    return {"liked": liked, "likes": likes}


###############################################################################
# Markdown rendering
###############################################################################
MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": False,
        "noclasses": True,
        "pygments_style": "nord",
    },
    "pymdownx.arithmatex": {"generic": True},
}
BASE_MD_EXTENSIONS = [
    "abbr",
    "def_list",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
# (option, extension) in the one order they are ever loaded
PIPELINE_STAGES = (
    ("gfm_tables", "tables"),
    ("footnotes", "footnotes"),
    ("autolink", "pymdownx.magiclink"),
    ("math", "pymdownx.arithmatex"),
)

# Allow-list for rendered HTML; raw HTML from authors goes through it too.
IFRAME_ATTRIBUTES = [
    "src",
    "width",
    "height",
    "allow",
    "allowfullscreen",
    "frameborder",
    "loading",
    "referrerpolicy",
]
MATHML_TAGS = {
    "math", "annotation", "annotation-xml", "semantics", "mrow", "mo", "mi",
    "mn", "msup", "msub", "mfrac", "msqrt", "mroot", "mtable", "mtr", "mtd",
}
SANITIZE_TAGS = (
    set(bleach.ALLOWED_TAGS)
    | {
        "p", "br", "hr", "pre", "div", "span", "img", "iframe",
        "h1", "h2", "h3", "h4", "h5", "h6",
        "table", "thead", "tbody", "tfoot", "tr", "th", "td",
        "del", "ins", "s", "sub", "sup", "kbd", "q",
        "dl", "dt", "dd", "details", "summary", "figure", "figcaption",
    }
    | MATHML_TAGS
)
SANITIZE_ATTRIBUTES = {
    "*": ["class", "id", "title"],
    "a": ["href", "rel", "target"],
    "img": ["src", "alt", "width", "height", "loading", "decoding"],
    "iframe": IFRAME_ATTRIBUTES,
    "div": ["style", "data-code-block"],
    "span": ["style"],
    "pre": ["style"],
    "code": ["style"],
    "th": ["style", "align"],
    "td": ["style", "align"],
    "ol": ["start"],
    "math": ["display", "xmlns"],
}
SANITIZE_PROTOCOLS = {"http", "https", "mailto"}
_CSS_SANITIZER = CSSSanitizer(
    allowed_css_properties=[
        "color",
        "background",
        "background-color",
        "font-weight",
        "font-style",
        "text-decoration",
        "text-align",
        "line-height",
    ]
)


@dataclass(frozen=True)
class RenderOptions:
    gfm_tables: bool = True
    autolink: bool = True
    footnotes: bool = True
    raw_html: bool = False
    math: bool = True

    @classmethod
    def from_mapping(cls, data) -> "RenderOptions":
        if not isinstance(data, Mapping):
            raise ValidationError("Invalid options")
        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key not in known:
                raise ValidationError(f"Unknown option: {key}")
            if not isinstance(value, bool):
                raise ValidationError(f"Option {key} must be true or false")
        return cls(**data)

    def extensions(self) -> list[str]:
        return [ext for flag, ext in PIPELINE_STAGES if getattr(self, flag)]


@dataclass(frozen=True)
class Heading:
    text: str
    slug: str
    level: int

    def as_dict(self) -> dict:
        return {"text": self.text, "slug": self.slug, "level": self.level}


@dataclass
class RenderedDocument:
    html: str = ""
    root: etree.Element = field(default_factory=lambda: etree.Element("div"))
    headings: list[Heading] = field(default_factory=list)

    def toc(self, min_level: int = 2, max_level: int = 4) -> list[Heading]:
        return [h for h in self.headings if min_level <= h.level <= max_level]


@dataclass(frozen=True)
class CodeBlock:
    code: str
    language: str = ""
    filename: str | None = None
    description: str | None = None
    info: str = ""


def slugify_heading(text: str) -> str:
    slug = (text or "").strip().lower()
    slug = re.sub(r"[^\w\s-]|_", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug).strip("-")


class Slugger:
    """
    Hands out unique heading slugs for *one* document: the first
    "Intro" is ``intro``, the next ones ``intro-1``, ``intro-2`` …
    """

    def __init__(self):
        self._counts: dict[str, int] = {}

    def slug(self, value: str) -> str:
        base = slugify_heading(value) or "section"
        n = self._counts.get(base, 0)
        self._counts[base] = n + 1
        return base if n == 0 else f"{base}-{n}"


def _parse_code_info(info: str) -> tuple[str, dict[str, str]]:
    info = info.strip()
    meta = dict(_CODE_META_RE.findall(info))
    first = info.split(maxsplit=1)[0] if info else ""
    language = "" if "=" in first else first.lstrip(".{").rstrip("}")
    return meta.get("language") or language, meta


class CodeBlockPreprocessor(Preprocessor):
    """Hand fenced code blocks to a caller-supplied renderer."""

    def __init__(self, md, render: Callable[[CodeBlock], str | None]):
        super().__init__(md)
        self.render = render

    def run(self, lines: list[str]) -> list[str]:
        out, block = [], None
        for ln in lines:
            if block is None:
                m = _FENCE_OPEN_RE.match(ln)
                if m and not (m.group("fence")[0] == "`" and "`" in m.group("info")):
                    block = {"open": m, "raw": [ln], "body": []}
                else:
                    out.append(ln)
                continue

            block["raw"].append(ln)
            fence = block["open"].group("fence")
            m = _FENCE_CLOSE_RE.match(ln)
            if m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence):
                out.extend(self._emit(block))
                block = None
            else:
                block["body"].append(ln)

        if block is not None:  # unclosed fence runs to the end
            out.extend(self._emit(block))
        return out

    def _emit(self, block) -> list[str]:
        opener = block["open"]
        indent = len(opener.group("indent"))
        body = [
            ln[min(indent, len(ln) - len(ln.lstrip(" "))) :] for ln in block["body"]
        ]
        language, meta = _parse_code_info(opener.group("info"))
        html = self.render(
            CodeBlock(
                code="\n".join(body),
                language=language,
                filename=meta.get("filename"),
                description=meta.get("description"),
                info=opener.group("info").strip(),
            )
        )
        if html is None:  # renderer declined: keep the pipeline default
            return block["raw"]
        placeholder = self.md.htmlStash.store(html)
        if indent:  # continuation line of the enclosing list item
            return [opener.group("indent") + placeholder]
        return ["", placeholder, ""]


def _heading_text(el: etree.Element, stash) -> str:
    """Visible text of a heading, with stashed HTML and entities resolved."""

    def _stashed(m: re.Match) -> str:
        idx = int(m.group(1))
        if idx >= len(stash.rawHtmlBlocks):
            return ""
        raw = stash.rawHtmlBlocks[idx]
        if isinstance(raw, str):
            return unescape(_TAG_RE.sub("", raw))
        return "".join(raw.itertext())

    text = _PLACEHOLDER_RE.sub(_stashed, "".join(el.itertext()))
    text = _ESCAPED_CHAR_RE.sub(lambda m: chr(int(m.group(1))), text)
    return re.sub(r"\s+", " ", text).strip()


class HeadingSlugTreeprocessor(Treeprocessor):
    def __init__(self, md, slugger: Slugger, doc: RenderedDocument):
        super().__init__(md)
        self.slugger = slugger
        self.doc = doc

    def run(self, root):
        self.doc.root = root
        for el in root.iter():
            if el.tag not in HEADING_TAGS:
                continue
            text = _heading_text(el, self.md.htmlStash)
            if not text:
                continue
            slug = self.slugger.slug(text)
            el.set("id", slug)
            self.doc.headings.append(Heading(text=text, slug=slug, level=int(el.tag[1])))


class NodeRendererTreeprocessor(Treeprocessor):
    """
    Offer every ``img`` / ``a`` element to a caller-supplied renderer.

    The renderer may mutate the element and return ``None``, return a
    replacement element, or return an HTML string.
    """

    KINDS = {"img": "image", "a": "link"}

    def __init__(self, md, renderers: Mapping[str, Callable]):
        super().__init__(md)
        self.renderers = renderers

    def run(self, root):
        parents = {child: parent for parent in root.iter() for child in parent}
        for el in list(root.iter()):
            render = self.renderers.get(self.KINDS.get(el.tag, ""))
            if render is None:
                continue
            result = render(el)
            parent = parents.get(el)
            if result is None or result is el or parent is None:
                continue
            idx = list(parent).index(el)
            if isinstance(result, str):
                text = self.md.htmlStash.store(result) + (el.tail or "")
                if idx == 0:
                    parent.text = (parent.text or "") + text
                else:
                    prev = parent[idx - 1]
                    prev.tail = (prev.tail or "") + text
                parent.remove(el)
            else:
                result.tail = el.tail
                parent.remove(el)
                parent.insert(idx, result)


class FolioExtension(Extension):
    def __init__(self, *, slugger, doc, renderers, raw_html, **kwargs):
        self.slugger = slugger
        self.doc = doc
        self.renderers = renderers
        self.raw_html = raw_html
        super().__init__(**kwargs)

    def extendMarkdown(self, md):
        if "code" in self.renderers:
            md.preprocessors.register(
                CodeBlockPreprocessor(md, self.renderers["code"]), "folio_code_block", 27
            )
        if not self.raw_html:
            md.preprocessors.deregister("html_block", strict=False)
            md.inlinePatterns.deregister("html", strict=False)
        md.treeprocessors.register(
            NodeRendererTreeprocessor(md, self.renderers), "folio_nodes", 16
        )
        md.treeprocessors.register(
            HeadingSlugTreeprocessor(md, self.slugger, self.doc), "folio_headings", 17
        )


def _undelimit(tex: str) -> str:
    tex = tex.strip()
    for left, right in [("$$", "$$"), (r"\[", r"\]"), (r"\(", r"\)"), ("$", "$")]:
        if tex.startswith(left) and tex.endswith(right):
            return tex[len(left) : -len(right)].strip()
    return tex


def _math_to_mathml(html: str) -> str:
    def _convert(m: re.Match) -> str:
        try:
            mathml = _l2m.convert(
                unescape(_undelimit(m.group(2))),
                display="inline" if m.group("tag") == "span" else "block",
            )
        except Exception:
            return f'<pre class="tex">{m.group(2)}</pre>'
        if m.group("tag") == "div":
            return f'<div class="math-scroll" tabindex="0">{mathml}</div>'
        return mathml

    return ARITH_RE.sub(_convert, html)


def sanitize_html(html: str) -> str:
    """Drop every tag, attribute and URL scheme outside the allow-list."""
    return bleach.clean(
        html,
        tags=SANITIZE_TAGS,
        attributes=SANITIZE_ATTRIBUTES,
        protocols=SANITIZE_PROTOCOLS,
        css_sanitizer=_CSS_SANITIZER,
        strip=True,
        strip_comments=True,
    )


def render_markdown(
    text: str | None,
    *,
    slugger: Slugger | None = None,
    options: RenderOptions | None = None,
    renderers: Mapping[str, Callable] | None = None,
) -> RenderedDocument:
    """
    Render *text* into a :class:`RenderedDocument`.

    A fresh ``markdown.Markdown`` instance (and, unless the caller passes
    one, a fresh :class:`Slugger`) is built for every call, so nothing
    carries over from one document to the next. The HTML is sanitized
    before MathML is spliced in, so the converter output is never filtered.
    """
    options = options or RenderOptions()
    doc = RenderedDocument()
    md = markdown.Markdown(
        extensions=[
            *BASE_MD_EXTENSIONS,
            *options.extensions(),
            FolioExtension(
                slugger=slugger if slugger is not None else Slugger(),
                doc=doc,
                renderers=dict(renderers or {}),
                raw_html=options.raw_html,
            ),
        ],
        extension_configs=MD_EXTENSION_CONFIGS,
    )
    html = sanitize_html(md.convert(text if isinstance(text, str) else str(text or "")))
    doc.html = _math_to_mathml(html) if options.math else html
    return doc


_CODE_FORMATTER = HtmlFormatter(nowrap=True, noclasses=True, style="nord")


def code_block_shell(block: CodeBlock) -> str:
    """Code block with a filename / language / description header bar."""
    language = block.language or "text"
    try:
        body = highlight(block.code, get_lexer_by_name(language), _CODE_FORMATTER)
    except ClassNotFound:
        body = escape(block.code)

    header = []
    if block.filename:
        header.append(f'<span class="code-block-filename">{escape(block.filename)}</span>')
    header.append(f'<span class="code-block-language">{escape(language)}</span>')
    if block.description:
        header.append(
            f'<span class="code-block-description">{escape(block.description)}</span>'
        )
    return (
        '<div class="code-block" data-code-block>'
        f'<div class="code-block-header">{"".join(header)}</div>'
        '<pre class="code-block-pre">'
        f'<code class="language-{escape(language)}">{body}</code>'
        "</pre></div>"
    )


def lazy_image(el: etree.Element) -> None:
    el.set("loading", "lazy")
    el.set("decoding", "async")
    el.set("alt", el.get("alt") or "")


def external_link(el: etree.Element) -> None:
    if (el.get("href") or "").lower().startswith(("http://", "https://")):
        el.set("rel", "noopener noreferrer")
        el.set("target", "_blank")


PREVIEW_RENDERERS = {
    "code": code_block_shell,
    "image": lazy_image,
    "link": external_link,
}


@app.route("/api/markdown/preview", methods=["POST"])
def markdown_preview():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON")
    content = payload.get("content", "")
    if not isinstance(content, str):
        raise ValidationError("Invalid content")

    if len(content) > PREVIEW_MAX_CHARS:
        raise PayloadTooLarge(f"Content too large (max {PREVIEW_MAX_CHARS} characters)")

    options = RenderOptions.from_mapping(payload.get("options") or {})
    doc = render_markdown(content, options=options, renderers=PREVIEW_RENDERERS)
    return {
        "html": doc.html,
        "headings": [h.as_dict() for h in doc.headings],
        "toc": [h.as_dict() for h in doc.toc()],
    }


###############################################################################
# Uploads (R2)
###############################################################################
def upload_key(viewer: Viewer, filename: str) -> str:
    stamp = int(utc_now().timestamp() * 1000)
    name = secure_filename(filename) or "upload.bin"
    return f"posts/{secure_filename(viewer.id) or 'anon'}/{stamp}-{name}"


@app.route("/api/uploads/r2", methods=["POST"])
def upload_r2():
    viewer = viewer_required()

    cfg: StorageConfig = app.config["STORAGE"]
    client = storage_client(cfg)
    if client is None:
        raise UpstreamUnavailable("Uploads are not configured")

    max_bytes = app.config["UPLOAD_MAX_BYTES"]
    clen = request.content_length
    if clen and clen > max_bytes + 64 * 1024:  # multipart framing slack
        raise PayloadTooLarge()

    f = request.files.get("file")
    if f is None or not f.filename:
        raise ValidationError("File missing")
    data = f.read()
    if len(data) > max_bytes:
        raise PayloadTooLarge()

    key = upload_key(viewer, f.filename)
    try:
        client.put_object(
            Bucket=cfg.bucket,
            Key=key,
            Body=data,
            ContentType=f.mimetype or "application/octet-stream",
            CacheControl=UPLOAD_CACHE_CONTROL,
        )
    except (BotoCoreError, ClientError) as exc:
        app.logger.exception("R2 upload failed")
        raise UpstreamUnavailable("Upload failed") from exc

    return {"url": object_url(cfg, key), "key": key}, 201


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (safe to run repeatedly)."""
    init_db()
    click.secho("✅  Database ready.", fg="green")


@app.cli.command("add-tag")
@click.argument("name")
@click.option("--slug", default=None, help="Explicit slug (a-z, 0-9).")
def cli_add_tag(name: str, slug: str | None):
    """Create a tag; the slug is derived from the name unless given."""
    try:
        tag = create_tag(name, slug=slug, db=get_db())
    except ValidationError as exc:
        raise click.ClickException(exc.message) from exc
    app.logger.info("Tag %s created as %s", tag["name"], tag["slug"])
    click.echo(f"{tag['name']} → {tag['slug']}")


@app.cli.command("add-post")
@click.option("--title", prompt=True)
@click.option(
    "--file",
    "path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Markdown file with the post body.",
)
@click.option("--publish", is_flag=True, help="Publish right away.")
def cli_add_post(title: str, path: Path | None, publish: bool):
    """Create a post (pending unless --publish)."""
    content = path.read_text() if path else ""
    try:
        post_id = create_post(
            title,
            content,
            status="published" if publish else "pending",
            db=get_db(),
        )
    except ValidationError as exc:
        raise click.ClickException(exc.message) from exc
    app.logger.info("Post %s created", post_id)
    click.echo(post_id)


@app.cli.command("tags")
def cli_tags():
    """List tags as ``slug<TAB>name``."""
    for tag in list_tags(db=get_db()):
        click.echo(f"{tag['slug']}\t{tag['name']}")
