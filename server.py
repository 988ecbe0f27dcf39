#!/usr/bin/env python3
import logging
import os
import time

import redis
from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request
from werkzeug.exceptions import HTTPException

from credentials import FileCredentialStore, RedisCredentialStore
from drive import DrivePublisher
from errors import AuthExchangeError, Html2DriveError, NotAuthenticatedError
from logs import debug_event, token_preview
from oauth import AUTHENTICATED, AuthorizationFlow, ServiceAccountFlow
from renderer import RenderPool, Renderer

load_dotenv()

# ── Config ────────────────────────────────────────────────────────────────────
PORT = int(os.getenv("PORT", "3000"))
TESTING = os.getenv("UNIT_TESTING", "false").lower() in ("1", "true", "yes")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_CALLBACK_URL = os.getenv("OAUTH_CALLBACK_URL", f"http://localhost:{PORT}/oauth/callback")
OAUTH_VERIFY_STATE = os.getenv("OAUTH_VERIFY_STATE", "true").lower() in ("1", "true", "yes")

# Token storage: a JSON file unless a Redis host is configured
TOKEN_FILE = os.getenv("TOKEN_FILE", "tokens.json")
REDIS_HOST = os.getenv("REDIS_HOST")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_USERNAME = os.getenv("REDIS_USERNAME") or None
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
REDIS_SSL = os.getenv("REDIS_SSL", "false").lower() in ("1", "true", "yes")
REDIS_TOKEN_KEY = os.getenv("REDIS_TOKEN_KEY", "html2drive:tokens")

# Optional Service Account instead of the consent flow
GDRIVE_USE_SERVICE_ACCOUNT = os.getenv("GDRIVE_USE_SERVICE_ACCOUNT", "false").lower() in ("1", "true", "yes")
SA_KEY_FILE = os.getenv("SA_KEY_FILE")

# Rendering
RENDER_POOL_SIZE = int(os.getenv("RENDER_POOL_SIZE", "2"))
RENDER_QUEUE_TIMEOUT = float(os.getenv("RENDER_QUEUE_TIMEOUT", "60"))
RENDER_LOAD_TIMEOUT_MS = int(os.getenv("RENDER_LOAD_TIMEOUT_MS", "30000"))
RENDER_SETTLE_MS = int(os.getenv("RENDER_SETTLE_MS", "3000"))
MAX_CONTENT_LENGTH_MB = int(os.getenv("MAX_CONTENT_LENGTH_MB", "10"))

AUTH_PATH = "/auth"

if not GDRIVE_USE_SERVICE_ACCOUNT and (not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET):
    if not TESTING:
        raise SystemExit("Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET")
    GOOGLE_CLIENT_ID = GOOGLE_CLIENT_ID or "test-client"
    GOOGLE_CLIENT_SECRET = GOOGLE_CLIENT_SECRET or "test-secret"

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("html2drive")


# ── Components ────────────────────────────────────────────────────────────────
def build_store():
    if not REDIS_HOST or TESTING:
        logger.info("credential store: file=%s", TOKEN_FILE)
        return FileCredentialStore(TOKEN_FILE)
    client = redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB,
        username=REDIS_USERNAME,
        password=REDIS_PASSWORD,
        ssl=REDIS_SSL,
        decode_responses=False,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    # Fail fast
    try:
        client.ping()
    except redis.RedisError as e:
        raise SystemExit(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT} db={REDIS_DB} ssl={REDIS_SSL}: {e}")
    logger.info("credential store: redis=%s:%s key=%s", REDIS_HOST, REDIS_PORT, REDIS_TOKEN_KEY)
    return RedisCredentialStore(client, key=REDIS_TOKEN_KEY)


def build_auth(store):
    if GDRIVE_USE_SERVICE_ACCOUNT:
        return ServiceAccountFlow(SA_KEY_FILE)
    return AuthorizationFlow(
        store,
        GOOGLE_CLIENT_ID,
        GOOGLE_CLIENT_SECRET,
        OAUTH_CALLBACK_URL,
        verify_state=OAUTH_VERIFY_STATE,
    )


store = build_store()
auth = build_auth(store)
renderer = RenderPool(
    Renderer(load_timeout_ms=RENDER_LOAD_TIMEOUT_MS, settle_ms=RENDER_SETTLE_MS),
    size=RENDER_POOL_SIZE,
    acquire_timeout=RENDER_QUEUE_TIMEOUT,
)
publisher = DrivePublisher(auth)

if store.current():
    logger.info("Loaded existing tokens")

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH_MB * 1024 * 1024


def pdf_filename(name):
    if name is None:
        name = ""
    name = os.path.basename(str(name).strip())
    if not name:
        return f"document-{int(time.time() * 1000)}.pdf"
    if not name.lower().endswith(".pdf"):
        name = f"{name}.pdf"
    return name


# ── Errors ────────────────────────────────────────────────────────────────────
@app.errorhandler(NotAuthenticatedError)
def handle_not_authenticated(e):
    logger.warning("not_authenticated: %s", e)
    return jsonify({"error": str(e) or "Not authenticated", "authUrl": AUTH_PATH}), 401


@app.errorhandler(Html2DriveError)
def handle_pipeline_error(e):
    logger.error("%s: %s", type(e).__name__, e)
    return jsonify({"error": str(e)}), e.status_code


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return jsonify({"error": e.description or e.name}), e.code
    logger.exception("unhandled error: %s", type(e).__name__)
    return jsonify({"error": str(e) or type(e).__name__}), 500


# ── Auth & status ─────────────────────────────────────────────────────────────
@app.get("/auth")
def auth_start():
    url = auth.begin_authorization()
    if not url:
        return jsonify({"authenticated": True}), 200
    return redirect(url, 302)


@app.get("/oauth/callback")
def oauth_callback():
    code = request.args.get("code")
    if not code:
        return "Missing code", 400
    st = request.args.get("state")
    debug_event(logger, "oauth_callback_in", code=token_preview(code), state=token_preview(st))
    try:
        auth.complete_authorization(code, st)
    except AuthExchangeError:
        logger.exception("OAuth error")
        return "Authentication failed", 500
    return "<h1>Authentication successful!</h1><p>You can now upload PDFs.</p>"


@app.get("/auth-status")
def auth_status():
    if auth.state == AUTHENTICATED:
        return jsonify({"authenticated": True})
    return jsonify({"authenticated": False, "authUrl": AUTH_PATH})


@app.get("/healthz")
def healthz():
    return jsonify({"ok": True})


# ── HTML → PDF → Drive ────────────────────────────────────────────────────────
@app.post("/upload-pdf")
def upload_pdf():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    html = body.get("html")
    debug_event(logger, "upload_pdf_body", body_keys=sorted(body.keys()), html_len=len(html or "") if isinstance(html, str) else None)
    if not isinstance(html, str) or not html.strip():
        return jsonify({"error": "HTML content required"}), 400

    if auth.state != AUTHENTICATED:
        return jsonify({"error": "Not authenticated", "authUrl": AUTH_PATH}), 401

    file_name = pdf_filename(body.get("name"))
    folder_id = body.get("folderId") or None
    logger.info("upload_pdf in: name=%s folder=%s html_len=%s", file_name, folder_id, len(html))

    result = renderer.render(html)
    published = publisher.publish(result.pdf, file_name, folder_id)
    logger.info("upload_pdf ok: name=%s id=%s height_mm=%.1f", file_name, published["fileId"], result.height_mm)
    return jsonify({"success": True, "fileId": published["fileId"], "viewLink": published["viewLink"]})


if __name__ == "__main__":
    logger.info("PDF API running on http://localhost:%s", PORT)
    logger.info("Visit http://localhost:%s%s to authenticate", PORT, AUTH_PATH)
    app.run(host="0.0.0.0", port=PORT, threaded=True)
