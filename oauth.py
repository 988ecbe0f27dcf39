"""Client side of the Google OAuth2 authorization-code flow.

The flow builds the consent URL, trades the returned code for a credential,
and hands out valid access tokens (refreshing them when they expire).
Persistence is delegated to a ``CredentialStore``.
"""
import logging
import secrets
import threading
import time
from collections import namedtuple
from urllib.parse import urlencode

import requests
from google.auth.transport.requests import Request as GARequest
from google.oauth2 import service_account

from credentials import DEFAULT_SCOPE, normalize_tokens
from errors import AuthExchangeError, NotAuthenticatedError
from logs import debug_event, token_preview

logger = logging.getLogger("html2drive.oauth")

GOOGLE_OAUTH_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

UNAUTHENTICATED = "UNAUTHENTICATED"
AWAITING_CODE = "AWAITING_CODE"
AUTHENTICATED = "AUTHENTICATED"

STATE_TTL = 600
MAX_PENDING_STATES = 64

AuthStatus = namedtuple("AuthStatus", ["authenticated", "auth_url"])


class AuthorizationFlow:
    def __init__(
        self,
        store,
        client_id,
        client_secret,
        redirect_uri,
        scope=DEFAULT_SCOPE,
        verify_state=True,
        session=None,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.verify_state = verify_state
        self.session = session or requests.Session()
        self._pending = {}
        self._pending_lock = threading.Lock()

    # ── State ────────────────────────────────────────────────────────────────
    @property
    def state(self):
        if self.store.current():
            return AUTHENTICATED
        if self._live_states():
            return AWAITING_CODE
        return UNAUTHENTICATED

    def _prune(self, now):
        for st in [s for s, exp in self._pending.items() if exp <= now]:
            del self._pending[st]

    def _live_states(self):
        with self._pending_lock:
            self._prune(time.time())
            return set(self._pending)

    def _known_state(self, st):
        return st is not None and st in self._live_states()

    def _forget_state(self, st):
        with self._pending_lock:
            self._pending.pop(st, None)

    # ── Flow ─────────────────────────────────────────────────────────────────
    def begin_authorization(self):
        st = secrets.token_urlsafe(24)
        now = time.time()
        with self._pending_lock:
            self._prune(now)
            # Oldest first; dicts keep insertion order.
            while len(self._pending) >= MAX_PENDING_STATES:
                del self._pending[next(iter(self._pending))]
            self._pending[st] = now + STATE_TTL
        q = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": st,
        }
        url = f"{GOOGLE_OAUTH_AUTH_URL}?{urlencode(q)}"
        debug_event(logger, "oauth_start", state=token_preview(st), url=url)
        return url

    def complete_authorization(self, code, state=None):
        if self.verify_state and not self._known_state(state):
            logger.warning("oauth_callback rejected: unknown state=%s", token_preview(state))
            raise AuthExchangeError("Invalid or expired state")
        tok = self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            AuthExchangeError,
        )
        with self.store.lock:
            record = normalize_tokens(tok)
            self.store.save(record)
        self._forget_state(state)
        logger.info("oauth_callback ok: refresh=%s", bool(record["refresh_token"]))
        return record

    def status(self):
        if self.store.current():
            return AuthStatus(True, None)
        return AuthStatus(False, self.begin_authorization())

    # ── Access tokens ────────────────────────────────────────────────────────
    def access_token(self):
        tok = self.store.current()
        if not tok:
            debug_event(logger, "access_token_missing")
            raise NotAuthenticatedError("Not authenticated")
        if int(time.time()) >= int(tok.get("expires_at", 0)):
            tok = self.refresh()
            debug_event(logger, "access_token_refreshed", access=token_preview(tok["access_token"]))
        return tok["access_token"]

    def refresh(self):
        with self.store.lock:
            tok = self.store.current()
            if not tok or not tok.get("refresh_token"):
                debug_event(logger, "refresh_skip", reason="missing_token")
                raise NotAuthenticatedError("Access token expired and no refresh token is stored")
            tr = self._token_request(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": tok["refresh_token"],
                },
                NotAuthenticatedError,
            )
            record = normalize_tokens(tr, previous=tok)
            self.store.save(record)
        return record

    def _token_request(self, data, error_cls):
        try:
            resp = self.session.post(GOOGLE_OAUTH_TOKEN_URL, data=data, timeout=20)
        except requests.RequestException as e:
            logger.exception("token_request failed: grant=%s", data["grant_type"])
            raise error_cls(f"Token endpoint unreachable: {e}") from e
        debug_event(
            logger,
            "token_response",
            grant=data["grant_type"],
            status=resp.status_code,
            ok=resp.status_code == 200,
        )
        if resp.status_code != 200:
            logger.warning(
                "token_request rejected: grant=%s status=%s body=%s",
                data["grant_type"],
                resp.status_code,
                resp.text[:300],
            )
            raise error_cls(f"Token exchange failed ({resp.status_code})")
        try:
            tok = resp.json()
        except ValueError as e:
            raise error_cls("Token endpoint returned invalid JSON") from e
        if not isinstance(tok, dict) or not tok.get("access_token"):
            raise error_cls("Token endpoint returned no access token")
        return tok


class ServiceAccountFlow:
    """Drop-in for ``AuthorizationFlow`` backed by a service-account key.

    There is no consent step; the service is always authenticated.
    """

    state = AUTHENTICATED

    def __init__(self, key_file, scope=DEFAULT_SCOPE):
        self.key_file = key_file
        self.scope = scope
        self._creds = None
        self._lock = threading.Lock()

    def _credentials(self):
        if self._creds is None:
            if not self.key_file:
                raise NotAuthenticatedError("SA_KEY_FILE not set")
            debug_event(logger, "sa_token_request", key_file=self.key_file)
            try:
                self._creds = service_account.Credentials.from_service_account_file(
                    self.key_file,
                    scopes=[self.scope],
                )
            except Exception as e:
                logger.exception("service_account_key_failed: key_file=%s", self.key_file)
                raise NotAuthenticatedError(f"sa_key_failed: {e}") from e
        return self._creds

    def begin_authorization(self):
        return None

    def complete_authorization(self, code, state=None):
        raise AuthExchangeError("Service-account mode does not use authorization codes")

    def status(self):
        return AuthStatus(True, None)

    def access_token(self):
        with self._lock:
            creds = self._credentials()
            if not creds.valid:
                self._refresh(creds)
            return creds.token

    def refresh(self):
        with self._lock:
            creds = self._credentials()
            self._refresh(creds)
            return {"access_token": creds.token}

    def _refresh(self, creds):
        try:
            creds.refresh(GARequest())
        except Exception as e:
            logger.exception("service_account_token_failed")
            raise NotAuthenticatedError(f"sa_auth_failed: {e}") from e
        debug_event(logger, "sa_token_acquired", expires_at=str(creds.expiry))
