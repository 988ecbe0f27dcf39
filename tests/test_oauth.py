import json
import time
from urllib.parse import parse_qs, urlparse

import pytest
import requests

import oauth
from conftest import FakeResponse, FakeSession
from credentials import FileCredentialStore
from errors import AuthExchangeError, NotAuthenticatedError
from oauth import (
    AUTHENTICATED,
    AWAITING_CODE,
    GOOGLE_OAUTH_TOKEN_URL,
    UNAUTHENTICATED,
    AuthorizationFlow,
    ServiceAccountFlow,
)


def _flow(token_file, *responses, verify_state=True):
    store = FileCredentialStore(token_file)
    session = FakeSession(*responses)
    flow = AuthorizationFlow(
        store,
        "cid",
        "secret",
        "http://localhost:3000/oauth/callback",
        verify_state=verify_state,
        session=session,
    )
    return flow, store, session


def _state_of(url):
    return parse_qs(urlparse(url).query)["state"][0]


def test_consent_url_requests_offline_drive_access(token_file):
    flow, _, _ = _flow(token_file)
    url = flow.begin_authorization()
    parsed = urlparse(url)
    q = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert q["access_type"] == ["offline"]
    assert q["prompt"] == ["consent"]
    assert q["scope"] == ["https://www.googleapis.com/auth/drive"]
    assert q["response_type"] == ["code"]
    assert q["client_id"] == ["cid"]
    assert q["redirect_uri"] == ["http://localhost:3000/oauth/callback"]


def test_state_transitions(token_file):
    flow, _, session = _flow(
        token_file,
        FakeResponse(200, {"access_token": "a1", "refresh_token": "r1", "expires_in": 3600}),
    )
    assert flow.state == UNAUTHENTICATED
    url = flow.begin_authorization()
    assert flow.state == AWAITING_CODE

    record = flow.complete_authorization("the-code", _state_of(url))

    assert flow.state == AUTHENTICATED
    assert record["access_token"] == "a1"
    assert json.loads(token_file.read_text())["refresh_token"] == "r1"
    called_url, kwargs = session.calls[0]
    assert called_url == GOOGLE_OAUTH_TOKEN_URL
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["data"]["code"] == "the-code"


def test_invalid_code_keeps_previous_credential(token_file, stored_tokens):
    flow, store, _ = _flow(token_file, FakeResponse(400, {"error": "invalid_grant"}))
    store.save(stored_tokens)
    url = flow.begin_authorization()

    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("bad-code", _state_of(url))

    assert json.loads(token_file.read_text()) == stored_tokens
    assert store.current() == stored_tokens


def test_failed_exchange_stays_awaiting_code(token_file):
    flow, store, _ = _flow(token_file, FakeResponse(400, {"error": "invalid_grant"}))
    url = flow.begin_authorization()
    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("bad-code", _state_of(url))
    assert flow.state == AWAITING_CODE
    assert not token_file.exists()


def test_transport_error_is_exchange_error(token_file):
    flow, _, _ = _flow(token_file, requests.ConnectionError("boom"), verify_state=False)
    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("code")


def test_response_without_access_token_is_rejected(token_file):
    flow, _, _ = _flow(token_file, FakeResponse(200, {"token_type": "Bearer"}), verify_state=False)
    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("code")
    assert not token_file.exists()


def test_unknown_state_is_rejected_without_calling_provider(token_file):
    flow, _, session = _flow(token_file)
    flow.begin_authorization()
    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("code", "forged")
    assert session.calls == []


def test_status_offers_consent_url_until_authenticated(token_file, stored_tokens):
    flow, store, _ = _flow(token_file)
    status = flow.status()
    assert status.authenticated is False
    assert status.auth_url.startswith("https://accounts.google.com/")
    store.save(stored_tokens)
    assert flow.status() == (True, None)


def test_access_token_without_credential(token_file):
    flow, _, session = _flow(token_file)
    with pytest.raises(NotAuthenticatedError):
        flow.access_token()
    assert session.calls == []


def test_expired_access_token_is_refreshed(token_file, stored_tokens):
    flow, store, session = _flow(token_file, FakeResponse(200, {"access_token": "fresh", "expires_in": 3600}))
    store.save({**stored_tokens, "expires_at": int(time.time()) - 5})

    assert flow.access_token() == "fresh"

    saved = json.loads(token_file.read_text())
    assert saved["access_token"] == "fresh"
    assert saved["refresh_token"] == "tok-refresh"
    assert session.calls[0][1]["data"]["grant_type"] == "refresh_token"
    assert flow.state == AUTHENTICATED


def test_failed_refresh_is_not_authenticated(token_file, stored_tokens):
    flow, store, _ = _flow(token_file, FakeResponse(400, {"error": "invalid_grant"}))
    store.save({**stored_tokens, "expires_at": 0})
    with pytest.raises(NotAuthenticatedError):
        flow.access_token()
    # no automatic transition back
    assert flow.state == AUTHENTICATED


def test_valid_access_token_is_used_as_is(token_file, stored_tokens):
    flow, store, session = _flow(token_file)
    store.save(stored_tokens)
    assert flow.access_token() == "tok"
    assert session.calls == []


def test_pending_states_are_capped(token_file):
    flow, _, _ = _flow(token_file)
    urls = [flow.begin_authorization() for _ in range(oauth.MAX_PENDING_STATES + 40)]
    assert len(flow._pending) == oauth.MAX_PENDING_STATES
    # newest still valid, oldest dropped
    assert _state_of(urls[-1]) in flow._pending
    assert _state_of(urls[0]) not in flow._pending


def test_expired_states_are_pruned_on_begin(token_file, monkeypatch):
    flow, _, _ = _flow(token_file)
    old = flow.begin_authorization()
    real_time = time.time
    monkeypatch.setattr(oauth.time, "time", lambda: real_time() + oauth.STATE_TTL + 1)
    flow.begin_authorization()
    assert _state_of(old) not in flow._pending
    assert len(flow._pending) == 1


# ── Service account ──────────────────────────────────────────────────────────
class FakeSACredentials:
    def __init__(self, fail=False):
        self.fail = fail
        self.token = None
        self.expiry = None
        self.refreshes = 0

    @property
    def valid(self):
        return self.token is not None

    def refresh(self, request):
        if self.fail:
            raise RuntimeError("invalid_grant")
        self.refreshes += 1
        self.token = f"sa-{self.refreshes}"


@pytest.fixture
def sa_creds(monkeypatch):
    creds = FakeSACredentials()
    loaded = {}

    def from_file(path, scopes=None):
        loaded["path"] = path
        loaded["scopes"] = scopes
        return creds

    monkeypatch.setattr(oauth.service_account.Credentials, "from_service_account_file", from_file)
    creds.loaded = loaded
    return creds


def test_service_account_access_token(sa_creds):
    flow = ServiceAccountFlow("/keys/sa.json")
    assert flow.state == AUTHENTICATED
    assert flow.status() == (True, None)
    assert flow.access_token() == "sa-1"
    # valid token is reused
    assert flow.access_token() == "sa-1"
    assert sa_creds.loaded == {"path": "/keys/sa.json", "scopes": ["https://www.googleapis.com/auth/drive"]}


def test_service_account_forced_refresh(sa_creds):
    flow = ServiceAccountFlow("/keys/sa.json")
    flow.access_token()
    assert flow.refresh() == {"access_token": "sa-2"}


def test_service_account_refresh_failure(sa_creds):
    sa_creds.fail = True
    with pytest.raises(NotAuthenticatedError):
        ServiceAccountFlow("/keys/sa.json").access_token()


def test_service_account_missing_key_file(tmp_path):
    with pytest.raises(NotAuthenticatedError):
        ServiceAccountFlow(str(tmp_path / "missing.json")).access_token()
    with pytest.raises(NotAuthenticatedError):
        ServiceAccountFlow(None).access_token()


def test_service_account_has_no_code_exchange():
    flow = ServiceAccountFlow("/keys/sa.json")
    assert flow.begin_authorization() is None
    with pytest.raises(AuthExchangeError):
        flow.complete_authorization("code")
