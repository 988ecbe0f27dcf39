import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("UNIT_TESTING", "1")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else repr(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; replies from a queue and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        data = kwargs.get("data")
        if data is not None and not isinstance(data, (dict, bytes, str)):
            kwargs["data"] = b"".join(data)
        self.calls.append((url, kwargs))
        reply = self.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeRedis:
    def __init__(self):
        self._store = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value):
        self._store[key] = value


@pytest.fixture
def token_file(tmp_path):
    return tmp_path / "tokens.json"


@pytest.fixture
def stored_tokens():
    return {
        "access_token": "tok",
        "refresh_token": "tok-refresh",
        "expires_at": 4102444800,
        "scope": "https://www.googleapis.com/auth/drive",
        "token_type": "Bearer",
    }
