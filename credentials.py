"""Durable storage for the single delegated-access credential.

One credential is active per process. Stores hold it in memory and mirror it
to a backend (a JSON file by default, or one Redis key). Saving always
replaces the stored record as a whole.
"""
import json
import logging
import os
import pathlib
import tempfile
import threading
import time

import redis

from logs import debug_event, token_preview

logger = logging.getLogger("html2drive.credentials")

DEFAULT_SCOPE = "https://www.googleapis.com/auth/drive"


def normalize_tokens(tok, previous=None):
    """Build the stored record from a token-endpoint response.

    ``expires_in`` is turned into an absolute ``expires_at`` with a 60s
    margin. Refresh responses usually omit the refresh token, in which case
    the one from ``previous`` is carried over.
    """
    if "expires_at" in tok:
        exp = int(tok["expires_at"])
    else:
        exp = int(time.time()) + int(tok.get("expires_in", 3600)) - 60
    refresh = tok.get("refresh_token")
    if not refresh and previous:
        refresh = previous.get("refresh_token")
    return {
        "access_token": tok["access_token"],
        "refresh_token": refresh,
        "expires_at": exp,
        "scope": tok.get("scope", DEFAULT_SCOPE),
        "token_type": tok.get("token_type", "Bearer"),
    }


def _parse(raw, source):
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error("Failed to load tokens from %s: %s", source, e)
        return None
    if not isinstance(data, dict) or not data.get("access_token"):
        logger.error("Failed to load tokens from %s: not a token record", source)
        return None
    if not isinstance(data["access_token"], str):
        logger.error("Failed to load tokens from %s: access_token is not a string", source)
        return None
    if not isinstance(data.get("refresh_token"), (str, type(None))):
        logger.error("Failed to load tokens from %s: refresh_token is not a string", source)
        return None
    if "expires_at" in data:
        try:
            data["expires_at"] = int(data["expires_at"])
        except (TypeError, ValueError):
            logger.error("Failed to load tokens from %s: bad expires_at=%r", source, data["expires_at"])
            return None
    return data


class CredentialStore:
    """In-memory credential mirrored to a backend.

    Subclasses implement ``_read`` (raw text or None) and ``_write``. The
    lock serializes read-then-write sequences; callers sharing a lock with
    other state may pass their own.
    """

    def __init__(self, lock=None):
        self.lock = lock or threading.RLock()
        self.version = 0
        self._current = None

    def _read(self):
        raise NotImplementedError

    def _write(self, text):
        raise NotImplementedError

    def load(self):
        raw = self._read()
        if raw is None:
            debug_event(logger, "load_tokens_miss", source=self.describe())
            return None
        tok = _parse(raw, self.describe())
        if tok is not None:
            debug_event(
                logger,
                "load_tokens_hit",
                source=self.describe(),
                access=token_preview(tok.get("access_token")),
                refresh=bool(tok.get("refresh_token")),
            )
        return tok

    def save(self, tok):
        with self.lock:
            self._write(json.dumps(tok, indent=2))
            self._current = tok
            self.version += 1
        debug_event(
            logger,
            "save_tokens",
            source=self.describe(),
            version=self.version,
            expires_at=tok.get("expires_at"),
            refresh=bool(tok.get("refresh_token")),
            access=token_preview(tok.get("access_token")),
        )
        return self.version

    def current(self):
        if self._current is not None:
            return self._current
        with self.lock:
            if self._current is None:
                self._current = self.load()
            return self._current

    def describe(self):
        return type(self).__name__


class FileCredentialStore(CredentialStore):
    def __init__(self, path, lock=None):
        super().__init__(lock=lock)
        self.path = pathlib.Path(path)

    def describe(self):
        return str(self.path)

    def _read(self):
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Failed to read tokens from %s: %s", self.path, e)
            return None

    def _write(self, text):
        # Same directory so os.replace stays on one filesystem.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".tokens-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise


class RedisCredentialStore(CredentialStore):
    def __init__(self, client, key="html2drive:tokens", lock=None):
        super().__init__(lock=lock)
        self.client = client
        self.key = key

    def describe(self):
        return f"redis:{self.key}"

    def _read(self):
        try:
            raw = self.client.get(self.key)
        except redis.RedisError as e:
            logger.error("Failed to read tokens from %s: %s", self.describe(), e)
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw

    def _write(self, text):
        self.client.set(self.key, text.encode())
