from __future__ import annotations

import json

import pytest
from pymongo.errors import ServerSelectionTimeoutError

import credential_store
import run_cleanup
from conftest import http_error, make_ids
from settings import ConfigurationError, Settings


@pytest.fixture
def wired(monkeypatch, store, adapter):
    settings = Settings(
        google_client_id="cid",
        google_client_secret="secret",
        google_redirect_uri="http://localhost:5000/auth/google/callback",
        cookie_key="cookie-key",
        mongo_uri="mongodb://unused",
        port=5000,
    )
    monkeypatch.setattr(run_cleanup, "configure_logging", lambda: None)
    monkeypatch.setattr(run_cleanup, "load_settings", lambda: settings)
    monkeypatch.setattr(run_cleanup, "get_credential_store", lambda _settings: store)
    monkeypatch.setattr(run_cleanup, "TokenRefreshAdapter", lambda *args, **kwargs: adapter)


def test_run_prints_deleted_count(wired, user, gmail, capsys):
    gmail.message_ids = make_ids(25)

    assert run_cleanup.main([user.id, "--chunk-size", "10"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["deletedCount"] == 25
    assert [len(batch) for batch in gmail.batch_calls] == [10, 10, 5]


def test_run_reports_failure_on_stderr(wired, user, gmail, capsys):
    gmail.message_ids = make_ids(3)
    gmail.list_errors[0] = http_error(403)

    assert run_cleanup.main([user.id]) == 1

    payload = json.loads(capsys.readouterr().err)
    assert payload["kind"] == "permission_denied"


@pytest.mark.parametrize("chunk_size", ["0", "1001"])
def test_chunk_size_is_bounded(chunk_size):
    assert run_cleanup.main(["someone", "--chunk-size", chunk_size]) == 2


def test_missing_configuration_exits_nonzero(monkeypatch, capsys):
    def _fail():
        raise ConfigurationError("Missing required settings: COOKIE_KEY")

    monkeypatch.setattr(run_cleanup, "configure_logging", lambda: None)
    monkeypatch.setattr(run_cleanup, "load_settings", _fail)

    assert run_cleanup.main(["someone"]) == 1
    assert "COOKIE_KEY" in capsys.readouterr().err


class _UnreachableMongo:
    instances: list = []

    def __init__(self, uri):
        self.uri = uri
        self.closed = False
        _UnreachableMongo.instances.append(self)

    def get_default_database(self, default=None):
        return {"users": self}

    def create_index(self, key, unique=False):
        raise ServerSelectionTimeoutError("no servers")

    def close(self):
        self.closed = True


def test_unreachable_store_exits_with_payload_and_closes_client(monkeypatch, capsys):
    settings = Settings(
        google_client_id="cid",
        google_client_secret="secret",
        google_redirect_uri="http://localhost:5000/auth/google/callback",
        cookie_key="cookie-key",
        mongo_uri="mongodb://unreachable:27017/mailbox",
        port=5000,
    )
    monkeypatch.setattr(_UnreachableMongo, "instances", [])
    monkeypatch.setattr(credential_store, "MongoClient", _UnreachableMongo)
    monkeypatch.setattr(run_cleanup, "configure_logging", lambda: None)
    monkeypatch.setattr(run_cleanup, "load_settings", lambda: settings)

    assert run_cleanup.main(["abc"]) == 1

    payload = json.loads(capsys.readouterr().err)
    assert payload["kind"] == "internal_failure"
    assert "no servers" not in payload["error"]
    assert [client.closed for client in _UnreachableMongo.instances] == [True]
