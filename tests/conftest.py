from __future__ import annotations

import pytest

from valuebot.storage import init_db

_ENV_VARS = (
    "VB_DB_URL",
    "VB_DB_PATH",
    "VB_CONFIG_PATH",
    "VB_LOG_FILE",
    "VB_LOG_LEVELS",
    "VALUEBOT_CRON_MAX_JOBS",
    "ENABLE_ADDON_ENGINE",
    "VALUEBOT_API_BASE_URL",
    "SITE_URL",
    "VERCEL_URL",
    "DEPLOYMENT_URL",
    "PUBLIC_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "queue.sqlite3"))
    yield connection
    connection.close()


class FakeClient:
    """Completion client returning canned replies keyed by stage label."""

    def __init__(self, replies=None, default=""):
        self.replies = dict(replies or {})
        self.default = default
        self.requests = []

    def complete(self, request):
        self.requests.append(request)
        reply = self.replies.get(request.stage_label, self.default)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        return {"rawResponse": reply}

    def stages(self):
        return [request.stage_label for request in self.requests]


@pytest.fixture
def fake_client():
    return FakeClient


class AbortingConnection:
    """Store connection that, like PostgreSQL, refuses every statement after a
    failed one until the transaction is rolled back."""

    def __init__(self, inner, fail_on):
        self._inner = inner
        self.fail_on = fail_on
        self.aborted = False
        self.rollbacks = 0

    def execute(self, sql, params=None):
        if self.aborted:
            raise RuntimeError("current transaction is aborted, commands ignored until end of transaction block")
        if self.fail_on and self.fail_on in sql:
            self.aborted = True
            raise RuntimeError(f"statement failed: {self.fail_on}")
        return self._inner.execute(sql, params)

    def commit(self):
        if self.aborted:
            raise RuntimeError("current transaction is aborted")
        self._inner.commit()

    def rollback(self):
        self.aborted = False
        self.rollbacks += 1
        self._inner.rollback()


@pytest.fixture
def aborting_conn(conn):
    def factory(fail_on):
        return AbortingConnection(conn, fail_on)

    return factory
