"""Pytest fixtures for feedsync tests."""

import base64
import json
from datetime import datetime

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from feedsync.config import Settings
from feedsync.database import init_db, make_session_factory
from feedsync.services.clock import FixedClock
from feedsync.services.credential_store import CredentialStore, TokenCipher
from feedsync.services.db_service import ArticleStore, QueueStore, SyncStateStore, UsageStore
from feedsync.services.token_manager import TokenManager
from feedsync.services.usage_tracker import UsageTracker

API_BASE = "https://reader.test/reader/api/0"
TOKEN_URL = "https://reader.test/oauth2/token"
START = datetime(2025, 1, 15, 12, 0, 0)


class RemoteStub:
    """Scripted remote service behind httpx.MockTransport.

    Handlers are keyed by URL path; every request is recorded.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, list] = {}

    def on(self, path: str, *responses):
        """Queue responses for a path; the last one repeats."""
        self.routes[path] = list(responses)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get(request.url.path)
        if not responses:
            return httpx.Response(404, json={"error": "not found"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        # Fresh copy so a repeated response is never read twice
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.fixture
def encryption_key() -> str:
    return base64.b64encode(b"k" * 32).decode()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def queue_store(session_factory) -> QueueStore:
    return QueueStore(session_factory)


@pytest.fixture
def usage_store(session_factory) -> UsageStore:
    return UsageStore(session_factory)


@pytest.fixture
def article_store(session_factory) -> ArticleStore:
    return ArticleStore(session_factory)


@pytest.fixture
def state_store(session_factory) -> SyncStateStore:
    return SyncStateStore(session_factory)


@pytest.fixture
def usage_tracker(usage_store, clock) -> UsageTracker:
    return UsageTracker(usage_store, clock=clock)


@pytest.fixture
def remote() -> RemoteStub:
    return RemoteStub()


@pytest.fixture
async def http_client(remote):
    async with httpx.AsyncClient(transport=httpx.MockTransport(remote), timeout=5) as client:
        yield client


@pytest.fixture
def tokens_path(tmp_path):
    return tmp_path / "rss-reader" / "tokens.json"


@pytest.fixture
def credential_store(tokens_path, encryption_key) -> CredentialStore:
    return CredentialStore(tokens_path, TokenCipher(encryption_key))


@pytest.fixture
def stored_credential(credential_store, clock) -> dict:
    """A fresh credential on disk, valid for another day."""
    credential = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_in": 86400,
        "token_type": "Bearer",
        "scope": "read write",
        "created_at": clock.timestamp(),
    }
    credential_store.save(credential)
    return credential


@pytest.fixture
def token_manager(credential_store, http_client, clock) -> TokenManager:
    return TokenManager(
        store=credential_store,
        http_client=http_client,
        token_url=TOKEN_URL,
        client_id="client-id",
        client_secret="client-secret",
        authorize_url="https://reader.test/oauth2/auth",
        redirect_uri="http://localhost:8000/api/v1/auth/callback",
        clock=clock,
    )


@pytest.fixture
def settings(tmp_path, tokens_path, encryption_key) -> Settings:
    return Settings(
        database_url="sqlite://",
        sync_autostart=False,
        inoreader_client_id="client-id",
        inoreader_client_secret="client-secret",
        inoreader_api_base=API_BASE,
        inoreader_oauth_url="https://reader.test/oauth2",
        token_encryption_key=encryption_key,
        tokens_path=str(tokens_path),
        conflict_log_path=str(tmp_path / "logs" / "sync-conflicts.jsonl"),
    )


def token_response(access_token="access-2", refresh_token=None, expires_in=3600) -> httpx.Response:
    body = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


def read_jsonl(path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
