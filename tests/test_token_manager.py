"""Tests for the OAuth token lifecycle."""

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import API_BASE, token_response
from feedsync.exceptions import (
    ConfigurationError,
    NoCredentialError,
    NoRefreshTokenError,
    RemoteServiceError,
    TokenRefreshError,
)

TOKEN_PATH = "/oauth2/token"
LIST_PATH = "/reader/api/0/subscription/list"


def _form(request: httpx.Request) -> dict:
    return parse_qs(request.content.decode())


class TestNeedsRefresh:
    def test_true_without_credential(self, token_manager):
        assert token_manager.needs_refresh() is True

    def test_true_inside_margin(self, token_manager, credential_store, clock):
        credential_store.save({
            "access_token": "a", "refresh_token": "r",
            "expires_in": 3600, "created_at": clock.timestamp() - 3500,
        })
        token_manager.load_credential()
        assert token_manager.needs_refresh() is True

    def test_false_when_fresh(self, token_manager, stored_credential):
        token_manager.load_credential()
        assert token_manager.needs_refresh() is False

    def test_boundary_is_inclusive(self, token_manager, credential_store, clock):
        # expires exactly one margin from now
        credential_store.save({
            "access_token": "a", "expires_in": 7200, "created_at": clock.timestamp() - 3600,
        })
        token_manager.load_credential()
        assert token_manager.needs_refresh() is True
        clock.advance(-1)
        assert token_manager.needs_refresh() is False


class TestRefresh:
    async def test_rotates_and_persists(self, token_manager, stored_credential, credential_store, remote, clock):
        remote.on(TOKEN_PATH, token_response("access-2", refresh_token="refresh-2", expires_in=7200))
        clock.advance(100)

        credential = await token_manager.refresh()

        assert credential["access_token"] == "access-2"
        assert credential["refresh_token"] == "refresh-2"
        assert credential["created_at"] == clock.timestamp()
        assert credential_store.load() == credential

        form = _form(remote.calls(TOKEN_PATH)[0])
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert form["client_id"] == ["client-id"]

    async def test_keeps_refresh_token_when_not_rotated(self, token_manager, stored_credential, remote):
        remote.on(TOKEN_PATH, token_response("access-2"))
        credential = await token_manager.refresh()
        assert credential["refresh_token"] == "refresh-1"

    async def test_no_refresh_token(self, token_manager, credential_store, clock):
        credential_store.save({"access_token": "a", "expires_in": 10, "created_at": clock.timestamp()})
        with pytest.raises(NoRefreshTokenError):
            await token_manager.refresh()

    async def test_no_credential(self, token_manager):
        with pytest.raises(NoCredentialError):
            await token_manager.refresh()

    async def test_rejected_grant(self, token_manager, stored_credential, remote, credential_store):
        remote.on(TOKEN_PATH, httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(TokenRefreshError) as excinfo:
            await token_manager.refresh()
        assert excinfo.value.status_code == 400
        # stored credential untouched
        assert credential_store.load()["access_token"] == "access-1"

    async def test_server_error(self, token_manager, stored_credential, remote):
        remote.on(TOKEN_PATH, httpx.Response(503))
        with pytest.raises(RemoteServiceError):
            await token_manager.refresh()

    async def test_concurrent_callers_share_one_refresh(self, token_manager, stored_credential, remote):
        remote.on(TOKEN_PATH, token_response("access-2"))
        token_manager.load_credential()

        results = await asyncio.gather(token_manager.refresh(), token_manager.refresh(), token_manager.refresh())

        assert len(remote.calls(TOKEN_PATH)) == 1
        assert {r["access_token"] for r in results} == {"access-2"}


class TestAccessToken:
    async def test_loads_lazily(self, token_manager, stored_credential, remote):
        assert await token_manager.get_access_token() == "access-1"
        assert remote.calls(TOKEN_PATH) == []

    async def test_refreshes_near_expiry(self, token_manager, stored_credential, remote, clock):
        remote.on(TOKEN_PATH, token_response("access-2"))
        clock.advance(86400 - 60)
        assert await token_manager.get_access_token() == "access-2"


class TestAuthenticatedRequest:
    async def test_attaches_bearer(self, token_manager, stored_credential, remote):
        remote.on(LIST_PATH, httpx.Response(200, json={"subscriptions": []}))

        response = await token_manager.authenticated_request(
            "GET", f"{API_BASE}/subscription/list", headers={"X-Extra": "1"}
        )

        assert response.status_code == 200
        sent = remote.calls(LIST_PATH)[0]
        assert sent.headers["Authorization"] == "Bearer access-1"
        assert sent.headers["X-Extra"] == "1"

    async def test_401_refreshes_once_and_retries(self, token_manager, stored_credential, remote):
        remote.on(LIST_PATH, httpx.Response(401), httpx.Response(200, json={}))
        remote.on(TOKEN_PATH, token_response("access-2"))

        response = await token_manager.authenticated_request("GET", f"{API_BASE}/subscription/list")

        assert response.status_code == 200
        calls = remote.calls(LIST_PATH)
        assert [c.headers["Authorization"] for c in calls] == ["Bearer access-1", "Bearer access-2"]
        assert len(remote.calls(TOKEN_PATH)) == 1

    async def test_second_401_is_returned(self, token_manager, stored_credential, remote):
        remote.on(LIST_PATH, httpx.Response(401))
        remote.on(TOKEN_PATH, token_response("access-2"))

        response = await token_manager.authenticated_request("GET", f"{API_BASE}/subscription/list")

        assert response.status_code == 401
        assert len(remote.calls(LIST_PATH)) == 2
        assert len(remote.calls(TOKEN_PATH)) == 1

    async def test_429_is_not_retried(self, token_manager, stored_credential, remote):
        remote.on(LIST_PATH, httpx.Response(429))

        response = await token_manager.authenticated_request("GET", f"{API_BASE}/subscription/list")

        assert response.status_code == 429
        assert len(remote.calls(LIST_PATH)) == 1
        assert remote.calls(TOKEN_PATH) == []


class TestAuthorizationFlow:
    def test_authorization_url(self, token_manager):
        url = httpx.URL(token_manager.authorization_url("abc"))
        assert url.path == "/oauth2/auth"
        assert url.params["client_id"] == "client-id"
        assert url.params["state"] == "abc"
        assert url.params["response_type"] == "code"

    def test_authorization_url_needs_client(self, token_manager):
        token_manager.client_id = None
        with pytest.raises(ConfigurationError):
            token_manager.authorization_url("abc")

    async def test_exchange_code(self, token_manager, credential_store, remote):
        remote.on(TOKEN_PATH, token_response("first", refresh_token="r-first"))

        credential = await token_manager.exchange_code("the-code")

        assert credential_store.load()["access_token"] == "first"
        form = _form(remote.calls(TOKEN_PATH)[0])
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert credential["refresh_token"] == "r-first"

    def test_logout(self, token_manager, stored_credential, credential_store):
        token_manager.load_credential()
        assert token_manager.logout() is True
        assert token_manager.credential is None
        assert not credential_store.exists()


class TestStatus:
    def test_no_credential(self, token_manager):
        status = token_manager.status()
        assert status["status"] == "no_credential"
        assert status["authenticated"] is False

    def test_valid(self, token_manager, stored_credential, clock):
        clock.advance(60)
        status = token_manager.status()
        assert status["authenticated"] is True
        assert status["has_refresh_token"] is True
        assert status["token_age_seconds"] == 60

    def test_expired(self, token_manager, stored_credential, clock):
        clock.advance(86400 + 1)
        status = token_manager.status()
        assert status["authenticated"] is False
        assert status["status"] == "expired"

    def test_unreadable(self, token_manager, tokens_path):
        tokens_path.parent.mkdir(parents=True)
        tokens_path.write_text("{}")
        assert token_manager.status()["status"] == "unreadable"
