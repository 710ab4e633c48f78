"""
OAuth token lifecycle for the remote reader API.

Flow:
1. First-time authorization (authorization_url -> exchange_code) stores the
   initial token set through the CredentialStore
2. get_access_token() loads the credential lazily and refreshes it an hour
   before it expires
3. authenticated_request() attaches the bearer token and, on a 401,
   refreshes once and replays the request
"""

import asyncio
import logging

import httpx

from feedsync.exceptions import (
    ConfigurationError,
    CredentialError,
    NoCredentialError,
    NoRefreshTokenError,
    RemoteServiceError,
    TokenRefreshError,
)
from feedsync.services.clock import Clock
from feedsync.services.credential_store import CredentialStore, EncryptedPayload

logger = logging.getLogger(__name__)

# Refresh this long before the access token actually expires
REFRESH_MARGIN_SECONDS = 60 * 60

DEFAULT_SCOPE = "read write"


class TokenManager:
    """
    Produces valid bearer tokens and performs authenticated HTTP calls.

    One instance per process; the cached credential is the only plaintext
    copy and lives in memory only.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        authorize_url: str | None = None,
        redirect_uri: str | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.http = http_client
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self.clock = clock or Clock()

        self._credential: dict | None = None
        self._refresh_lock = asyncio.Lock()
        # Bumped on every successful refresh so waiters can skip a duplicate grant
        self._generation = 0

    # ============ ENCRYPTION ============

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        return self.store.cipher.encrypt(plaintext)

    def decrypt(self, payload: EncryptedPayload) -> str:
        return self.store.cipher.decrypt(payload)

    # ============ CREDENTIAL STATE ============

    @property
    def credential(self) -> dict | None:
        return self._credential

    def load_credential(self) -> dict:
        """Read the credential from disk into memory."""
        self._credential = self.store.load()
        return self._credential

    def expires_at(self) -> float | None:
        if not self._credential:
            return None
        created_at = float(self._credential.get("created_at", 0))
        return created_at + float(self._credential.get("expires_in", 0))

    def needs_refresh(self) -> bool:
        """True with no credential loaded, or within the margin of expiry."""
        if not self._credential:
            return True
        return self.clock.timestamp() >= self.expires_at() - REFRESH_MARGIN_SECONDS

    async def refresh(self) -> dict:
        """
        Exchange the stored refresh token for a new token set.

        The remote may or may not rotate the refresh token; the old one is
        kept when no new one is issued.

        Raises:
            NoCredentialError: nothing on file to refresh
            NoRefreshTokenError: credential has no refresh token
            TokenRefreshError: token endpoint rejected the grant
            RemoteServiceError: token endpoint failed (5xx)
        """
        generation = self._generation
        async with self._refresh_lock:
            if self._generation != generation and self._credential:
                # Another caller refreshed while we waited
                return self._credential

            if self._credential is None:
                self.load_credential()

            refresh_token = self._credential.get("refresh_token")
            if not refresh_token:
                raise NoRefreshTokenError(
                    "No refresh token on file. Run the authorization flow again."
                )

            logger.info("Refreshing OAuth access token")
            tokens = await self._token_grant({
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            })

            credential = self._save_tokens(tokens, fallback_refresh_token=refresh_token)
            self._generation += 1
            logger.info(
                "Access token refreshed, valid for %ss (refresh token %s)",
                credential["expires_in"],
                "rotated" if tokens.get("refresh_token") else "retained",
            )
            return credential

    async def get_access_token(self) -> str:
        """Current access token, refreshing first when close to expiry."""
        if self._credential is None:
            self.load_credential()

        if self.needs_refresh():
            await self.refresh()

        return self._credential["access_token"]

    # ============ AUTHENTICATED CALLS ============

    async def authenticated_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Perform a request with a bearer token.

        A 401 triggers exactly one refresh-and-retry. Every other status,
        429 included, is returned to the caller untouched.
        """
        token = await self.get_access_token()
        response = await self._send(method, url, token, kwargs)

        if response.status_code == 401:
            logger.warning("Got 401 from %s, refreshing token and retrying once", url)
            await self.refresh()
            response = await self._send(method, url, self._credential["access_token"], kwargs)

        return response

    async def _send(self, method: str, url: str, token: str, kwargs: dict) -> httpx.Response:
        request_kwargs = dict(kwargs)
        headers = dict(request_kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        return await self.http.request(method, url, headers=headers, **request_kwargs)

    # ============ FIRST-TIME AUTHORIZATION ============

    def authorization_url(self, state: str) -> str:
        """URL of the remote consent screen for the authorization-code grant."""
        self._require_client()
        if not self.authorize_url or not self.redirect_uri:
            raise ConfigurationError("OAuth authorize URL and redirect URI must be configured")

        url = httpx.URL(self.authorize_url, params={
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": DEFAULT_SCOPE,
            "state": state,
        })
        return str(url)

    async def exchange_code(self, code: str) -> dict:
        """Trade an authorization code for the initial token set and persist it."""
        tokens = await self._token_grant({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        credential = self._save_tokens(tokens, fallback_refresh_token=None)
        self._generation += 1
        logger.info("Stored initial OAuth credential")
        return credential

    def logout(self) -> bool:
        """Forget the credential, on disk and in memory."""
        self._credential = None
        return self.store.delete()

    # ============ STATUS ============

    def status(self) -> dict:
        """
        Describe the stored credential without refreshing it.

        Credential problems are reported, not raised, so operators can see them.
        """
        result = {
            "authenticated": False,
            "status": "ok",
            "has_refresh_token": False,
            "expires_at": None,
            "needs_refresh": True,
            "token_age_seconds": None,
            "message": "",
        }

        try:
            credential = self._credential or self.load_credential()
        except NoCredentialError:
            result.update(status="no_credential", message="No token found. Please sign in.")
            return result
        except CredentialError as e:
            result.update(status="unreadable", message=str(e))
            return result

        now = self.clock.timestamp()
        expires_at = self.expires_at()
        result.update(
            has_refresh_token=bool(credential.get("refresh_token")),
            expires_at=expires_at,
            needs_refresh=self.needs_refresh(),
            token_age_seconds=max(0, int(now - float(credential.get("created_at", now)))),
        )

        if now < expires_at:
            result.update(authenticated=True, message="Token is valid.")
        elif result["has_refresh_token"]:
            result.update(status="expired", message="Token expired; it will be refreshed on next use.")
        else:
            result.update(status="expired", message="Token expired and no refresh token. Please sign in.")

        return result

    # ============ INTERNALS ============

    def _require_client(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("INOREADER_CLIENT_ID and INOREADER_CLIENT_SECRET must be set")

    async def _token_grant(self, form: dict) -> dict:
        self._require_client()
        form = {
            **form,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        response = await self.http.post(
            self.token_url,
            data={k: v for k, v in form.items() if v is not None},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if response.status_code >= 500:
            raise RemoteServiceError(
                f"Token endpoint failed: {response.status_code}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise TokenRefreshError(
                f"Token grant rejected: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )

        tokens = response.json()
        if not tokens.get("access_token"):
            raise TokenRefreshError("Token endpoint reply has no access_token")
        return tokens

    def _save_tokens(self, tokens: dict, fallback_refresh_token: str | None) -> dict:
        previous = self._credential or {}
        credential = {
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token") or fallback_refresh_token,
            "expires_in": int(tokens.get("expires_in") or 3600),
            "token_type": tokens.get("token_type") or "Bearer",
            "scope": tokens.get("scope") or previous.get("scope") or DEFAULT_SCOPE,
            "created_at": self.clock.timestamp(),
        }
        self.store.save(credential)
        self._credential = credential
        return credential
