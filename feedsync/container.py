"""
Composition root - builds and wires every component once per process.

Endpoints reach components through get_container(); tests build their own
Container around an in-memory database and a mocked HTTP transport.
"""

import logging
from typing import Optional

import httpx
from sqlalchemy.engine import Engine

from feedsync.config import Settings, get_settings
from feedsync.database import make_engine, make_session_factory
from feedsync.services.clock import Clock
from feedsync.services.conflict_detector import JsonlConflictSink
from feedsync.services.credential_store import CredentialStore, TokenCipher
from feedsync.services.db_service import ArticleStore, QueueStore, SyncStateStore, UsageStore
from feedsync.services.health import SyncHealthCheck
from feedsync.services.pull_service import RemotePullService
from feedsync.services.sync_orchestrator import SyncOrchestrator, SyncPolicy
from feedsync.services.token_manager import TokenManager
from feedsync.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)


class Container:
    """Holds the wired service graph."""

    def __init__(
        self,
        settings: Settings,
        engine: Engine | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.clock = clock or Clock()

        self.engine = engine or make_engine(settings.database_url)
        self.session_factory = make_session_factory(self.engine)
        self.http = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

        self.queue_store = QueueStore(self.session_factory)
        self.usage_store = UsageStore(self.session_factory)
        self.article_store = ArticleStore(self.session_factory)
        self.state_store = SyncStateStore(self.session_factory)

        # Raises ConfigurationError on a missing or malformed key
        self.cipher = TokenCipher(settings.token_encryption_key)
        self.credential_store = CredentialStore(settings.tokens_path, self.cipher)

        self.token_manager = TokenManager(
            store=self.credential_store,
            http_client=self.http,
            token_url=settings.oauth_token_url,
            client_id=settings.inoreader_client_id,
            client_secret=settings.inoreader_client_secret,
            authorize_url=settings.oauth_authorize_url,
            redirect_uri=settings.inoreader_redirect_uri,
            clock=self.clock,
        )
        self.usage_tracker = UsageTracker(self.usage_store, clock=self.clock)

        self.orchestrator = SyncOrchestrator(
            queue=self.queue_store,
            token_manager=self.token_manager,
            usage_tracker=self.usage_tracker,
            edit_tag_url=f"{settings.inoreader_api_base}/edit-tag",
            policy=SyncPolicy.from_settings(settings),
            state_store=self.state_store,
            clock=self.clock,
        )
        self.pull_service = RemotePullService(
            token_manager=self.token_manager,
            articles=self.article_store,
            usage_tracker=self.usage_tracker,
            api_base=settings.inoreader_api_base,
            conflict_policy=settings.sync_conflict_policy,
            state_store=self.state_store,
            conflict_sink=JsonlConflictSink(settings.conflict_log_path),
            clock=self.clock,
        )
        self.health = SyncHealthCheck(
            session_factory=self.session_factory,
            tokens_path=settings.tokens_path,
            orchestrator=self.orchestrator,
            clock=self.clock,
        )

    async def close(self) -> None:
        """Stop the timer, let a running cycle finish, release connections."""
        self.orchestrator.stop()
        await self.orchestrator.wait_idle()
        await self.http.aclose()
        self.engine.dispose()
        logger.info("Sync service shut down")


_container: Optional[Container] = None


def get_container() -> Container:
    """Process-wide container, built on first use."""
    global _container
    if _container is None:
        _container = Container(get_settings())
    return _container


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container
