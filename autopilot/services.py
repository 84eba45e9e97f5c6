"""
Process-wide component wiring.

Every external client (database engine, Anthropic, Gmail, Outlook, token
refresh) is constructed once here and passed into the components that
need it. Components never build their own clients, so tests construct
Services with fakes instead.

Usage:
    from autopilot.services import get_services
    services = get_services()
    services.run_auto_send_batch(limit=20)
"""

import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from autopilot.agent.classifier import Classifier
from autopilot.agent.drafter import DraftGenerator
from autopilot.agent.engine import AutopilotEngine
from autopilot.agent.entitlements import FeatureGate
from autopilot.agent.filters import EligibilityChecker, FilterConfig
from autopilot.agent.model import AnthropicModel, ModelCapability
from autopilot.agent.schemas import BatchResult, SyncResult
from autopilot.channels.base import ChannelRegistry
from autopilot.channels.gmail import GmailChannel
from autopilot.channels.outlook import OutlookChannel
from autopilot.channels.tokens import TokenProvider
from autopilot.config import settings
from autopilot.db.audit_log import AuditLog
from autopilot.db.session import init_db, make_engine, make_session_factory
from autopilot.ingest.contacts import ContactResolver
from autopilot.ingest.sync import MessageIngestor
from autopilot.llm.client import LLMClient
from autopilot.logging.config import run_context, workspace_id_var
from autopilot.queue.enqueue import AutoSendEnqueuer
from autopilot.queue.policy import PolicyProvider
from autopilot.queue.store import QueueStore
from autopilot.queue.worker import AutoSendWorker

logger = logging.getLogger(__name__)


class Services:
    """All pipeline components, wired once per process."""

    def __init__(
        self,
        sessions: sessionmaker,
        channels: ChannelRegistry,
        tokens: TokenProvider,
        model: ModelCapability,
        gate: Optional[FeatureGate] = None,
        filter_config: Optional[FilterConfig] = None,
        engine: Optional[Engine] = None,
    ):
        self.db_engine = engine
        self.sessions = sessions
        self.channels = channels
        self.tokens = tokens

        self.audit_log = AuditLog(sessions)
        self.policies = PolicyProvider(sessions)
        self.store = QueueStore(sessions, max_attempts=settings.auto_send_max_attempts)
        self.gate = gate or FeatureGate(settings.entitled_workspaces)

        self.classifier = Classifier(sessions, model, self.audit_log)
        self.checker = EligibilityChecker(sessions, filter_config)
        self.drafter = DraftGenerator(sessions, model, self.gate, self.audit_log)
        self.enqueuer = AutoSendEnqueuer(self.policies, self.store, self.audit_log)
        self.engine = AutopilotEngine(
            sessions,
            self.policies,
            self.classifier,
            self.checker,
            self.drafter,
            self.enqueuer,
            self.audit_log,
        )
        self.ingestor = MessageIngestor(sessions, channels, tokens, ContactResolver(sessions))
        self.worker = AutoSendWorker(
            sessions, self.store, self.policies, channels, tokens, self.audit_log
        )

    @classmethod
    def from_settings(cls) -> "Services":
        """Build the production wiring from environment settings."""
        engine = make_engine(settings.database_url)
        init_db(engine)
        sessions = make_session_factory(engine)

        channels = ChannelRegistry()
        channels.register(GmailChannel())
        channels.register(OutlookChannel())

        try:
            filter_config = FilterConfig.load(settings.reply_filter_config_path)
        except FileNotFoundError:
            logger.warning(
                "reply_filters.missing",
                extra={"action": "reply_filters.missing", "path": settings.reply_filter_config_path},
            )
            filter_config = FilterConfig()

        services = cls(
            sessions=sessions,
            channels=channels,
            tokens=TokenProvider(sessions, settings.credential_encryption_key),
            model=AnthropicModel(LLMClient()),
            filter_config=filter_config,
            engine=engine,
        )
        logger.info("services.initialized", extra={"action": "services.initialized"})
        return services

    def close(self) -> None:
        self.channels.close()
        self.tokens.close()
        if self.db_engine is not None:
            self.db_engine.dispose()

    # =========================================================================
    # ENTRY POINTS (externally triggered)
    # =========================================================================

    def run_auto_send_batch(self, limit: Optional[int] = None) -> BatchResult:
        with run_context("auto_send"):
            return self.worker.process_batch(limit=limit)

    def run_ingest_sync(
        self,
        connection_id: str,
        workspace_id: str,
        max_messages: Optional[int] = None,
        query: Optional[str] = None,
        page_token: Optional[str] = None,
        process_new: bool = True,
    ) -> SyncResult:
        """
        Sync one connection, then run every newly stored message through
        the engine when `process_new` is set.
        """
        ctx = workspace_id_var.set(workspace_id)
        try:
            result = self.ingestor.sync(
                connection_id,
                workspace_id,
                max_messages=max_messages,
                query=query,
                page_token=page_token,
            )
            if process_new and result.new_message_ids:
                self.engine.handle_new_messages(result.new_message_ids, workspace_id)
            return result
        finally:
            workspace_id_var.reset(ctx)

    def run_ingest_sync_all(self, process_new: bool = True) -> list[SyncResult]:
        """Sync every active connection. Per-connection failures are reported, not raised."""
        with run_context("sync"):
            results = self.ingestor.sync_all_active()
            if process_new:
                for result in results:
                    if result.new_message_ids:
                        self.engine.handle_new_messages(result.new_message_ids, result.workspace_id)
        return results


_services: Optional[Services] = None


def get_services() -> Services:
    """The process-wide Services, built on first use."""
    global _services
    if _services is None:
        _services = Services.from_settings()
    return _services
