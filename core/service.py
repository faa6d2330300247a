"""
Chatbot Service — wires settings, flow source, cache, store and engine.

    service = ChatbotService(get_settings(), Ports(message_sender=WhatsAppSender(...)))
    await service.start()
    report = await service.handle(InboundMessage(contact_id="5841...", connection_id="1", text="hola"))
    await service.close()

One FlowCache, one SessionLocks and one TimeoutScheduler per process;
every conversation shares them. Replies and timer-driven messages both
leave through the same IntentDispatcher.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Callable, Optional

from backend.connector import RESTFlowRepository
from channels.base import AgentRouter, DepartmentRouter, DocumentSender, MessageSender, OptionProvider
from channels.dispatcher import DeliveryReport, IntentDispatcher
from config.settings import Settings
from database.session import Database
from database.store_base import SessionStore
from database.store_factory import create_store
from engine.actions import ActionExecutor
from engine.dialog import DialogEngine, EngineReply
from engine.locks import SessionLocks
from engine.timeouts import Sleeper, TimeoutScheduler
from flows.cache import FlowCache
from flows.repository import FlowRepository, YamlFlowRepository
from models.schemas import InboundMessage

logger = structlog.get_logger()


@dataclass
class Ports:
    """Outbound capabilities supplied by the host application."""
    message_sender: MessageSender
    document_sender: Optional[DocumentSender] = None
    department_router: Optional[DepartmentRouter] = None
    agent_router: Optional[AgentRouter] = None
    option_provider: Optional[OptionProvider] = None


def create_flow_repository(settings: Settings, db: Optional[Database] = None) -> FlowRepository:
    """Factory: the flow source named by `flows.source`."""
    source = settings.flows.source
    if source == "yaml":
        logger.info("flow_repository_created", source="yaml", path=settings.flows.path)
        return YamlFlowRepository(settings.flows.path)
    if source == "sql":
        from database.store import SqlFlowRepository
        logger.info("flow_repository_created", source="sql")
        return SqlFlowRepository(db or Database(settings.database.url))
    if source == "rest":
        logger.info("flow_repository_created", source="rest", base_url=settings.backend.base_url)
        return RESTFlowRepository(settings.backend)
    raise ValueError(f"Unsupported flow source: {source}")


class ChatbotService:

    def __init__(
        self,
        settings: Settings,
        ports: Ports,
        repository: Optional[FlowRepository] = None,
        store: Optional[SessionStore] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        uses_sql = settings.flows.source == "sql" or settings.database.store_backend == "sql"
        self.db: Optional[Database] = Database(settings.database.url) if uses_sql else None

        self.repository = repository or create_flow_repository(settings, self.db)
        self.flow_cache = FlowCache(self.repository, ttl_seconds=settings.cache.flow_ttl_seconds,
                                    clock=clock)
        self.store = store or create_store(settings.database, db=self.db)
        self.dispatcher = IntentDispatcher(ports.message_sender)
        self.scheduler = TimeoutScheduler(SessionLocks(), sleep=sleep)
        self.engine = DialogEngine(
            flow_cache=self.flow_cache,
            session_store=self.store,
            action_executor=ActionExecutor(
                message_sender=ports.message_sender,
                document_sender=ports.document_sender,
                department_router=ports.department_router,
                agent_router=ports.agent_router,
                failure_message=settings.messages.action_failure,
            ),
            scheduler=self.scheduler,
            option_provider=ports.option_provider,
            agent_router=ports.agent_router,
            timeout_sink=self.dispatcher,
            config=settings.engine,
            timeout_config=settings.timeouts,
            messages=settings.messages,
        )

    async def start(self) -> None:
        if self.db is not None:
            await self.db.init()
        logger.info("chatbot_service_started", app=self.settings.app_name,
                    flow_source=self.settings.flows.source,
                    store_backend=self.settings.database.store_backend)

    async def handle(self, inbound: InboundMessage) -> DeliveryReport:
        """Run one turn and deliver its intents."""
        reply = await self.engine.handle(inbound)
        return await self.dispatcher.deliver(reply.intents)

    async def process(self, inbound: InboundMessage) -> EngineReply:
        """Run one turn without delivering; the caller sends `reply.intents`."""
        return await self.engine.handle(inbound)

    async def release(self, contact_id: str, connection_id: str) -> bool:
        """Return a contact from a human agent to the bot."""
        return await self.engine.release(contact_id, connection_id)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.flow_cache.close()
        await self.store.close()
        if isinstance(self.repository, RESTFlowRepository):
            await self.repository.close()
        if self.db is not None:
            await self.db.close()
        logger.info("chatbot_service_stopped")
