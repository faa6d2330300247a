"""Shared test fixtures for FlowDesk."""
import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import (
    AgentRouter, ChannelError, DepartmentRouter, DocumentSender, MessageSender, OptionProvider,
)
from config.settings import EngineConfig, MessagesConfig, TimeoutConfig
from database.store_memory import InMemorySessionStore
from engine.actions import ActionExecutor
from engine.dialog import DialogEngine
from engine.locks import SessionLocks
from engine.timeouts import TimeoutScheduler
from flows.cache import FlowCache
from flows.repository import InMemoryFlowRepository
from models.schemas import Button, MediaRef, Option, OutboundIntent, Session


# ──────────────────────────────────────────────────────────────
#  Manual clock — drives FlowCache TTLs and reply timers
# ──────────────────────────────────────────────────────────────

class ManualClock:
    """
    Monotonic clock + sleep that only move when the test says so.

    Use the instance as FlowCache's `clock` and `clock.sleep` as the
    TimeoutScheduler's sleep function.
    """

    def __init__(self):
        self.now = 0.0
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + seconds, fut))
        await fut

    async def settle(self, rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        await self.settle()
        self.now += seconds
        due = [w for w in self._waiters if w[0] <= self.now]
        self._waiters = [w for w in self._waiters if w[0] > self.now]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)
        await self.settle()


# ──────────────────────────────────────────────────────────────
#  Fake ports — record every call
# ──────────────────────────────────────────────────────────────

class RecordingSender(MessageSender):
    def __init__(self):
        self.sent: list[tuple[str, str, Any]] = []
        self.fail_with: Optional[Exception] = None

    async def send_text(self, to: str, text: str, *, connection_id: str) -> Optional[str]:
        if self.fail_with:
            raise self.fail_with
        self.sent.append(("text", to, text))
        return f"wamid.{len(self.sent)}"

    async def send_media(self, to: str, media: MediaRef, *, connection_id: str) -> Optional[str]:
        if self.fail_with:
            raise self.fail_with
        self.sent.append(("media", to, media))
        return f"wamid.{len(self.sent)}"

    async def send_buttons(self, to: str, text: str, buttons: list[Button], *,
                           connection_id: str) -> Optional[str]:
        if self.fail_with:
            raise self.fail_with
        self.sent.append(("buttons", to, [b.id for b in buttons]))
        return f"wamid.{len(self.sent)}"

    @property
    def texts(self) -> list[str]:
        return [payload for kind, _, payload in self.sent if kind == "text"]


class RecordingDocuments(DocumentSender):
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, config: dict[str, Any], session: Session) -> None:
        self.sent.append(dict(config))


class RecordingDepartments(DepartmentRouter):
    def __init__(self):
        self.transfers: list[tuple[str, dict[str, Any]]] = []

    async def transfer(self, config: dict[str, Any], session: Session) -> None:
        self.transfers.append((session.id, dict(config)))


class RecordingAgents(AgentRouter):
    def __init__(self):
        self.transfers: list[tuple[str, dict[str, Any]]] = []

    async def transfer(self, config: dict[str, Any], session: Session) -> None:
        self.transfers.append((session.id, dict(config)))


class StaticOptions(OptionProvider):
    def __init__(self, options: dict[str, list[Option]]):
        self.options = options
        self.calls: list[str] = []

    async def fetch(self, source: str, session: Session) -> list[Option]:
        self.calls.append(source)
        if source not in self.options:
            raise ChannelError(f"unknown option source {source}")
        return self.options[source]


class IntentSink:
    def __init__(self):
        self.delivered: list[OutboundIntent] = []

    async def deliver(self, intents: list[OutboundIntent]) -> None:
        self.delivered.extend(intents)

    @property
    def texts(self) -> list[str]:
        return [i.text for i in self.delivered]


# ──────────────────────────────────────────────────────────────
#  Sample flows (connection "1")
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def main_flow_doc() -> dict:
    """Root menu {1 → nodeA, 2 → nodeB}; nodeB sends a ticket then transfers."""
    return {
        "id": "main",
        "connection_id": "1",
        "name": "Main menu",
        "trigger_keywords": ["hola", "menu"],
        "root_node_id": "root",
        "nodes": [
            {
                "id": "root", "type": "menu",
                "content": "Welcome! Choose an option:",
                "options": [
                    {"text": "1.- Remittances", "value": "1", "next_node_id": "nodeA", "order_index": 1},
                    {"text": "2.- Support", "value": "2", "next_node_id": "nodeB", "order_index": 2},
                ],
            },
            {
                "id": "nodeA", "type": "prompt", "parent_id": "root",
                "content": "How much do you want to send?",
                "field": "amount", "field_type": "number", "next": "doneA",
            },
            {
                "id": "doneA", "type": "response", "parent_id": "nodeA",
                "content": "We will send {{amount}}.", "is_final": True,
            },
            {
                "id": "nodeB", "type": "response", "parent_id": "root",
                "content": "Connecting you with support",
                "actions": [
                    {"type": "transfer_department", "execution_order": 2,
                     "config": {"department_id": "support"}},
                    {"type": "send_message", "execution_order": 1,
                     "config": {"text": "Ticket opened for {{contact_id}}"}},
                ],
            },
        ],
    }


@pytest.fixture
def remit_flow_doc() -> dict:
    """Form [amount, proof_image] followed by a condition on the amount."""
    return {
        "id": "remit",
        "connection_id": "1",
        "trigger_keywords": ["enviar", "remesa"],
        "nodes": [
            {
                "id": "remit_form", "type": "form",
                "content": "Let's register your transfer.",
                "next": "remit_check",
                "fields": [
                    {"field": "amount", "prompt": "How much did you send?",
                     "field_type": "number", "stage": "amount"},
                    {"field": "proof_image", "prompt": "Please send a photo of the receipt",
                     "field_type": "image", "stage": "proof"},
                ],
            },
            {
                "id": "remit_check", "type": "condition", "parent_id": "remit_form",
                "branches": [
                    {"conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
                     "next": "remit_review"},
                ],
                "default_next": "remit_done",
            },
            {
                "id": "remit_review", "type": "response", "parent_id": "remit_check",
                "content": "Large transfer, an agent will review it.", "is_final": True,
            },
            {
                "id": "remit_done", "type": "response", "parent_id": "remit_check",
                "content": "Thanks! Transfer of {{amount}} registered.", "is_final": True,
            },
        ],
    }


@pytest.fixture
def survey_flow_doc() -> dict:
    """A node waiting 30 seconds for a reply."""
    return {
        "id": "survey",
        "connection_id": "1",
        "trigger_keywords": ["encuesta"],
        "nodes": [
            {
                "id": "ask", "type": "response",
                "content": "Rate us from 1 to 5",
                "wait_for_input": True, "timeout_seconds": 30,
                "timeout_next": "expired", "next": "thanks",
            },
            {"id": "expired", "type": "response", "parent_id": "ask",
             "content": "No answer received, closing the survey.", "is_final": True},
            {"id": "thanks", "type": "response", "parent_id": "ask",
             "content": "Thanks for your rating!", "is_final": True},
        ],
    }


@pytest.fixture
def beneficiary_flow_doc() -> dict:
    """Menu whose options come from an OptionProvider."""
    return {
        "id": "benef",
        "connection_id": "1",
        "trigger_keywords": ["beneficiario"],
        "nodes": [
            {"id": "pick", "type": "menu", "content": "Who is the transfer for?",
             "dynamic_options": "beneficiaries", "field": "beneficiary", "next": "confirm"},
            {"id": "confirm", "type": "response", "parent_id": "pick",
             "content": "Sending to {{beneficiary_name}}", "is_final": True},
        ],
    }


@pytest.fixture
def flow_docs(main_flow_doc, remit_flow_doc, survey_flow_doc, beneficiary_flow_doc) -> list[dict]:
    return [main_flow_doc, remit_flow_doc, survey_flow_doc, beneficiary_flow_doc]


@pytest.fixture
def repository(flow_docs) -> InMemoryFlowRepository:
    return InMemoryFlowRepository(flow_docs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def flow_cache(repository, clock) -> FlowCache:
    return FlowCache(repository, ttl_seconds=300, clock=clock)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def documents() -> RecordingDocuments:
    return RecordingDocuments()


@pytest.fixture
def departments() -> RecordingDepartments:
    return RecordingDepartments()


@pytest.fixture
def agents() -> RecordingAgents:
    return RecordingAgents()


@pytest.fixture
def option_provider() -> StaticOptions:
    return StaticOptions({
        "beneficiaries": [
            Option(text="1.- Ana Pérez", value="1", order_index=1,
                   arguments={"beneficiary_name": "Ana Pérez"}),
            Option(text="2.- Luis Gómez", value="2", order_index=2,
                   arguments={"beneficiary_name": "Luis Gómez"}),
        ],
    })


@pytest.fixture
def sink() -> IntentSink:
    return IntentSink()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(default_flow_id="main")


@pytest.fixture
def timeout_config() -> TimeoutConfig:
    return TimeoutConfig()


@pytest.fixture
def messages() -> MessagesConfig:
    return MessagesConfig()


@pytest.fixture
def scheduler(clock) -> TimeoutScheduler:
    return TimeoutScheduler(SessionLocks(), sleep=clock.sleep)


@pytest_asyncio.fixture
async def engine(flow_cache, store, scheduler, sender, documents, departments, agents,
                 option_provider, sink, engine_config, timeout_config, messages):
    executor = ActionExecutor(
        message_sender=sender,
        document_sender=documents,
        department_router=departments,
        agent_router=agents,
        failure_message=messages.action_failure,
    )
    dialog = DialogEngine(
        flow_cache=flow_cache,
        session_store=store,
        action_executor=executor,
        scheduler=scheduler,
        option_provider=option_provider,
        agent_router=agents,
        timeout_sink=sink,
        config=engine_config,
        timeout_config=timeout_config,
        messages=messages,
    )
    yield dialog
    await scheduler.shutdown()
    await flow_cache.close()
