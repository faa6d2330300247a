"""Tests for the node ActionExecutor."""
import pytest

from channels.base import ChannelError
from engine.actions import ERROR_STAGE, ActionExecutor
from models.schemas import ActionType, NodeAction, ResponseNode, Session, SessionStatus


def node_with(*actions) -> ResponseNode:
    return ResponseNode(id="n1", has_actions=True, actions=tuple(
        NodeAction(type=t, config=cfg, execution_order=i) for i, (t, cfg) in enumerate(actions, 1)
    ))


@pytest.fixture
def session() -> Session:
    return Session(contact_id="584121234567", connection_id="1", variables={"name": "Ana"})


@pytest.fixture
def executor(sender, documents, departments, agents) -> ActionExecutor:
    return ActionExecutor(sender, documents, departments, agents, failure_message="Sorry!")


class TestActionExecutor:
    @pytest.mark.asyncio
    async def test_runs_actions_in_execution_order(self, executor, sender, documents, session):
        node = ResponseNode(id="n1", has_actions=True, actions=(
            NodeAction(type=ActionType.SEND_DOCUMENT, config={"document_id": "rates"}, execution_order=2),
            NodeAction(type=ActionType.SEND_MESSAGE, config={"text": "Hi {{name}}"}, execution_order=1),
        ))
        outcome = await executor.execute(node, session)
        assert outcome.ok
        assert outcome.executed == [ActionType.SEND_MESSAGE, ActionType.SEND_DOCUMENT]
        assert sender.texts == ["Hi Ana"]
        assert documents.sent == [{"document_id": "rates"}]

    @pytest.mark.asyncio
    async def test_failure_stops_remaining_actions(self, executor, sender, departments, session):
        sender.fail_with = ChannelError("rate limited", channel="whatsapp")
        node = node_with(
            (ActionType.SEND_MESSAGE, {"text": "Ticket"}),
            (ActionType.TRANSFER_DEPARTMENT, {"department_id": "support"}),
        )
        outcome = await executor.execute(node, session)
        assert not outcome.ok
        assert outcome.error.action_type == "send_message"
        assert outcome.executed == []
        assert departments.transfers == []
        assert session.stage == ERROR_STAGE
        assert [i.text for i in outcome.intents] == ["Sorry!"]

    @pytest.mark.asyncio
    async def test_missing_port_is_a_failure(self, session):
        outcome = await ActionExecutor().execute(
            node_with((ActionType.SEND_DOCUMENT, {"document_id": "x"})), session)
        assert isinstance(outcome.error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_transfer_marks_session(self, executor, agents, session):
        outcome = await executor.execute(node_with((ActionType.TRANSFER_AGENT, {"agent_id": "7"})), session)
        assert outcome.transferred
        assert session.status == SessionStatus.TRANSFERRED
        assert session.variables["handoff"] == {"target": "agent", "agent_id": "7"}
        assert agents.transfers == [(session.id, {"agent_id": "7"})]

    @pytest.mark.asyncio
    async def test_end_conversation_skips_later_actions(self, executor, sender, session):
        node = node_with(
            (ActionType.END_CONVERSATION, {"message": "Bye {{name}}"}),
            (ActionType.SEND_MESSAGE, {"text": "never sent"}),
        )
        outcome = await executor.execute(node, session)
        assert outcome.terminated
        assert session.status == SessionStatus.ENDED
        assert sender.texts == []
        assert [i.text for i in outcome.intents] == ["Bye Ana"]

    @pytest.mark.asyncio
    async def test_wait_input_marks_node_waiting(self, executor, session):
        outcome = await executor.execute(node_with((ActionType.WAIT_INPUT, {})), session)
        assert outcome.wait_for_input
        assert not outcome.terminated
