"""End-to-end tests through ChatbotService wiring."""
import pytest
import pytest_asyncio

from config.settings import Settings
from core.service import ChatbotService, Ports, create_flow_repository
from flows.repository import InMemoryFlowRepository, YamlFlowRepository
from models.schemas import InboundMessage, SessionStatus


@pytest_asyncio.fixture
async def service(flow_docs, sender, departments, clock):
    settings = Settings()
    settings.engine.default_flow_id = "main"
    svc = ChatbotService(
        settings,
        Ports(message_sender=sender, department_router=departments),
        repository=InMemoryFlowRepository(flow_docs),
        sleep=clock.sleep,
        clock=clock,
    )
    await svc.start()
    yield svc
    await svc.close()


def msg(text: str) -> InboundMessage:
    return InboundMessage(contact_id="584121234567", connection_id="1", text=text)


class TestChatbotService:
    @pytest.mark.asyncio
    async def test_turn_is_delivered(self, service, sender):
        report = await service.handle(msg("hola"))
        assert report.ok
        assert sender.texts[0].startswith("Welcome! Choose an option:")
        assert "2.- Support" in sender.texts[0]

    @pytest.mark.asyncio
    async def test_support_branch_transfers_and_ends(self, service, sender, departments):
        await service.handle(msg("hola"))
        await service.handle(msg("2"))
        assert "Ticket opened for 584121234567" in sender.texts
        assert sender.texts[-2:] == ["Connecting you with support",
                                     service.settings.messages.handoff]
        assert departments.transfers[0][1] == {"department_id": "support"}
        session = await service.store.get("584121234567", "1")
        assert session.status == SessionStatus.TRANSFERRED

    @pytest.mark.asyncio
    async def test_bot_stays_quiet_until_released(self, service, sender):
        await service.handle(msg("hola"))
        await service.handle(msg("2"))
        sent = len(sender.sent)
        report = await service.handle(msg("are you there?"))
        assert report.ok
        assert len(sender.sent) == sent

        assert await service.release("584121234567", "1")
        await service.handle(msg("hola"))
        assert sender.texts[-1].startswith("Welcome! Choose an option:")

    @pytest.mark.asyncio
    async def test_process_returns_reply_without_sending(self, service, sender):
        reply = await service.process(msg("hola"))
        assert reply.texts
        assert sender.sent == []


class TestFlowRepositoryFactory:
    def test_yaml_source(self, tmp_path):
        settings = Settings()
        settings.flows.path = str(tmp_path)
        assert isinstance(create_flow_repository(settings), YamlFlowRepository)

    def test_unknown_source(self):
        settings = Settings()
        settings.flows.source = "graphql"
        with pytest.raises(ValueError, match="Unsupported flow source"):
            create_flow_repository(settings)
