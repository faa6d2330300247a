"""
Dialog Engine — drives one conversation turn at a time.

    engine = DialogEngine(flow_cache, session_store, action_executor=..., ...)
    reply = await engine.handle_inbound_message(contact_id, connection_id, text="hola")
    await dispatcher.deliver(reply.intents)

States (per contact + connection):

  Idle ──inbound──▶ trigger/default flow ──▶ root node
  AwaitingNodeInput(n) ──reply──▶ menu option / prompt answer / form field
  CollectingField(n, cursor) ──valid reply──▶ next field … ──last──▶ form.next
  ExecutingActions(n) ──ok──▶ n.next | Terminated ; ──failure──▶ parked at n
  any waiting node ──"0"──▶ root of the main flow, fields discarded
  AwaitingNodeInput(n) ──timer──▶ n.timeout_next | configured fallback

Entering a node:
  1. condition → resolve immediately, no input consumed
  2. present content (menu options, first form field)
  3. has_actions → ActionExecutor (failure parks the session at the node)
  4. is_final → Terminated
  5. waits for input → stop here, arm the reply timer if wait_for_input
  6. otherwise continue to `next`, or end the flow

Every inbound message and every timer expiry runs under the same
per-session lock (see engine/locks.py and engine/timeouts.py). Sessions
of different contacts never wait on each other.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from channels.base import AgentRouter, OptionProvider
from config.settings import EngineConfig, MessagesConfig, TimeoutConfig
from database.store_base import SessionStore
from engine.actions import ERROR_STAGE, ActionExecutor
from engine.conditions import ConditionEvaluator
from engine.errors import DialogError, FlowNotFound, FormValidationError, InvalidOption
from engine.forms import FormCollector, validate_value
from engine.timeouts import TimeoutScheduler
from engine.locks import SessionLocks
from flows.cache import FlowCache
from flows.compiler import FlowGraph
from flows.triggers import TriggerSelector
from models.schemas import (
    Button, ConditionNode, FormNode, InboundMessage, IntentKind, MediaRef,
    MenuNode, NodeBase, Option, OutboundIntent, PromptNode,
    Session, SessionStatus, session_key,
)
from utils.templating import render

logger = structlog.get_logger()


class DialogState(str, Enum):
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_node_input"
    COLLECTING_FIELD = "collecting_field"
    EXECUTING_ACTIONS = "executing_actions"
    TERMINATED = "terminated"


class IntentSink(Protocol):
    async def deliver(self, intents: list[OutboundIntent]) -> Any: ...


@dataclass
class EngineReply:
    """Result of one turn: what to send, and the session as it was persisted."""
    intents: list[OutboundIntent] = field(default_factory=list)
    session: Optional[Session] = None
    state: DialogState = DialogState.IDLE
    error: Optional[DialogError] = None

    @property
    def texts(self) -> list[str]:
        return [i.text for i in self.intents if i.text]


class _Turn:
    """Collects outbound intents for one turn."""

    def __init__(self, to: str, connection_id: str):
        self.to = to
        self.connection_id = connection_id
        self.intents: list[OutboundIntent] = []
        self.error: Optional[DialogError] = None

    def say(self, text: str, **metadata) -> None:
        if text:
            self.intents.append(OutboundIntent(
                to=self.to, connection_id=self.connection_id, text=text, metadata=metadata))

    def buttons(self, text: str, options: list[Option], **metadata) -> None:
        self.intents.append(OutboundIntent(
            kind=IntentKind.BUTTONS, to=self.to, connection_id=self.connection_id,
            text=text, buttons=[Button(id=o.value, title=o.text) for o in options],
            metadata=metadata))


class DialogEngine:

    def __init__(
        self,
        flow_cache: FlowCache,
        session_store: SessionStore,
        action_executor: Optional[ActionExecutor] = None,
        scheduler: Optional[TimeoutScheduler] = None,
        option_provider: Optional[OptionProvider] = None,
        agent_router: Optional[AgentRouter] = None,
        timeout_sink: Optional[IntentSink] = None,
        config: Optional[EngineConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        messages: Optional[MessagesConfig] = None,
    ):
        """
        Args:
            flow_cache:       shared FlowCache (the only cross-session resource)
            session_store:    SessionStore port
            action_executor:  runs node actions; a port-less executor by default
            scheduler:        reply timers; its SessionLocks serialise every turn
            option_provider:  source for menus with dynamic_options
            agent_router:     used for invalid-option / timeout escalation
            timeout_sink:     receives intents produced by timer expiries
        """
        self.config = config or EngineConfig()
        self.timeout_config = timeout_config or TimeoutConfig()
        self.messages = messages or MessagesConfig()
        self._cache = flow_cache
        self._store = session_store
        self._scheduler = scheduler or TimeoutScheduler(SessionLocks())
        self._locks = self._scheduler.locks
        self._actions = action_executor or ActionExecutor(failure_message=self.messages.action_failure)
        self._triggers = TriggerSelector(flow_cache)
        self._forms = FormCollector()
        self._conditions = ConditionEvaluator()
        self._option_provider = option_provider
        self._agent_router = agent_router
        self._timeout_sink = timeout_sink

    @property
    def scheduler(self) -> TimeoutScheduler:
        return self._scheduler

    # ══════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def handle_inbound_message(
        self,
        contact_id: str,
        connection_id: str,
        text: Optional[str] = None,
        media: Optional[MediaRef] = None,
    ) -> EngineReply:
        inbound = InboundMessage(contact_id=contact_id, connection_id=connection_id,
                                 text=text or "", media=media)
        return await self.handle(inbound)

    async def handle(self, inbound: InboundMessage) -> EngineReply:
        sid = session_key(inbound.connection_id, inbound.contact_id)
        async with self._locks.hold(sid):
            return await self._handle_inbound(inbound)

    async def handle_timeout(self, session_id: str, token: str = "") -> EngineReply:
        """
        Apply the reply-timeout fallback now (for callers running their own
        timers, e.g. a sweeper after a restart). No-op unless the session is
        waiting on a timer, and, when `token` is given, on that exact timer.
        """
        async with self._locks.hold(session_id):
            session = await self._store.get_by_id(session_id)
            if session is None or session.is_terminated or not session.timeout_token:
                return EngineReply(session=session, state=self._state_of(None, session))
            if token and token != session.timeout_token:
                return EngineReply(session=session, state=DialogState.AWAITING_INPUT)
            self._scheduler.cancel(session_id)
            return await self._apply_timeout(session)

    async def release(self, contact_id: str, connection_id: str) -> bool:
        """
        Hand a transferred conversation back to the bot. The session is
        dropped, so the contact's next message starts from flow selection.
        False if there was no transferred session to release.
        """
        sid = session_key(connection_id, contact_id)
        async with self._locks.hold(sid):
            session = await self._store.get_by_id(sid)
            if session is None or session.status != SessionStatus.TRANSFERRED:
                return False
            await self._store.delete(sid)
            logger.info("session_released", session_id=sid, flow_id=session.flow_id,
                        node_id=session.current_node_id)
            return True

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def _handle_inbound(self, inbound: InboundMessage) -> EngineReply:
        session = await self._store.get(inbound.contact_id, inbound.connection_id)
        if session is not None:
            # real input always disarms the pending reply timer
            self._scheduler.cancel(session.id)
            session.timeout_token = ""
            if session.status == SessionStatus.TRANSFERRED:
                # a human owns the conversation until release()
                logger.info("session_in_handoff", session_id=session.id,
                            flow_id=session.flow_id, node_id=session.current_node_id)
                return EngineReply(session=session.model_copy(deep=True),
                                   state=DialogState.TERMINATED)
            if session.is_terminated:
                await self._store.delete(session.id)
                session = None

        if session is None or not session.flow_id:
            return await self._start(inbound, session)

        turn = _Turn(session.contact_id, session.connection_id)
        session.touch()
        graph = await self._graph_for(session)
        if graph is None:
            logger.warning("session_flow_unavailable", session_id=session.id,
                           flow_id=session.flow_id, node_id=session.current_node_id)
            graph = await self._restart_main(session, turn)
            return await self._finish(session, turn, graph)

        body = inbound.body
        if body and body == self.config.cancel_keyword:
            logger.info("dialog_cancelled_to_root", session_id=session.id,
                        flow_id=session.flow_id, node_id=session.current_node_id)
            graph = await self._restart_main(session, turn)
        else:
            await self._consume(graph, session, inbound, turn)
        return await self._finish(session, turn, graph)

    async def _start(self, inbound: InboundMessage, session: Optional[Session]) -> EngineReply:
        turn = _Turn(inbound.contact_id, inbound.connection_id)
        flow_id = await self._triggers.select_flow(inbound.connection_id, inbound.body)
        if flow_id is None:
            flow_id = self._main_flow_id(inbound.connection_id)
            if flow_id:
                logger.info("default_flow_selected", connection_id=inbound.connection_id,
                            flow_id=flow_id)

        graph = await self._load(flow_id) if flow_id else None
        if graph is None:
            error = FlowNotFound(inbound.connection_id, flow_id or "")
            logger.error("flow_not_found", contact_id=inbound.contact_id,
                         connection_id=inbound.connection_id, flow_id=flow_id)
            turn.say(self.messages.flow_not_found)
            return EngineReply(intents=turn.intents, state=DialogState.IDLE, error=error)

        if session is None:
            session = Session(contact_id=inbound.contact_id, connection_id=inbound.connection_id)
        session.switch_flow(graph.id)
        session.status = SessionStatus.ACTIVE
        session.stage = "initial"
        session.touch()
        logger.info("flow_selected", session_id=session.id, flow_id=graph.id)

        await self._enter(graph, session, graph.root_node_id, turn)
        return await self._finish(session, turn, graph)

    async def _consume(self, graph: FlowGraph, session: Session,
                       inbound: InboundMessage, turn: _Turn) -> None:
        node = graph.node(session.current_node_id)

        if session.stage == ERROR_STAGE:
            logger.info("node_retry_after_error", session_id=session.id, node_id=node.id)
            await self._enter(graph, session, node.id, turn)
            return

        if isinstance(node, MenuNode):
            await self._on_menu_reply(graph, session, node, inbound, turn)

        elif isinstance(node, FormNode):
            step = self._forms.advance(node, session, inbound)
            if step.error is not None:
                turn.error = step.error
                turn.say(render(self.messages.form_invalid, {"reason": step.error.reason}))
                turn.say(step.prompt)
            elif step.completed:
                await self._advance_to(graph, session, step.next_node_id, turn)
            else:
                turn.say(step.prompt)

        elif isinstance(node, PromptNode):
            try:
                value = validate_value(node.as_field(), inbound)
            except FormValidationError as e:
                logger.warning("prompt_reply_invalid", session_id=session.id,
                               node_id=node.id, reason=e.reason)
                turn.error = e
                turn.say(render(self.messages.form_invalid, {"reason": e.reason}))
                turn.say(render(node.content, session.template_context()))
                return
            session.field_values[node.field or node.id] = value
            await self._advance_to(graph, session, node.next, turn)

        elif isinstance(node, ConditionNode):
            await self._enter(graph, session, node.id, turn)

        else:
            await self._advance_to(graph, session, node.next, turn)

    async def _on_menu_reply(self, graph: FlowGraph, session: Session, node: MenuNode,
                             inbound: InboundMessage, turn: _Turn) -> None:
        # injected options persisted before a flow reload may point at removed nodes
        options = [o for o in self._options_for(node, session)
                   if not o.next_node_id or o.next_node_id in graph]
        body = inbound.body
        choice = next((o for o in options if o.value == body), None)

        if choice is None:
            session.invalid_attempts += 1
            valid = [o.value for o in options]
            turn.error = InvalidOption(body, valid, session.id, node.id)
            logger.warning("invalid_option_selected", session_id=session.id, node_id=node.id,
                           value=body, valid=valid, attempts=session.invalid_attempts)
            turn.say(render(self.messages.invalid_option, {"valid_options": ", ".join(valid)}))
            limit = self.config.max_invalid_attempts
            if limit and session.invalid_attempts >= limit:
                await self._escalate(session, turn, reason="invalid_option_limit",
                                     fallback=self.config.invalid_option_fallback)
            return

        session.invalid_attempts = 0
        if choice.arguments:
            session.variables.update(choice.arguments)
        if node.field:
            session.field_values[node.field] = choice.value
        logger.info("option_selected", session_id=session.id, node_id=node.id,
                    value=choice.value, next=choice.next_node_id or node.next)
        await self._advance_to(graph, session, choice.next_node_id or node.next, turn)

    # ══════════════════════════════════════════════════════════
    #  NODE TRAVERSAL
    # ══════════════════════════════════════════════════════════

    async def _advance_to(self, graph: FlowGraph, session: Session,
                          node_id: str, turn: _Turn) -> None:
        if not node_id:
            self._terminate(session, reason="flow_end")
            return
        await self._enter(graph, session, node_id, turn)

    async def _enter(self, graph: FlowGraph, session: Session,
                     node_id: str, turn: _Turn) -> None:
        steps = 0
        while node_id:
            steps += 1
            if steps > self.config.max_steps_per_turn:
                logger.error("max_steps_exceeded", session_id=session.id,
                             flow_id=graph.id, node_id=node_id)
                session.stage = ERROR_STAGE
                turn.say(self.messages.action_failure)
                return

            node = graph.node(node_id)
            self._set_current(session, node)

            if not isinstance(node, ConditionNode):
                if not await self._present(graph, node, session, turn):
                    return

            waits = node.awaits_input
            if node.has_actions:
                outcome = await self._actions.execute(node, session)
                turn.intents.extend(outcome.intents)
                if outcome.error is not None:
                    turn.error = outcome.error
                    return
                if outcome.terminated:
                    self._terminate(session, reason="end_conversation")
                    return
                if outcome.transferred:
                    turn.say(self.messages.handoff)
                    self._terminate(session, reason="transferred")
                    return
                waits = waits or outcome.wait_for_input

            if isinstance(node, ConditionNode):
                node_id = self._conditions.resolve(node, session)
                continue

            if node.is_final:
                self._terminate(session, reason="final_node")
                return
            if waits:
                return
            if not node.next:
                self._terminate(session, reason="flow_end")
                return
            node_id = node.next

    def _set_current(self, session: Session, node: NodeBase) -> None:
        if session.current_node_id != node.id:
            session.option_overrides.clear()
            session.invalid_attempts = 0
        session.current_node_id = node.id
        if node.stage:
            session.stage = node.stage
        elif session.stage == ERROR_STAGE:
            session.stage = node.type

    async def _present(self, graph: FlowGraph, node: NodeBase, session: Session,
                       turn: _Turn) -> bool:
        """Queue the node's outbound content. False if the node could not be shown."""
        ctx = session.template_context()
        text = render(node.content, ctx)

        if isinstance(node, MenuNode):
            try:
                options = await self._load_options(graph, node, session)
            except Exception as e:
                logger.error("dynamic_options_failed", session_id=session.id,
                             node_id=node.id, source=node.dynamic_options, error=str(e))
                session.stage = ERROR_STAGE
                turn.say(self.messages.action_failure)
                return False
            if node.present_as == "buttons":
                turn.buttons(text, options, node_id=node.id)
            else:
                lines = [render(o.text, {**ctx, **o.arguments}) for o in options]
                turn.say("\n".join([t for t in [text, *lines] if t]), node_id=node.id)

        elif isinstance(node, FormNode):
            turn.say(text, node_id=node.id)
            turn.say(self._forms.start(node, session), node_id=node.id,
                     field=node.fields[0].field)

        else:
            turn.say(text, node_id=node.id)
        return True

    async def _load_options(self, graph: FlowGraph, node: MenuNode,
                            session: Session) -> list[Option]:
        if node.dynamic_options:
            if self._option_provider is None:
                raise RuntimeError(f"no option provider for '{node.dynamic_options}'")
            fetched = await self._option_provider.fetch(node.dynamic_options, session)
            options = []
            for option in fetched:
                target = option.next_node_id or node.next
                if target and target not in graph:
                    logger.warning("dynamic_option_dropped", session_id=session.id,
                                   node_id=node.id, value=option.value, target=target)
                    continue
                options.append(option)
            if fetched and not options:
                raise DialogError(f"no option from '{node.dynamic_options}' leads into "
                                  f"flow '{graph.id}'", session.id, node.id)
            session.option_overrides[node.id] = options
            logger.info("dynamic_options_injected", session_id=session.id,
                        node_id=node.id, source=node.dynamic_options, count=len(options))
        return self._options_for(node, session)

    @staticmethod
    def _options_for(node: MenuNode, session: Session) -> list[Option]:
        options = session.option_overrides.get(node.id)
        if options is None:
            options = list(node.options)
        return sorted(options, key=lambda o: o.order_index)

    # ══════════════════════════════════════════════════════════
    #  TIMEOUTS
    # ══════════════════════════════════════════════════════════

    async def _on_timer(self, session_id: str, token: str) -> None:
        """Scheduler callback; runs with the session lock already held."""
        session = await self._store.get_by_id(session_id)
        if session is None or session.is_terminated or session.timeout_token != token:
            logger.debug("timeout_ignored", session_id=session_id)
            return
        reply = await self._apply_timeout(session)
        if self._timeout_sink is not None and reply.intents:
            await self._timeout_sink.deliver(reply.intents)

    async def _apply_timeout(self, session: Session) -> EngineReply:
        turn = _Turn(session.contact_id, session.connection_id)
        session.timeout_token = ""
        session.touch()
        graph = await self._graph_for(session)
        node = graph.get(session.current_node_id) if graph else None
        logger.info("timeout_fallback", session_id=session.id, flow_id=session.flow_id,
                    node_id=session.current_node_id,
                    target=node.timeout_next if node and node.timeout_next else self.timeout_config.fallback)

        if graph is not None and node is not None and node.timeout_next:
            await self._enter(graph, session, node.timeout_next, turn)
            return await self._finish(session, turn, graph)

        graph = await self._escalate(session, turn, reason="timeout",
                                     fallback=self.timeout_config.fallback, graph=graph)
        return await self._finish(session, turn, graph)

    def _arm(self, graph: Optional[FlowGraph], session: Session) -> None:
        node = graph.get(session.current_node_id) if graph else None
        session.timeout_token = ""
        if node is None or not node.wait_for_input or session.stage == ERROR_STAGE:
            return
        seconds = node.timeout_seconds or self.config.default_timeout_seconds
        if seconds and seconds > 0:
            session.timeout_token = self._scheduler.arm(session.id, seconds, self._on_timer)

    # ══════════════════════════════════════════════════════════
    #  FALLBACKS
    # ══════════════════════════════════════════════════════════

    async def _escalate(self, session: Session, turn: _Turn, reason: str, fallback: str,
                        graph: Optional[FlowGraph] = None) -> Optional[FlowGraph]:
        """Apply an escalation path. Returns the graph the session ends up on."""
        if fallback == "agent" and self._agent_router is not None:
            try:
                await self._agent_router.transfer({"reason": reason}, session)
            except Exception as e:
                logger.error("escalation_transfer_failed", session_id=session.id,
                             reason=reason, error=str(e))
            else:
                session.status = SessionStatus.TRANSFERRED
                session.variables["handoff"] = {"target": "agent", "reason": reason}
                turn.say(self.messages.handoff)
                self._terminate(session, reason=reason)
                return graph

        if fallback == "end":
            turn.say(self.messages.goodbye)
            self._terminate(session, reason=reason)
            return graph

        if reason == "timeout":
            main_id = self._main_flow_id(session.connection_id) or session.flow_id
            main = await self._load(main_id)
            if main is not None and session.flow_id == main.id \
                    and session.current_node_id == main.root_node_id:
                # already idle at the main menu; stop instead of re-prompting forever
                turn.say(self.messages.goodbye)
                self._terminate(session, reason="timeout_at_root")
                return graph
            turn.say(self.messages.timeout_notice)
        return await self._restart_main(session, turn)

    async def _restart_main(self, session: Session, turn: _Turn) -> Optional[FlowGraph]:
        """Back to the root of the main flow with a clean slate."""
        candidates = [self._main_flow_id(session.connection_id), session.flow_id]
        for flow_id in filter(None, candidates):
            graph = await self._load(flow_id)
            if graph is None:
                continue
            session.switch_flow(graph.id)
            session.stage = "initial"
            await self._enter(graph, session, graph.root_node_id, turn)
            return graph

        logger.error("flow_not_found", session_id=session.id, candidates=candidates)
        turn.error = FlowNotFound(session.connection_id)
        turn.say(self.messages.flow_not_found)
        self._terminate(session, reason="flow_not_found")
        return None

    def _terminate(self, session: Session, reason: str) -> None:
        if session.status == SessionStatus.ACTIVE:
            session.status = SessionStatus.ENDED
        self._scheduler.cancel(session.id)
        session.timeout_token = ""
        logger.info("session_terminated", session_id=session.id, flow_id=session.flow_id,
                    node_id=session.current_node_id, status=session.status.value, reason=reason)

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    def _main_flow_id(self, connection_id: str) -> str:
        return self.config.default_flows.get(connection_id) or self.config.default_flow_id

    async def _load(self, flow_id: str) -> Optional[FlowGraph]:
        try:
            return await self._cache.get_flow(flow_id)
        except FlowNotFound:
            return None

    async def _graph_for(self, session: Session) -> Optional[FlowGraph]:
        graph = await self._load(session.flow_id)
        if graph is None or session.current_node_id not in graph:
            return None
        return graph

    async def _finish(self, session: Session, turn: _Turn,
                      graph: Optional[FlowGraph]) -> EngineReply:
        if session.status == SessionStatus.ENDED:
            await self._store.delete(session.id)
        elif session.status == SessionStatus.TRANSFERRED:
            await self._store.save(session)
        else:
            self._arm(graph, session)
            await self._store.save(session)
        return EngineReply(
            intents=turn.intents,
            session=session.model_copy(deep=True),
            state=self._state_of(graph, session),
            error=turn.error,
        )

    @staticmethod
    def _state_of(graph: Optional[FlowGraph], session: Optional[Session]) -> DialogState:
        if session is None:
            return DialogState.IDLE
        if session.is_terminated:
            return DialogState.TERMINATED
        if session.stage == ERROR_STAGE:
            # parked at a node whose actions or options failed; the next reply retries it
            return DialogState.EXECUTING_ACTIONS
        node = graph.get(session.current_node_id) if graph else None
        if isinstance(node, FormNode) and 1 <= session.form_cursor <= len(node.fields):
            return DialogState.COLLECTING_FIELD
        return DialogState.AWAITING_INPUT
