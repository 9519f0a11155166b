"""
Conversation engine - node-graph state machine driven by inbound messages.

A conversation is absent until the first inbound message from a chat, then
sits on one node of the published flow until a match leads nowhere, its
current node disappears, its upsell timer fires, or a global reset happens.

Each conversation owns two timers:
- inactivity: repeating nudge with the flow's inactivityMessage
- upsell: one-shot per-node message, after which the conversation ends
"""
import functools
from typing import Any, Dict, List, Optional

from core.alerts import notify_error
from core.config import Config
from core.logging import get_logger, set_request_context
from .matcher import match_option
from .models import AwaitingOption, ChatId, ConversationState, FlowDefinition, Node, Option
from .normalizer import FlowValidationError, normalize_flow, normalize_text
from .store import ConversationStore

logger = get_logger(__name__)


class ConversationEngine:
    """
    Runs the published flow for every chat.

    Args:
        sender: Transport with `async send_message(chat_id, text) -> dict`
                returning {'success': bool, 'error': str}
        inactivity_timeout_seconds: Override for the repeating inactivity
                nudge (defaults to Config)
    """

    def __init__(self, sender, inactivity_timeout_seconds: Optional[float] = None):
        self.sender = sender
        self.store = ConversationStore()
        if inactivity_timeout_seconds is None:
            inactivity_timeout_seconds = Config.get_inactivity_timeout_seconds()
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self._flow: Optional[FlowDefinition] = None

    @property
    def current_flow(self) -> Optional[FlowDefinition]:
        return self._flow

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    async def publish_flow(self, document: Any) -> Dict[str, Any]:
        """
        Replace the published flow and reset every conversation.

        Returns:
            {'success': True, 'flow': <normalized flow dict>} or
            {'success': False, 'error': <reason>} when the document is invalid;
            in that case the previous flow and conversations are untouched.
        """
        try:
            flow = normalize_flow(document)
        except FlowValidationError as e:
            logger.warning(f"Flow publish rejected: {e}")
            return {'success': False, 'error': str(e)}

        async with self.store.exclusive():
            self._flow = flow
            dropped = self.store.clear()

        logger.info(
            f"Flow published: version={flow.version}, nodes={len(flow.nodes)}, "
            f"start={flow.start_node_id}, reset {dropped} conversation(s)"
        )
        return {'success': True, 'flow': flow.to_dict()}

    async def reset(self, reason: str = 'reset') -> int:
        """Drop every conversation and cancel all timers."""
        async with self.store.exclusive():
            dropped = self.store.clear()
        logger.info(f"Conversations reset ({reason}): dropped {dropped}")
        return dropped

    async def handle_disconnect(self, reason: Optional[str] = None) -> int:
        logger.warning(f"Transport disconnected: {reason or 'unknown reason'}")
        return await self.reset(f"transport disconnected: {reason or 'unknown'}")

    def list_active_conversations(self) -> List[Dict[str, Any]]:
        return [state.to_dict() for state in self.store.values()]

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_inbound_message(self, chat_id: ChatId, text: Any, from_self: bool = False) -> bool:
        """
        Apply one inbound message to the chat's conversation.

        Returns:
            True if the message was acted on, False if it was ignored
        """
        if from_self:
            return False

        set_request_context(chat_id=chat_id)

        async with self.store.session(chat_id):
            return await self._process_inbound(chat_id, text)

    async def _process_inbound(self, chat_id: ChatId, text: Any) -> bool:
        flow = self._flow
        if flow is None or flow.start_node is None:
            logger.debug("No published flow with a start node, ignoring message")
            return False

        normalized = normalize_text(text)
        if not normalized:
            return False

        state = self.store.get(chat_id)
        if state is None:
            await self._start_conversation(chat_id, flow)
            return True

        awaiting = state.awaiting_option
        if awaiting and awaiting.followup_trigger_normalized:
            if (normalized == awaiting.followup_trigger_normalized
                    and normalized != awaiting.expected_reply_normalized):
                if awaiting.followup_message:
                    logger.info(f"Followup trigger '{normalized}' typed, sending followup")
                    await self._send(chat_id, awaiting.followup_message)

        state.touch()
        self._arm_inactivity(chat_id, state)

        node = flow.get_node(state.current_node_id)
        if node is None:
            logger.info(f"Current node '{state.current_node_id}' no longer exists, ending conversation")
            self._end_conversation(chat_id, state, 'current node missing')
            return True

        option = match_option(normalized, node.options)
        if option is None:
            await self._send(chat_id, node.default_reply or node.text)
            self._arm_upsell(chat_id, state, node)
            return True

        await self._apply_match(chat_id, state, flow, node, option)
        return True

    async def _start_conversation(self, chat_id: ChatId, flow: FlowDefinition) -> ConversationState:
        start_node = flow.start_node
        state = self.store.upsert(ConversationState(chat_id=chat_id, current_node_id=start_node.id))
        logger.info(f"Conversation started at node '{start_node.id}'")

        await self._send(chat_id, start_node.text)
        self._arm_inactivity(chat_id, state)
        self._arm_upsell(chat_id, state, start_node)
        return state

    async def _apply_match(self, chat_id: ChatId, state: ConversationState,
                           flow: FlowDefinition, node: Node, option: Option) -> None:
        logger.info(f"Matched option '{option.label}' on node '{node.id}'")

        if option.reply_message:
            await self._send(chat_id, option.reply_message)

        state.awaiting_option = AwaitingOption(
            expected_reply_normalized=normalize_text(option.reply_message) if option.reply_message else None,
            option_label_normalized=option.normalized_label or None,
            followup_trigger_normalized=option.followup_trigger_normalized,
            followup_message=option.followup_message,
        )

        if node.has_upsell:
            self._arm_upsell(chat_id, state, node)

        next_node = flow.get_node(option.next_node_id)
        if next_node is None:
            if option.next_node_id:
                logger.info(f"Next node '{option.next_node_id}' does not exist, ending conversation")
            self._end_conversation(chat_id, state, 'no next node')
            return

        state.current_node_id = next_node.id
        state.awaiting_option = None
        logger.info(f"Advanced '{node.id}' -> '{next_node.id}'")
        await self._send(chat_id, next_node.text)
        self._arm_upsell(chat_id, state, next_node)

    def _end_conversation(self, chat_id: ChatId, state: ConversationState, reason: str) -> None:
        if self.store.delete(chat_id, state):
            logger.info(f"Conversation ended ({reason})")

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_inactivity(self, chat_id: ChatId, state: ConversationState) -> None:
        if state.closed:
            return
        state.inactivity_timer.arm(
            self.inactivity_timeout_seconds,
            functools.partial(self._on_inactivity, chat_id, state),
        )

    def _arm_upsell(self, chat_id: ChatId, state: ConversationState, node: Node) -> None:
        """Replace any pending upsell with `node`'s; nodes without an upsell just cancel it."""
        state.upsell_timer.cancel()
        if state.closed or not node.has_upsell:
            return
        state.upsell_timer.arm(
            node.upsell_delay_seconds,
            functools.partial(self._on_upsell, chat_id, state, node),
        )

    async def _on_inactivity(self, chat_id: ChatId, state: ConversationState, token: int) -> None:
        set_request_context(chat_id=chat_id)
        async with self.store.session(chat_id):
            if not self.store.is_live(chat_id, state) or not state.inactivity_timer.is_current(token):
                logger.debug("Stale inactivity timer, skipping")
                return

            flow = self._flow
            message = flow.inactivity_message if flow else None
            logger.info("Inactivity timeout, re-engaging")
            await self._send(chat_id, message)
            state.touch()
            self._arm_inactivity(chat_id, state)

    async def _on_upsell(self, chat_id: ChatId, state: ConversationState, node: Node, token: int) -> None:
        set_request_context(chat_id=chat_id)
        async with self.store.session(chat_id):
            if not self.store.is_live(chat_id, state) or not state.upsell_timer.is_current(token):
                logger.debug("Stale upsell timer, skipping")
                return

            logger.info(f"Upsell timeout on node '{node.id}'")
            await self._send(chat_id, node.upsell_message)
            self._end_conversation(chat_id, state, 'upsell sent')

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, chat_id: ChatId, text: Optional[str]) -> bool:
        """Best-effort send. Failures are logged and reported, never raised."""
        if not text:
            logger.debug("Nothing to send (empty text)")
            return False

        try:
            result = await self.sender.send_message(chat_id, text)
        except Exception as e:
            logger.exception(f"Send to chat={chat_id} raised: {e}")
            notify_error(f"Send failed: {e}", chat_id=chat_id)
            return False

        if result and result.get('success'):
            return True

        error = (result or {}).get('error', 'unknown error')
        logger.error(f"Send to chat={chat_id} failed: {error}")
        notify_error(f"Send failed: {error}", chat_id=chat_id)
        return False
