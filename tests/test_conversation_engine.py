"""
Tests for the conversation engine.
Covers: creation turn, matching and transitions, fallback, followups,
inactivity and upsell timers, publish/reset, send failures.
"""
import asyncio
from unittest.mock import patch

import pytest

from domains.flows.engine import ConversationEngine

CHAT = 1001

# 0.001 minutes == 60ms
SHORT_UPSELL_MINUTES = 0.001


class FakeSender:
    """Records sends; can be told to fail or raise."""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.raise_error = False

    async def send_message(self, chat_id, text):
        if self.raise_error:
            raise ConnectionError('socket closed')
        if self.fail:
            return {'success': False, 'error': 'Not connected'}
        self.sent.append((chat_id, text))
        return {'success': True, 'message_id': len(self.sent)}

    def texts(self, chat_id=CHAT):
        return [text for cid, text in self.sent if cid == chat_id]


def info_flow(**node_a_extra):
    node_a = {
        'text': 'Hi, want info?',
        'defaultReply': 'Please say yes or no',
        'options': [
            {'label': 'yes', 'replyMessage': 'Great!', 'nextNodeId': 'B'},
        ],
    }
    node_a.update(node_a_extra)
    return {
        'version': '2.0.0',
        'startNodeId': 'A',
        'inactivityMessage': 'Still around?',
        'nodes': {
            'A': node_a,
            'B': {'text': "Here's info"},
        },
    }


async def make_engine(flow=None, inactivity=60.0):
    sender = FakeSender()
    engine = ConversationEngine(sender, inactivity_timeout_seconds=inactivity)
    if flow is not None:
        result = await engine.publish_flow(flow)
        assert result['success'] is True
    return engine, sender


class TestIgnoredMessages:
    """Messages the engine must not act on."""

    @pytest.mark.asyncio
    async def test_no_flow_published(self):
        engine, sender = await make_engine()

        assert await engine.handle_inbound_message(CHAT, 'hello') is False
        assert sender.sent == []
        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_flow_without_nodes(self):
        engine, sender = await make_engine({'nodes': {}})

        assert await engine.handle_inbound_message(CHAT, 'hello') is False
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_blank_text(self):
        engine, sender = await make_engine(info_flow())

        assert await engine.handle_inbound_message(CHAT, '   ') is False
        assert await engine.handle_inbound_message(CHAT, None) is False
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_own_messages(self):
        engine, sender = await make_engine(info_flow())

        assert await engine.handle_inbound_message(CHAT, 'yes', from_self=True) is False
        assert sender.sent == []


class TestInfoScenario:
    """The basic two-node walk-through."""

    @pytest.mark.asyncio
    async def test_full_walkthrough(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'YES')
        assert sender.texts() == ['Hi, want info?']
        assert engine.store.get(CHAT).current_node_id == 'A'

        await engine.handle_inbound_message(CHAT, 'yes')
        assert sender.texts() == ['Hi, want info?', 'Great!', "Here's info"]
        state = engine.store.get(CHAT)
        assert state.current_node_id == 'B'
        assert state.awaiting_option is None

        await engine.handle_inbound_message(CHAT, 'anything')
        assert sender.texts()[-1] == "Here's info"
        assert engine.store.get(CHAT).current_node_id == 'B'

    @pytest.mark.asyncio
    async def test_creation_turn_sends_only_start_text(self):
        """The first message is never matched against options."""
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'yes')

        assert sender.texts() == ['Hi, want info?']

    @pytest.mark.asyncio
    async def test_fallback_uses_default_reply_and_stays(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, 'maybe')

        assert sender.texts() == ['Hi, want info?', 'Please say yes or no']
        assert engine.store.get(CHAT).current_node_id == 'A'

    @pytest.mark.asyncio
    async def test_matching_ignores_case_and_accents(self):
        flow = info_flow()
        flow['nodes']['A']['options'] = [{'label': 'Não', 'replyMessage': 'Ok', 'nextNodeId': 'B'}]
        engine, sender = await make_engine(flow)

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, '  NAO ')

        assert sender.texts() == ['Hi, want info?', 'Ok', "Here's info"]

    @pytest.mark.asyncio
    async def test_chats_are_independent(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(1, 'hi')
        await engine.handle_inbound_message(2, 'hi')
        await engine.handle_inbound_message(1, 'yes')

        assert engine.store.get(1).current_node_id == 'B'
        assert engine.store.get(2).current_node_id == 'A'
        assert sender.texts(2) == ['Hi, want info?']


class TestTerminalTransitions:
    """Transitions that end the conversation."""

    @pytest.mark.asyncio
    async def test_dangling_next_node_terminates(self):
        flow = info_flow()
        flow['nodes']['A']['options'][0]['nextNodeId'] = 'ghost'
        engine, sender = await make_engine(flow)

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        await engine.handle_inbound_message(CHAT, 'yes')

        assert sender.texts() == ['Hi, want info?', 'Great!']
        assert engine.store.get(CHAT) is None
        assert state.closed is True
        assert state.inactivity_timer.armed is False

    @pytest.mark.asyncio
    async def test_option_without_next_node_terminates(self):
        flow = info_flow()
        del flow['nodes']['A']['options'][0]['nextNodeId']
        engine, sender = await make_engine(flow)

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, 'yes')

        assert engine.store.get(CHAT) is None

    @pytest.mark.asyncio
    async def test_next_message_after_termination_restarts(self):
        flow = info_flow()
        flow['nodes']['A']['options'][0]['nextNodeId'] = None
        engine, sender = await make_engine(flow)

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, 'yes')
        await engine.handle_inbound_message(CHAT, 'hello again')

        assert sender.texts() == ['Hi, want info?', 'Great!', 'Hi, want info?']
        assert engine.store.get(CHAT).current_node_id == 'A'


class TestFollowup:
    """The awaiting-option followup side channel."""

    @pytest.mark.asyncio
    async def test_awaiting_option_recorded_on_match(self):
        """A match records the followup trigger and the expected reply."""
        flow = info_flow()
        flow['nodes']['A']['options'] = [{
            'label': 'price',
            'matchType': 'contains',
            'replyMessage': 'It costs 10.',
            'followupTrigger': 'Thanks',
            'followupMessage': 'You are welcome!',
        }]
        engine, sender = await make_engine(flow)

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        await engine.handle_inbound_message(CHAT, 'what is the price?')

        # no nextNodeId: the conversation ended after the reply
        assert sender.texts() == ['Hi, want info?', 'It costs 10.']
        assert engine.store.get(CHAT) is None
        assert state.awaiting_option.followup_trigger_normalized == 'thanks'
        assert state.awaiting_option.expected_reply_normalized == 'it costs 10.'

    @pytest.mark.asyncio
    async def test_followup_sent_then_normal_processing(self):
        """The trigger sends the followup and is still matched afterwards."""
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        from domains.flows.models import AwaitingOption
        state.awaiting_option = AwaitingOption(
            expected_reply_normalized='great!',
            followup_trigger_normalized='thanks',
            followup_message='You are welcome!',
        )

        await engine.handle_inbound_message(CHAT, 'Thanks')

        assert sender.texts() == ['Hi, want info?', 'You are welcome!', 'Please say yes or no']
        assert state.current_node_id == 'A'
        assert state.awaiting_option.followup_trigger_normalized == 'thanks'

    @pytest.mark.asyncio
    async def test_followup_not_sent_when_trigger_equals_expected_reply(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        from domains.flows.models import AwaitingOption
        engine.store.get(CHAT).awaiting_option = AwaitingOption(
            expected_reply_normalized='thanks',
            followup_trigger_normalized='thanks',
            followup_message='You are welcome!',
        )

        await engine.handle_inbound_message(CHAT, 'thanks')

        assert 'You are welcome!' not in sender.texts()


class TestMissingCurrentNode:
    """A conversation whose node disappeared."""

    @pytest.mark.asyncio
    async def test_missing_current_node_ends_conversation(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        engine.store.get(CHAT).current_node_id = 'gone'
        await engine.handle_inbound_message(CHAT, 'yes')

        assert engine.store.get(CHAT) is None
        assert sender.texts() == ['Hi, want info?']


class TestUpsellTimer:
    """Per-node upsell timer."""

    @pytest.mark.asyncio
    async def test_upsell_fires_and_terminates(self):
        engine, sender = await make_engine(
            info_flow(upsellDelay=SHORT_UPSELL_MINUTES, upsellMessage='Still there?')
        )

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        assert state.upsell_timer.armed is True

        await asyncio.sleep(0.15)

        assert sender.texts() == ['Hi, want info?', 'Still there?']
        assert engine.store.get(CHAT) is None
        assert state.inactivity_timer.armed is False

        await engine.handle_inbound_message(CHAT, 'unrelated')
        assert sender.texts()[-1] == 'Hi, want info?'
        assert engine.store.get(CHAT).current_node_id == 'A'

    @pytest.mark.asyncio
    async def test_upsell_terminates_even_if_send_fails(self):
        engine, sender = await make_engine(
            info_flow(upsellDelay=SHORT_UPSELL_MINUTES, upsellMessage='Still there?')
        )

        await engine.handle_inbound_message(CHAT, 'hi')
        sender.fail = True

        with patch('domains.flows.engine.notify_error'):
            await asyncio.sleep(0.15)

        assert engine.store.get(CHAT) is None

    @pytest.mark.asyncio
    async def test_moving_to_node_without_upsell_cancels_previous_timer(self):
        """Leaving a node cancels its upsell even when the next node has none."""
        engine, sender = await make_engine(info_flow(upsellDelay=5, upsellMessage='Still there?'))

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, 'yes')

        state = engine.store.get(CHAT)
        assert state.current_node_id == 'B'
        assert state.upsell_timer.armed is False

    @pytest.mark.asyncio
    async def test_previous_node_upsell_never_fires_on_new_node(self):
        engine, sender = await make_engine(
            info_flow(upsellDelay=SHORT_UPSELL_MINUTES, upsellMessage='Still there?')
        )

        await engine.handle_inbound_message(CHAT, 'hi')
        await engine.handle_inbound_message(CHAT, 'yes')
        for _ in range(6):
            await asyncio.sleep(0.025)
            await engine.handle_inbound_message(CHAT, 'more please')

        assert 'Still there?' not in sender.texts()
        assert engine.store.get(CHAT).current_node_id == 'B'
        await engine.reset('test teardown')

    @pytest.mark.asyncio
    async def test_fallback_rearms_upsell(self):
        engine, sender = await make_engine(info_flow(upsellDelay=5, upsellMessage='Still there?'))

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        first_deadline = state.upsell_timer.deadline

        await asyncio.sleep(0.01)
        await engine.handle_inbound_message(CHAT, 'maybe')

        assert state.upsell_timer.armed is True
        assert state.upsell_timer.deadline > first_deadline


class TestInactivityTimer:
    """Repeating inactivity nudge."""

    @pytest.mark.asyncio
    async def test_inactivity_repeats(self):
        engine, sender = await make_engine(info_flow(), inactivity=0.03)

        await engine.handle_inbound_message(CHAT, 'hi')
        await asyncio.sleep(0.1)

        nudges = [t for t in sender.texts() if t == 'Still around?']
        assert len(nudges) >= 2
        assert engine.store.get(CHAT) is not None
        await engine.reset('test teardown')

    @pytest.mark.asyncio
    async def test_inbound_message_postpones_inactivity(self):
        engine, sender = await make_engine(info_flow(), inactivity=0.2)

        await engine.handle_inbound_message(CHAT, 'hi')
        for _ in range(3):
            await asyncio.sleep(0.1)
            await engine.handle_inbound_message(CHAT, 'maybe')

        assert 'Still around?' not in sender.texts()
        await engine.reset('test teardown')

    @pytest.mark.asyncio
    async def test_inactivity_refreshes_last_message_time(self):
        engine, sender = await make_engine(info_flow(), inactivity=0.03)

        await engine.handle_inbound_message(CHAT, 'hi')
        state = engine.store.get(CHAT)
        before = state.last_message_time

        await asyncio.sleep(0.05)

        assert state.last_message_time > before
        assert state.inactivity_timer.armed is True
        await engine.reset('test teardown')


class TestPublishAndReset:
    """Global resets."""

    @pytest.mark.asyncio
    async def test_publish_clears_conversations_and_timers(self):
        engine, sender = await make_engine(info_flow(), inactivity=0.03)

        await engine.handle_inbound_message(1, 'hi')
        await engine.handle_inbound_message(2, 'hi')
        states = engine.store.values()

        result = await engine.publish_flow(info_flow())
        await asyncio.sleep(0.06)

        assert result['success'] is True
        assert len(engine.store) == 0
        assert all(state.closed for state in states)
        assert 'Still around?' not in sender.texts(1) + sender.texts(2)

    @pytest.mark.asyncio
    async def test_invalid_publish_keeps_everything(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        previous = engine.current_flow

        result = await engine.publish_flow(['not', 'a', 'flow'])

        assert result['success'] is False
        assert 'error' in result
        assert engine.current_flow is previous
        assert engine.store.get(CHAT) is not None
        await engine.reset('test teardown')

    @pytest.mark.asyncio
    async def test_publish_returns_normalized_flow(self):
        engine, sender = await make_engine()

        result = await engine.publish_flow({'startNodeId': 'missing', 'nodes': {'x': {'text': 'X'}}})

        assert result['success'] is True
        assert result['flow']['startNodeId'] == 'x'
        assert result['flow']['version'] == '1.0.0'
        assert engine.current_flow.start_node_id == 'x'

    @pytest.mark.asyncio
    async def test_disconnect_resets(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(1, 'hi')
        await engine.handle_inbound_message(2, 'hi')

        dropped = await engine.handle_disconnect('network down')

        assert dropped == 2
        assert engine.list_active_conversations() == []

    @pytest.mark.asyncio
    async def test_reset_waits_for_in_flight_handler(self):
        """A reset never clears the map under a running handler."""
        engine, _ = await make_engine(info_flow())
        order = []
        gate = asyncio.Event()

        class SlowSender(FakeSender):
            async def send_message(self, chat_id, text):
                gate.set()
                await asyncio.sleep(0.03)
                order.append('send-done')
                return await super().send_message(chat_id, text)

        engine.sender = SlowSender()

        async def do_reset():
            await gate.wait()
            await engine.reset('publish')
            order.append('reset-done')

        await asyncio.gather(engine.handle_inbound_message(CHAT, 'hi'), do_reset())

        assert order == ['send-done', 'reset-done']
        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_list_active_conversations(self):
        engine, sender = await make_engine(info_flow(upsellDelay=5, upsellMessage='Still there?'))

        await engine.handle_inbound_message(CHAT, 'hi')
        conversations = engine.list_active_conversations()

        assert len(conversations) == 1
        entry = conversations[0]
        assert entry['chatId'] == CHAT
        assert entry['currentNodeId'] == 'A'
        assert entry['inactivityTimerArmed'] is True
        assert entry['upsellTimerArmed'] is True
        await engine.reset('test teardown')


class TestSendFailures:
    """Send failures never corrupt state."""

    @pytest.mark.asyncio
    async def test_failed_send_still_advances(self):
        engine, sender = await make_engine(info_flow())

        await engine.handle_inbound_message(CHAT, 'hi')
        sender.fail = True

        with patch('domains.flows.engine.notify_error') as mock_notify:
            await engine.handle_inbound_message(CHAT, 'yes')

        assert engine.store.get(CHAT).current_node_id == 'B'
        assert mock_notify.call_count == 2
        await engine.reset('test teardown')

    @pytest.mark.asyncio
    async def test_raising_sender_is_contained(self):
        engine, sender = await make_engine(info_flow())
        sender.raise_error = True

        with patch('domains.flows.engine.notify_error') as mock_notify:
            acted = await engine.handle_inbound_message(CHAT, 'hi')

        assert acted is True
        assert engine.store.get(CHAT).current_node_id == 'A'
        mock_notify.assert_called_once()
        await engine.reset('test teardown')
