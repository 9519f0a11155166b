"""
Flow data model.

FlowDefinition, Node and Option are built only by normalizer.normalize_flow();
ConversationState is created and destroyed only by the engine.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .timers import Timer

ChatId = Union[int, str]

MATCH_EQUALS = 'equals'
MATCH_CONTAINS = 'contains'

DEFAULT_VERSION = '1.0.0'
DEFAULT_NODE_TYPE = 'question'
DEFAULT_INACTIVITY_MESSAGE = (
    "Hi! We noticed you haven't replied. Are you still interested in our services?"
)


@dataclass
class Option:
    """A recognized user reply attached to a node."""
    label: str
    normalized_label: str
    match_type: str = MATCH_EQUALS
    reply_message: Optional[str] = None
    next_node_id: Optional[str] = None
    followup_trigger: Optional[str] = None
    followup_trigger_normalized: Optional[str] = None
    followup_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'normalizedLabel': self.normalized_label,
            'matchType': self.match_type,
            'replyMessage': self.reply_message,
            'nextNodeId': self.next_node_id,
            'followupTrigger': self.followup_trigger,
            'followupTriggerNormalized': self.followup_trigger_normalized,
            'followupMessage': self.followup_message,
        }


@dataclass
class Node:
    """One step of the scripted dialogue."""
    id: str
    type: str = DEFAULT_NODE_TYPE
    text: str = ''
    default_reply: Optional[str] = None
    upsell_delay: Optional[float] = None
    upsell_message: Optional[str] = None
    options: List[Option] = field(default_factory=list)

    @property
    def has_upsell(self) -> bool:
        return bool(self.upsell_delay) and bool(self.upsell_message)

    @property
    def upsell_delay_seconds(self) -> Optional[float]:
        if not self.has_upsell:
            return None
        return self.upsell_delay * 60

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'text': self.text,
            'defaultReply': self.default_reply,
            'upsellDelay': self.upsell_delay,
            'upsellMessage': self.upsell_message,
            'options': [option.to_dict() for option in self.options],
        }


@dataclass
class FlowDefinition:
    """A published flow: the dialogue graph plus its defaults."""
    version: str = DEFAULT_VERSION
    start_node_id: Optional[str] = None
    inactivity_message: str = DEFAULT_INACTIVITY_MESSAGE
    nodes: Dict[str, Node] = field(default_factory=dict)

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    @property
    def start_node(self) -> Optional[Node]:
        return self.get_node(self.start_node_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'startNodeId': self.start_node_id,
            'inactivityMessage': self.inactivity_message,
            'nodes': {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }


@dataclass
class AwaitingOption:
    """Followup hint recorded after an option match."""
    expected_reply_normalized: Optional[str] = None
    option_label_normalized: Optional[str] = None
    followup_trigger_normalized: Optional[str] = None
    followup_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'expectedReplyNormalized': self.expected_reply_normalized,
            'optionLabelNormalized': self.option_label_normalized,
            'followupTriggerNormalized': self.followup_trigger_normalized,
            'followupMessage': self.followup_message,
        }


@dataclass
class ConversationState:
    """Per-chat progress through the published flow."""
    chat_id: ChatId
    current_node_id: str
    last_message_time: float = field(default_factory=time.time)
    awaiting_option: Optional[AwaitingOption] = None
    inactivity_timer: Timer = field(default_factory=lambda: Timer('inactivity'))
    upsell_timer: Timer = field(default_factory=lambda: Timer('upsell'))
    closed: bool = False

    def touch(self) -> None:
        self.last_message_time = time.time()

    def cancel_timers(self) -> None:
        self.inactivity_timer.cancel()
        self.upsell_timer.cancel()

    def close(self) -> None:
        """Cancel both timers and mark the state as no longer live."""
        self.cancel_timers()
        self.closed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chatId': self.chat_id,
            'currentNodeId': self.current_node_id,
            'lastMessageTime': self.last_message_time,
            'awaitingOption': self.awaiting_option.to_dict() if self.awaiting_option else None,
            'inactivityTimerArmed': self.inactivity_timer.armed,
            'upsellTimerArmed': self.upsell_timer.armed,
        }
