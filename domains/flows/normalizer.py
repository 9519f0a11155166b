"""
Flow normalizer - the only path by which a FlowDefinition comes into existence.

Takes the loosely-structured document published by the control channel,
fills every default, derives the normalized match keys and validates the
structure. Anything that is not shaped like a flow is rejected with
FlowValidationError rather than coerced.
"""
import copy
import math
import unicodedata
from typing import Any, Dict, List, Optional

from core.logging import get_logger
from .models import (
    DEFAULT_INACTIVITY_MESSAGE,
    DEFAULT_NODE_TYPE,
    DEFAULT_VERSION,
    MATCH_CONTAINS,
    MATCH_EQUALS,
    FlowDefinition,
    Node,
    Option,
)

logger = get_logger(__name__)


class FlowValidationError(ValueError):
    """Raised when a published flow document is structurally invalid."""
    pass


def normalize_text(text: Any = '') -> str:
    """
    Canonical comparison form: NFD, combining marks U+0300-U+036F removed,
    lowercased, trimmed.

    normalize_text("Não") == normalize_text("NAO") == "nao"
    """
    if text is None:
        return ''
    decomposed = unicodedata.normalize('NFD', str(text))
    stripped = ''.join(ch for ch in decomposed if not '\u0300' <= ch <= '\u036f')
    return stripped.lower().strip()


def _optional_text(value: Any) -> Optional[str]:
    """Empty and missing values both mean 'not configured'."""
    if value is None or value == '' or value is False:
        return None
    return str(value)


def _coerce_upsell_delay(value: Any) -> Optional[float]:
    """Minutes as a positive number, or None to disable the node's upsell."""
    if value is None or isinstance(value, bool):
        return None
    try:
        delay = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(delay) or delay <= 0:
        return None
    return delay


def _normalize_option(raw: Any, node_id: str, index: int) -> Option:
    if not isinstance(raw, dict):
        raise FlowValidationError(f"Option {index} of node '{node_id}' must be an object")

    label = str(raw.get('label') or '')
    followup_trigger = _optional_text(raw.get('followupTrigger'))
    next_node_id = raw.get('nextNodeId') or None

    return Option(
        label=label,
        normalized_label=normalize_text(label),
        match_type=MATCH_CONTAINS if raw.get('matchType') == MATCH_CONTAINS else MATCH_EQUALS,
        reply_message=_optional_text(raw.get('replyMessage')),
        next_node_id=str(next_node_id) if next_node_id is not None else None,
        followup_trigger=followup_trigger,
        followup_trigger_normalized=normalize_text(followup_trigger) if followup_trigger else None,
        followup_message=_optional_text(raw.get('followupMessage')),
    )


def _normalize_node(node_id: str, raw: Any) -> Node:
    if not isinstance(raw, dict):
        raise FlowValidationError(f"Node '{node_id}' must be an object")

    declared_id = raw.get('id')
    if declared_id and str(declared_id) != node_id:
        logger.warning(f"Node declared id '{declared_id}' differs from its key '{node_id}', using the key")

    raw_options = raw.get('options')
    if raw_options is None:
        raw_options = []
    elif not isinstance(raw_options, list):
        raise FlowValidationError(f"Options of node '{node_id}' must be a list")

    options: List[Option] = [
        _normalize_option(option, node_id, index) for index, option in enumerate(raw_options)
    ]

    return Node(
        id=node_id,
        type=str(raw.get('type') or DEFAULT_NODE_TYPE),
        text=str(raw.get('text') or ''),
        default_reply=_optional_text(raw.get('defaultReply')),
        upsell_delay=_coerce_upsell_delay(raw.get('upsellDelay')),
        upsell_message=_optional_text(raw.get('upsellMessage')),
        options=options,
    )


def normalize_flow(document: Any) -> FlowDefinition:
    """
    Build a validated, fully-defaulted FlowDefinition from a flow document.

    Args:
        document: Mapping with version, startNodeId, inactivityMessage, nodes

    Returns:
        FlowDefinition whose start_node_id names an existing node, or None
        when the flow has no nodes

    Raises:
        FlowValidationError: If the document or any node/option is not an object
    """
    if not isinstance(document, dict):
        raise FlowValidationError('Invalid flow: expected an object')

    prepared: Dict[str, Any] = copy.deepcopy(document)

    raw_nodes = prepared.get('nodes')
    if raw_nodes is None:
        raw_nodes = {}
    elif not isinstance(raw_nodes, dict):
        raise FlowValidationError("Invalid flow: 'nodes' must be an object keyed by node id")

    nodes: Dict[str, Node] = {}
    for raw_id, raw_node in raw_nodes.items():
        node_id = str(raw_id)
        nodes[node_id] = _normalize_node(node_id, raw_node)

    start_node_id = prepared.get('startNodeId')
    start_node_id = str(start_node_id) if start_node_id else None
    if start_node_id not in nodes:
        fallback = next(iter(nodes), None)
        if start_node_id:
            logger.warning(f"Unknown startNodeId '{start_node_id}', falling back to '{fallback}'")
        start_node_id = fallback

    flow = FlowDefinition(
        version=str(prepared.get('version') or DEFAULT_VERSION),
        start_node_id=start_node_id,
        inactivity_message=str(prepared.get('inactivityMessage') or DEFAULT_INACTIVITY_MESSAGE),
        nodes=nodes,
    )

    logger.debug(f"Normalized flow version={flow.version} nodes={len(nodes)} start={start_node_id}")
    return flow
