"""
Flows domain - scripted conversation flows driven by inbound Telegram messages.
"""
from .engine import ConversationEngine
from .normalizer import FlowValidationError, normalize_flow, normalize_text

__all__ = ['ConversationEngine', 'FlowValidationError', 'normalize_flow', 'normalize_text']
