"""
Text matcher - resolves normalized inbound text against a node's options.
"""
from typing import Iterable, Optional

from .models import MATCH_CONTAINS, Option


def option_matches(normalized_text: str, option: Option) -> bool:
    """Check a single option. Options with an empty normalized label never match."""
    label = option.normalized_label
    if not label:
        return False
    if option.match_type == MATCH_CONTAINS:
        return label in normalized_text
    return normalized_text == label


def match_option(normalized_text: str, options: Iterable[Option]) -> Optional[Option]:
    """
    Return the first option, in declared order, that matches the text.

    Args:
        normalized_text: Inbound text already passed through normalize_text()
        options: The current node's options

    Returns:
        The first eligible matching Option, or None
    """
    for option in options:
        if option_matches(normalized_text, option):
            return option
    return None
