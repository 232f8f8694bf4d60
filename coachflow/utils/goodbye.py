"""
Goodbye detection for collection flows.

A message that is nothing but a closing phrase ("thanks", "bye", "take
care!") is treated as a finish request when the schema enables goodbye
auto-complete and the session already has substantial progress. This keeps
"Thanks" from dropping a mostly collected record.
"""

import re

GOODBYE_PATTERN = re.compile(
    r"^\s*(thanks|thank you|thx|bye|goodbye|see you|ttyl|talk later|peace|cheers|"
    r"gotta go|good night|goodnight|take care|have a good|heading out|peace out)"
    r"\s*[.!?]?\s*$",
    re.IGNORECASE
)


def is_goodbye_message(text):
    """
    Check if a message is only a closing phrase

    Args:
        text (str): Raw user message

    Returns:
        bool: True for e.g. "Thanks!", "bye", "  take care. "

    Examples:
        >>> is_goodbye_message("Thanks!")
        True
        >>> is_goodbye_message("thanks, I also did 3 sets of pullups")
        False
    """
    if not text:
        return False
    return GOODBYE_PATTERN.match(text.strip()) is not None
