"""Security utilities for input sanitization and validation.

- Log injection: Sanitize user input before logging
- Identifier validation: reject container references that are not Docker ids or names
"""

import re
from typing import Union

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]+ ; ids are 12-64 hex chars
_CONTAINER_REF_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,254}$")


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Prevents log injection attacks where attackers inject newlines or control
    characters to corrupt log files, hide malicious activity, or break log parsing.

    Args:
        msg: Message to sanitize (will be converted to string)

    Returns:
        Sanitized message with control characters removed

    Examples:
        >>> sanitize_log_message("Container\\nmalicious\\nlog")
        'Containermaliciouslog'
    """
    if msg is None:
        return ""

    msg_str = str(msg)

    # Pattern matches: \n, \r, \t, and control chars (0x00-0x1f, 0x7f-0x9f)
    return re.sub(r"[\n\r\t\x00-\x1f\x7f-\x9f]", "", msg_str)


def is_valid_container_ref(ref: str) -> bool:
    """Return True if ref looks like a Docker container id or name."""
    if not ref or not isinstance(ref, str):
        return False
    return bool(_CONTAINER_REF_PATTERN.match(ref.lstrip("/")))
