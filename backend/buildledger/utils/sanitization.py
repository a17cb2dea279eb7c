"""
Input sanitization utilities for API payloads and object metadata.
"""

import re
import unicodedata
from typing import Optional

_CONTROL_CHARS = re.compile(r'[\x00-\x1F\x7F]')


def sanitize_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _CONTROL_CHARS.sub('', value.strip())
    # Escape HTML
    return value.replace('<', '&lt;').replace('>', '&gt;')


def safe_filename(filename: Optional[str], default: str = "receipt") -> str:
    """Reduce a client filename to ASCII ``[A-Za-z0-9._-]``.

    Object store user metadata must be plain ASCII, so the original name
    recorded on a blob goes through here first.
    """
    ascii_name = unicodedata.normalize("NFKD", filename or "").encode("ascii", "ignore").decode()
    keepchars = {"-", "_", "."}
    cleaned = "".join(c for c in ascii_name.replace(" ", "_") if c.isalnum() or c in keepchars)
    return cleaned.strip(".") or default
