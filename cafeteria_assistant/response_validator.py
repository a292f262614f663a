from __future__ import annotations

from typing import Optional

DEFAULT_MIN_LENGTH = 10


def is_acceptable(text: Optional[str], min_length: int = DEFAULT_MIN_LENGTH) -> bool:
    """
    A provider answer is usable when it is non-empty after trimming and
    strictly longer than `min_length` characters (code points, not bytes).
    """
    if text is None:
        return False
    s = str(text).strip()
    if not s:
        return False
    return len(s) > min_length
