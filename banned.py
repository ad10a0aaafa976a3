"""
Banned command filter.

A pattern is either a delimited regular expression (``/pattern/flags``, flags
default to case-insensitive) or a literal matched as a case-insensitive
substring. This is a best-effort heuristic, not a sandbox.
"""
import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger("autoaccept.banned")

_FLAG_MAP = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
    # JS-only flags with no effect on a single test() call
    'g': 0,
    'y': 0,
    'u': 0,
    'd': 0,
}


def compile_pattern(pattern: str) -> Optional['re.Pattern']:
    """
    Compile a ``/body/flags`` pattern. Returns None when the pattern is a literal.
    Raises ``re.error`` when it looks like a regex but cannot be compiled.
    """
    if not pattern.startswith('/') or pattern.rfind('/') <= 0:
        return None
    last_slash = pattern.rfind('/')
    body = pattern[1:last_slash]
    flags = pattern[last_slash + 1:] or 'i'
    re_flags = 0
    for flag in flags:
        if flag not in _FLAG_MAP:
            raise re.error(f"unsupported flag {flag!r}")
        re_flags |= _FLAG_MAP[flag]
    return re.compile(body, re_flags)


def find_banned_pattern(text: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern that matches ``text``, or None."""
    if not text:
        return None
    lower_text = text.lower()

    for banned in patterns:
        pattern = (banned or '').strip()
        if not pattern:
            continue
        try:
            regex = compile_pattern(pattern)
        except re.error as e:
            logger.warning(f"Invalid regex pattern {pattern!r}, using literal match: {e}")
            regex = None
        if regex is not None:
            if regex.search(text):
                logger.info(f"Command blocked by regex: {pattern}")
                return banned
        elif pattern.lower() in lower_text:
            logger.info(f"Command blocked by pattern: {pattern!r}")
            return banned
    return None


def is_banned(text: str, patterns: Iterable[str]) -> bool:
    return find_banned_pattern(text, patterns) is not None
