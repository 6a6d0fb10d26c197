from __future__ import annotations

import logging
import re


log = logging.getLogger(__name__)

# ASCII control characters except tab, newline and carriage return.
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INVISIBLE_RE = re.compile(r"[\u200B-\u200F\u2028-\u202F\u205F-\u206F\uFEFF]")

# Tags the prompts use as delimiters. User text must not be able to close them.
_DELIMITER_TAG_RE = re.compile(
    r"<\s*(/?)\s*(subject|goal|difficulty|answer_format|question_count|study_materials|"
    r"questions|results|analysis|evaluation|answers)\s*>",
    re.IGNORECASE,
)

_SUSPICIOUS_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions", re.IGNORECASE),
    re.compile(r"disregard\s+(the\s+)?(system|previous)\s+prompt", re.IGNORECASE),
    re.compile(r"reveal\s+(your|the)\s+(system\s+)?prompt", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+", re.IGNORECASE),
    re.compile(r"^\s*system\s*:", re.IGNORECASE | re.MULTILINE),
]


def sanitize_string(value: str) -> str:
    s = _CONTROL_RE.sub("", value or "")
    return _INVISIBLE_RE.sub("", s)


def sanitize_for_prompt(value: str) -> str:
    s = sanitize_string(value)
    return _DELIMITER_TAG_RE.sub(lambda m: f"[{m.group(1)}{m.group(2)}]", s)


def log_suspicious_patterns(value: str, field: str) -> bool:
    """Log (never block) text that looks like an instruction-injection attempt."""

    hits = [p.pattern for p in _SUSPICIOUS_PATTERNS if p.search(value or "")]
    if hits:
        log.warning("suspicious prompt content field=%s patterns=%s", field, len(hits))
        return True
    return False
