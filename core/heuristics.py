"""
Deterministic shortcuts the LLM decision function tries before any model
call: spotting a numbered menu, picking a configured menu option for the
objective, and noticing when the responder asks for a configured field.
"""
from __future__ import annotations

import re
from typing import Optional

from models.schemas import AutomationField, MenuOption

# *1* -   /   1 -   /   1.   /   1)   /   [1]
_MENU_PATTERNS = [
    re.compile(r"\*\d+\*\s*[-–—]"),
    re.compile(r"^\s*\d+\s*[-–—]", re.MULTILINE),
    re.compile(r"^\s*\d+\.\s", re.MULTILINE),
    re.compile(r"^\s*\d+\)\s", re.MULTILINE),
    re.compile(r"\[\d+\]\s"),
]

_MIN_LABEL_WORD = 4


def detect_menu_message(message: str) -> bool:
    """True when the message looks like a numbered option menu."""
    if not message:
        return False
    return any(p.search(message) for p in _MENU_PATTERNS)


def select_menu_option(objective: str, options: list[MenuOption]) -> Optional[MenuOption]:
    """
    Pick the option whose keywords appear in the objective, falling back to
    significant words of the label. Options are tried in priority order and
    exit options are never chosen here.
    """
    objective = (objective or "").lower()
    if not objective:
        return None
    candidates = [o for o in sorted(options, key=lambda o: o.priority) if not o.is_exit]

    for option in candidates:
        if any(k and k.lower() in objective for k in option.keywords):
            return option

    for option in candidates:
        words = [w for w in option.label.lower().split() if len(w) >= _MIN_LABEL_WORD]
        if any(w in objective for w in words):
            return option

    return None


def detect_requested_field(message: str, fields: list[AutomationField]) -> Optional[AutomationField]:
    """
    Return the first field (by priority) the message asks for, matched on
    its prompt patterns, machine name or label.
    """
    lower = (message or "").lower()
    if not lower:
        return None

    for f in sorted(fields, key=lambda f: f.priority):
        if any(p and p.lower() in lower for p in f.prompt_patterns):
            return f
        if (f.name and f.name.lower() in lower) or (f.label and f.label.lower() in lower):
            return f
    return None
