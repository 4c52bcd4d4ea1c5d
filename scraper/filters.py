"""
Name heuristics for Maps extraction artifacts.

Result cards mix the business name with opening hours, star ratings and phone
numbers; these predicates recognise those fragments so they are never taken
for a business name.
"""
from __future__ import annotations

import re

_OPENING_HOURS_PATTERNS = (
    re.compile(r"^(Open|Closed|Opens|Closes)\b", re.I),
    re.compile(r"\d{1,2}:\d{2}\s*(AM|PM)", re.I),
    re.compile(r"^(Mon|Tue|Wed|Thu|Fri|Sat|Sun)\b", re.I),
    re.compile(r"^(Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)\b", re.I),
)

_RATING_PATTERNS = (
    re.compile(r"^\d+(\.\d+)?\s*\([\d,]+\)"),   # 4.5 (123)
    re.compile(r"^\d+(\.\d+)?\s*stars?", re.I),  # 4.5 stars
    re.compile(r"^\d+(\.\d+)?/5"),               # 4.5/5
)

_PHONE_PATTERNS = (
    re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}"),  # 123-456-7890
    re.compile(r"\+?\d{10,}"),                     # +1234567890
    re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),  # (123) 456-7890
)

_DIGIT = re.compile(r"\d")


def is_opening_hours(text: str) -> bool:
    t = (text or "").strip()
    return bool(t) and any(p.search(t) for p in _OPENING_HOURS_PATTERNS)


def looks_like_rating(text: str) -> bool:
    t = (text or "").strip()
    return bool(t) and any(p.search(t) for p in _RATING_PATTERNS)


def looks_like_phone_number(text: str) -> bool:
    t = (text or "").strip()
    if len(_DIGIT.findall(t)) < 7:
        return False
    return any(p.search(t) for p in _PHONE_PATTERNS)


def is_artifact_name(text: str) -> bool:
    """True when `text` is empty or one of the known non-name fragments."""
    t = (text or "").strip()
    if not t:
        return True
    return is_opening_hours(t) or looks_like_rating(t) or looks_like_phone_number(t)
