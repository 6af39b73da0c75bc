"""
Ingredient naming: raw label -> canonical key + display name.
"""

import re
from typing import Optional

from .rules import ExtractionRules, load_rules

_PARENS = re.compile(r'\([^)]*\)')
_NON_LETTERS = re.compile(r'[^a-zåäöéü]')
_SPACES = re.compile(r'\s+')


def compact_name(raw: str) -> str:
    """'L-Teanin®' -> 'lteanin', 'Grönt te-extrakt (40%)' -> 'gröntteextrakt'."""
    text = (raw or '').lower().replace('®', '').replace('™', '')
    text = _PARENS.sub('', text)
    return _NON_LETTERS.sub('', text)


def clean_name(raw: str) -> str:
    """Lowercase, drop parentheticals, collapse whitespace."""
    text = _PARENS.sub('', raw or '')
    text = text.strip(' \t\n:;,.-–')
    return _SPACES.sub(' ', text).strip().lower()


def known_key(raw: str, rules: Optional[ExtractionRules] = None) -> Optional[str]:
    """Canonical key for a known ingredient, else None."""
    rules = rules or load_rules()
    compact = compact_name(raw)
    if not compact:
        return None
    if compact in rules.ingredient_aliases:
        return rules.ingredient_aliases[compact]
    # 'varav' ("of which") prefixes sub-rows in Swedish tables
    if compact.startswith('varav') and compact[5:] in rules.ingredient_aliases:
        return rules.ingredient_aliases[compact[5:]]
    return None


def ingredient_key(raw: str, rules: Optional[ExtractionRules] = None) -> str:
    """Known key if mapped, otherwise a slug of the cleaned name."""
    key = known_key(raw, rules)
    if key:
        return key
    slug = re.sub(r'[^a-z0-9åäöéü]+', '_', clean_name(raw)).strip('_')
    return slug or 'unknown'


def display_name(key: str, raw: Optional[str] = None, rules: Optional[ExtractionRules] = None) -> str:
    rules = rules or load_rules()
    if key in rules.display_names:
        return rules.display_names[key]
    if raw:
        return _SPACES.sub(' ', _PARENS.sub('', raw)).strip(' :-–').strip() or key
    return key.replace('_', ' ').title()


def is_known(key: str, rules: Optional[ExtractionRules] = None) -> bool:
    rules = rules or load_rules()
    return key in rules.display_names
