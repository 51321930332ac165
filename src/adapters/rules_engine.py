"""Keyword and regex rules for info channels.

Rules come from the ``telegram_channels`` options as plain dicts and are
compiled once per collector start.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from core.errors import ConfigError


@dataclass(frozen=True)
class Rule:
    """Compiled rule: any keyword or regex hit matches unless an exclude word is present."""

    name: str
    keywords: Tuple[str, ...]
    exclude_keywords: Tuple[str, ...]
    regex_patterns: Tuple[re.Pattern, ...]

    def match(self, text: str) -> Optional["RuleMatch"]:
        lowered = text.lower()
        if any(word in lowered for word in self.exclude_keywords):
            return None

        keyword_hits = sorted({word for word in self.keywords if word in lowered})
        regex_hits = sorted({pattern.pattern for pattern in self.regex_patterns if pattern.search(text)})
        if not keyword_hits and not regex_hits:
            return None

        reason_parts: List[str] = []
        if keyword_hits:
            reason_parts.append(f"keyword(s): {', '.join(keyword_hits)}")
        if regex_hits:
            reason_parts.append(f"regex: {', '.join(regex_hits)}")
        return RuleMatch(rule_name=self.name, reason="; ".join(reason_parts))


@dataclass(frozen=True)
class RuleMatch:
    """A single rule match with a human-readable reason."""

    rule_name: str
    reason: str


def build_rules(rules_config: Iterable[Mapping[str, Any]]) -> List[Rule]:
    """Normalize rule configs and compile regex patterns.

    Disabled rules are skipped. A rule without a name or with an invalid
    pattern raises ``ConfigError`` listing every broken rule.
    """

    compiled: List[Rule] = []
    problems: List[str] = []
    for index, rule in enumerate(rules_config):
        if not rule.get("enabled", True):
            continue
        name = rule.get("name")
        if not name:
            problems.append(f"rule #{index} has no name")
            continue
        patterns = []
        for pattern in rule.get("regex", ()) or ():
            try:
                patterns.append(re.compile(pattern, re.IGNORECASE))
            except re.error as exc:
                problems.append(f"rule {name!r} has invalid regex {pattern!r}: {exc}")
        compiled.append(
            Rule(
                name=name,
                keywords=tuple(word.lower() for word in rule.get("keywords", ()) or ()),
                exclude_keywords=tuple(word.lower() for word in rule.get("exclude_keywords", ()) or ()),
                regex_patterns=tuple(patterns),
            )
        )
    if problems:
        raise ConfigError("Invalid channel rules", problems)
    return compiled


def match_rules(text: str, rules: Iterable[Rule]) -> List[RuleMatch]:
    """Return every rule that matches ``text``, in rule order."""

    matches: List[RuleMatch] = []
    for rule in rules:
        hit = rule.match(text)
        if hit is not None:
            matches.append(hit)
    return matches
