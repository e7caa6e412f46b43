"""
Trigger Matching

Decides whether a message is a command for the agent and strips the
activation prefix. Rules are a small declarative table evaluated in order;
first match wins.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_AI_PREFIX = "!ai"


@dataclass(frozen=True)
class TriggerRule:
    """
    One activation prefix.

    The prefix includes its separator ("qq ", not "qq"), so "!aiuse" never
    matches "!ai ". Case-insensitive rules compare only the leading slice of
    len(prefix) characters.
    """
    prefix: str
    case_sensitive: bool = True

    def matches(self, text: str) -> bool:
        if self.case_sensitive:
            return text.startswith(self.prefix)
        head = text[:len(self.prefix)]
        return len(head) == len(self.prefix) and head.lower() == self.prefix.lower()


def default_rules(ai_prefix: str = DEFAULT_AI_PREFIX) -> list[TriggerRule]:
    """Robot emoji, the colloquial "qq", then the configurable prefix."""
    return [
        TriggerRule("🤖 "),
        TriggerRule("qq ", case_sensitive=False),
        TriggerRule(f"{ai_prefix} "),
    ]


class TriggerMatcher:
    """Ordered set of trigger rules."""

    def __init__(self, rules: Optional[list[TriggerRule]] = None):
        self.rules = list(rules) if rules is not None else default_rules()

    @classmethod
    def from_config(cls, config: dict) -> "TriggerMatcher":
        """
        Build from settings.

        An explicit `triggers` list replaces the defaults entirely:
            triggers:
              - {prefix: "🤖 ", case_sensitive: true}
              - {prefix: "hey bot ", case_sensitive: false}
        """
        configured = config.get('triggers')
        if not configured:
            return cls(default_rules(config.get('ai_prefix', DEFAULT_AI_PREFIX)))

        rules = [
            TriggerRule(entry['prefix'], bool(entry.get('case_sensitive', True)))
            for entry in configured
        ]
        logger.info(f"Loaded {len(rules)} custom trigger rule(s)")
        return cls(rules)

    def match(self, text: str) -> Optional[TriggerRule]:
        """First matching rule, or None."""
        if not text:
            return None
        for rule in self.rules:
            if rule.matches(text):
                return rule
        return None

    def is_triggered(self, text: str) -> bool:
        return self.match(text) is not None

    def extract_prompt(self, text: str) -> str:
        """
        Strip the matched prefix and surrounding whitespace.

        Returns the text unchanged when nothing matches, so always gate on
        is_triggered() first. An empty result means there is nothing to ask.
        """
        rule = self.match(text)
        if rule is None:
            return text
        return text[len(rule.prefix):].strip()

    def __repr__(self):
        return f"<TriggerMatcher {[r.prefix for r in self.rules]}>"
