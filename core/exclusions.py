"""
exclusions.py
--------------
Merchant-name exclusion lookup.

Some postings look perfectly periodic but are not obligations a user wants
tracked: monthly interest accruals, sweeps between the user's own accounts,
dividend credits. The matchers live in config.yaml as data, so a new
exclusion is a config change, not an orchestrator change.
"""

import re
from typing import Iterable, List, Optional, Tuple

from config.detection_config import ExclusionRule


class ExclusionMatcher:
    """
    Case-insensitive regex matchers over merchant names.

    Compiled once at init. Thread-safe for reads.
    """

    def __init__(self, rules: Iterable[ExclusionRule]):
        self._rules: List[Tuple[str, re.Pattern]] = []
        for rule in rules:
            try:
                compiled = re.compile(rule.pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"Invalid exclusion pattern for '{rule.name}': {e}")
            self._rules.append((rule.name, compiled))

    def match(self, merchant_name: Optional[str]) -> Optional[str]:
        """
        Returns the name of the first rule matching merchant_name, or None.
        """
        if not merchant_name:
            return None
        for name, pattern in self._rules:
            if pattern.search(merchant_name):
                return name
        return None

    def is_excluded(self, merchant_name: Optional[str]) -> bool:
        return self.match(merchant_name) is not None

    @property
    def rule_names(self) -> list[str]:
        return [name for name, _ in self._rules]

    def __repr__(self) -> str:
        return f"ExclusionMatcher(rules={self.rule_names})"
