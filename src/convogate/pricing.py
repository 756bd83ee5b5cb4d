"""
Billing rules that convert token usage into balance units ("power").

A rule reads "``power`` units per ``tokens`` tokens"; partial blocks are
rounded up, so any non-zero usage costs at least one unit under an enabled
rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingRule:
    """
    Conversion rate between tokens and balance units.

    Attributes:
        power: Units charged per block of ``tokens`` tokens.
        tokens: Block size in tokens. A non-positive value disables token billing.
        tool_call_power: Flat fee per successful tool call.
    """

    power: int = 1
    tokens: int = 1000
    tool_call_power: int = 0

    @property
    def enabled(self) -> bool:
        return self.tokens > 0 and self.power > 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BillingRule":
        return cls(
            power=int(data.get("power", 1)),
            tokens=int(data.get("tokens", 1000)),
            tool_call_power=int(data.get("tool_call_power", data.get("toolCallPower", 0))),
        )

    def to_dict(self) -> Dict[str, int]:
        return {"power": self.power, "tokens": self.tokens, "tool_call_power": self.tool_call_power}


def calculate_power(total_tokens: int, rule: BillingRule) -> int:
    """
    Calculate the units owed for ``total_tokens`` under ``rule``.

    Returns:
        ``ceil(total_tokens / rule.tokens * rule.power)``, or 0 when the
        rule is disabled or no tokens were used.
    """
    if total_tokens <= 0:
        return 0
    if not rule.enabled:
        logger.debug("Billing rule %s is disabled; charging 0", rule)
        return 0
    # rounded up to a whole unit of power
    return -(-total_tokens * rule.power // rule.tokens)


__all__ = ["BillingRule", "calculate_power"]
