"""Risk: daily profit target and loss limit circuit breaker."""

from futures_bot.risk.governor import RiskGovernor, RiskCheck

__all__ = ["RiskGovernor", "RiskCheck"]
