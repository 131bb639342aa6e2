"""
Engine error taxonomy.

Not-found errors abort a whole dispatch. ActionError marks an expected
per-rule failure and never leaves the executor.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for funnel engine errors."""


class DealNotFound(EngineError):
    def __init__(self, deal_id: str):
        super().__init__(f"Deal not found: {deal_id}")
        self.deal_id = deal_id


class StageNotFound(EngineError):
    def __init__(self, stage_id: str):
        super().__init__(f"Stage not found: {stage_id}")
        self.stage_id = stage_id


class FunnelNotFound(EngineError):
    def __init__(self, funnel_id: str):
        super().__init__(f"Funnel not found: {funnel_id}")
        self.funnel_id = funnel_id


class RuleNotFound(EngineError):
    def __init__(self, rule_id: str):
        super().__init__(f"Automation not found or inactive: {rule_id}")
        self.rule_id = rule_id


class InvalidRuleError(EngineError):
    """Rule exists but cannot be used for the requested operation."""


class StageTransitionError(EngineError):
    """The requested stage move is not allowed."""


class StaleDealError(StageTransitionError):
    """The deal changed stage between read and write."""


class ConfigValidationError(EngineError):
    """A trigger or action config failed validation."""


class ActionError(EngineError):
    """Expected failure of one automation action."""


class WebhookAuthError(EngineError):
    """Inbound webhook call did not present the automation's security token."""
