"""
Funnel entities as loaded by the repository.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from app.engine.stages import DealState, Stage


@dataclass
class Funnel:
    id: str
    name: str
    owner_id: Optional[str] = None
    description: Optional[str] = None
    color: str = "#3B82F6"
    display_order: int = 0
    stages: list[Stage] = field(default_factory=list)


@dataclass
class Contact:
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Deal:
    id: str
    funnel_id: str
    stage_id: str
    entered_stage_at: datetime
    contact_id: Optional[str] = None
    owner_id: Optional[str] = None
    title: Optional[str] = None
    value: Decimal = Decimal("0")
    currency: str = "BRL"
    custom_fields: dict[str, Any] = field(default_factory=dict)
    closed_at: Optional[datetime] = None
    close_reason_id: Optional[str] = None
    conversation_id: Optional[str] = None
    version: int = 0

    # Joined for interpolation and webhook payloads
    contact: Optional[Contact] = None
    stage: Optional[Stage] = None
    funnel_name: Optional[str] = None

    @property
    def state(self) -> DealState:
        return DealState(
            funnel_id=self.funnel_id,
            stage_id=self.stage_id,
            entered_stage_at=self.entered_stage_at,
            closed_at=self.closed_at,
            close_reason_id=self.close_reason_id,
        )


@dataclass
class DealHistoryEntry:
    id: str
    deal_id: str
    from_stage_id: Optional[str]
    to_stage_id: str
    created_at: datetime
    notes: Optional[str] = None


@dataclass
class AutomationRule:
    id: str
    funnel_id: str
    name: str
    trigger_type: str
    action_type: str
    stage_id: Optional[str] = None
    is_active: bool = True
    trigger_config: dict[str, Any] = field(default_factory=dict)
    action_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleOutcome:
    rule_id: str
    success: bool
    error: Optional[str] = None
    rule_name: Optional[str] = None
    action_type: Optional[str] = None
    depth: int = 0
    detail: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "action_type": self.action_type,
            "success": self.success,
            "depth": self.depth,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.detail:
            out["detail"] = self.detail
        return out
