"""
Engine data access.

EngineRepository is the only I/O seam the engine uses. PgEngineRepository
implements it on one asyncpg connection; all tables live in the `funnel`
schema (see scripts/migrate.py).
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Protocol

import asyncpg

from app.engine.models import AutomationRule, Contact, Deal, DealHistoryEntry, Funnel
from app.engine.stages import DealState, Stage


class EngineRepository(Protocol):
    def transaction(self) -> Any: ...

    # Funnels and stages
    async def get_funnel(self, funnel_id: str) -> Optional[Funnel]: ...
    async def insert_funnel(self, *, owner_id: Optional[str], name: str, description: Optional[str], color: str) -> Funnel: ...
    async def get_stage(self, stage_id: str) -> Optional[Stage]: ...
    async def list_stages(self, funnel_id: str) -> list[Stage]: ...
    async def max_stage_order(self, funnel_id: str) -> Optional[int]: ...
    async def insert_stage(self, *, funnel_id: str, name: str, color: str, display_order: int,
                           is_final: bool, final_type: Optional[str], probability: int) -> Stage: ...
    async def find_final_stage(self, funnel_id: str, final_type: str) -> Optional[Stage]: ...

    # Deals
    async def get_deal(self, deal_id: str) -> Optional[Deal]: ...
    async def insert_deal(self, *, funnel_id: str, stage_id: str, contact_id: Optional[str],
                          owner_id: Optional[str], title: Optional[str], value: Decimal,
                          currency: str, conversation_id: Optional[str],
                          custom_fields: dict[str, Any], state: DealState) -> str: ...
    async def update_deal_state(self, deal_id: str, *, expected_stage_id: str,
                                expected_version: int, state: DealState) -> bool: ...
    async def insert_history(self, *, deal_id: str, from_stage_id: Optional[str],
                             to_stage_id: str, notes: Optional[str]) -> str: ...
    async def list_history(self, deal_id: str) -> list[DealHistoryEntry]: ...
    async def merge_custom_field(self, deal_id: str, key: str, value: Any) -> None: ...
    async def update_deal_value(self, deal_id: str, value: Decimal) -> None: ...
    async def list_open_deal_ids(self, funnel_id: str, stage_id: Optional[str] = None) -> list[str]: ...
    async def find_latest_deal_id(self, funnel_id: str, contact_id: str) -> Optional[str]: ...
    async def find_contact_by_phone(self, owner_id: Optional[str], digits: str) -> Optional[str]: ...

    # Automation rules
    async def list_active_rules(self, funnel_id: str, trigger_kinds: list[str]) -> list[AutomationRule]: ...
    async def get_rule(self, rule_id: str) -> Optional[AutomationRule]: ...
    async def insert_rule(self, *, owner_id: Optional[str], funnel_id: str, stage_id: Optional[str],
                          name: str, is_active: bool, trigger_type: str, trigger_config: dict[str, Any],
                          action_type: str, action_config: dict[str, Any]) -> AutomationRule: ...

    # Contact / tag store
    async def find_tag(self, owner_id: Optional[str], name: str) -> Optional[str]: ...
    async def find_or_create_tag(self, owner_id: Optional[str], name: str) -> str: ...
    async def attach_tag(self, contact_id: str, tag_id: str) -> None: ...
    async def detach_tag(self, contact_id: str, tag_id: str) -> bool: ...

    # Chatbot flow and form store
    async def get_chatbot_flow(self, flow_id: str) -> Optional[dict[str, Any]]: ...
    async def get_published_form(self, form_id: str) -> Optional[dict[str, Any]]: ...
    async def insert_chatbot_execution(self, *, flow_id: str, contact_id: str, deal_id: str,
                                       conversation_id: Optional[str], owner_id: Optional[str],
                                       trigger_automation_id: str, variables: dict[str, Any]) -> str: ...

    # Notes / tasks
    async def insert_note(self, *, owner_id: Optional[str], contact_id: str, deal_id: str,
                          conversation_id: Optional[str], content: str) -> str: ...
    async def insert_task(self, *, owner_id: Optional[str], deal_id: str, title: str,
                          description: str, due_date: date, priority: str) -> str: ...


# ---------------------------------------------------------------------------
# SQL: Funnels and stages
# ---------------------------------------------------------------------------

LOAD_FUNNEL_SQL = """
SELECT id::text, owner_id::text, name, description, color, display_order
FROM funnel.funnels
WHERE id = $1::uuid;
"""

INSERT_FUNNEL_SQL = """
INSERT INTO funnel.funnels (owner_id, name, description, color)
VALUES ($1::uuid, $2::text, $3::text, $4::text)
RETURNING id::text, owner_id::text, name, description, color, display_order;
"""

STAGE_COLUMNS = """
    id::text, funnel_id::text, name, color, display_order,
    is_final, final_type, probability
"""

LOAD_STAGE_SQL = f"""
SELECT {STAGE_COLUMNS}
FROM funnel.funnel_stages
WHERE id = $1::uuid;
"""

LIST_STAGES_SQL = f"""
SELECT {STAGE_COLUMNS}
FROM funnel.funnel_stages
WHERE funnel_id = $1::uuid
ORDER BY display_order ASC, created_at ASC;
"""

MAX_STAGE_ORDER_SQL = """
SELECT MAX(display_order)
FROM funnel.funnel_stages
WHERE funnel_id = $1::uuid;
"""

INSERT_STAGE_SQL = f"""
INSERT INTO funnel.funnel_stages (
    funnel_id, name, color, display_order, is_final, final_type, probability
)
VALUES ($1::uuid, $2::text, $3::text, $4::int, $5::boolean, $6::text, $7::int)
RETURNING {STAGE_COLUMNS};
"""

FIND_FINAL_STAGE_SQL = f"""
SELECT {STAGE_COLUMNS}
FROM funnel.funnel_stages
WHERE funnel_id = $1::uuid
  AND is_final = TRUE
  AND final_type = $2::text
ORDER BY display_order ASC
LIMIT 1;
"""

# ---------------------------------------------------------------------------
# SQL: Deals and history
# ---------------------------------------------------------------------------

LOAD_DEAL_SQL = """
SELECT d.id::text AS id,
       d.funnel_id::text AS funnel_id,
       d.stage_id::text AS stage_id,
       d.contact_id::text AS contact_id,
       d.owner_id::text AS owner_id,
       d.conversation_id::text AS conversation_id,
       d.title, d.value, d.currency, d.custom_fields,
       d.entered_stage_at, d.closed_at,
       d.close_reason_id::text AS close_reason_id,
       d.version,
       c.name AS contact_name, c.phone AS contact_phone, c.email AS contact_email,
       s.name AS stage_name, s.color AS stage_color, s.display_order AS stage_display_order,
       s.is_final AS stage_is_final, s.final_type AS stage_final_type,
       s.probability AS stage_probability,
       f.name AS funnel_name
FROM funnel.funnel_deals d
JOIN funnel.funnel_stages s ON s.id = d.stage_id
JOIN funnel.funnels f ON f.id = d.funnel_id
LEFT JOIN funnel.contacts c ON c.id = d.contact_id
WHERE d.id = $1::uuid;
"""

INSERT_DEAL_SQL = """
INSERT INTO funnel.funnel_deals (
    funnel_id, stage_id, contact_id, owner_id, title,
    value, currency, conversation_id, custom_fields,
    entered_stage_at, closed_at, close_reason_id
)
VALUES (
    $1::uuid, $2::uuid, $3::uuid, $4::uuid, $5::text,
    $6::numeric, $7::text, $8::uuid, COALESCE($9::jsonb, '{}'::jsonb),
    $10::timestamptz, $11::timestamptz, $12::uuid
)
RETURNING id::text;
"""

# Compare-and-swap on (stage_id, version): concurrent moves of one deal lose cleanly.
UPDATE_DEAL_STATE_SQL = """
UPDATE funnel.funnel_deals
SET stage_id = $4::uuid,
    entered_stage_at = $5::timestamptz,
    closed_at = $6::timestamptz,
    close_reason_id = $7::uuid,
    version = version + 1,
    updated_at = now()
WHERE id = $1::uuid
  AND stage_id = $2::uuid
  AND version = $3::int
RETURNING id::text;
"""

INSERT_HISTORY_SQL = """
INSERT INTO funnel.funnel_deal_history (deal_id, from_stage_id, to_stage_id, notes)
VALUES ($1::uuid, $2::uuid, $3::uuid, $4::text)
RETURNING id::text;
"""

LIST_HISTORY_SQL = """
SELECT id::text, deal_id::text, from_stage_id::text, to_stage_id::text, notes, created_at
FROM funnel.funnel_deal_history
WHERE deal_id = $1::uuid
ORDER BY created_at DESC;
"""

MERGE_CUSTOM_FIELD_SQL = """
UPDATE funnel.funnel_deals
SET custom_fields = COALESCE(custom_fields, '{}'::jsonb) || jsonb_build_object($2::text, $3::jsonb),
    version = version + 1,
    updated_at = now()
WHERE id = $1::uuid;
"""

UPDATE_DEAL_VALUE_SQL = """
UPDATE funnel.funnel_deals
SET value = $2::numeric,
    version = version + 1,
    updated_at = now()
WHERE id = $1::uuid;
"""

LIST_OPEN_DEALS_SQL = """
SELECT id::text
FROM funnel.funnel_deals
WHERE funnel_id = $1::uuid
  AND closed_at IS NULL
  AND ($2::uuid IS NULL OR stage_id = $2::uuid)
ORDER BY created_at ASC;
"""

FIND_LATEST_DEAL_SQL = """
SELECT id::text
FROM funnel.funnel_deals
WHERE funnel_id = $1::uuid
  AND contact_id = $2::uuid
ORDER BY created_at DESC
LIMIT 1;
"""

# Stored phones may carry formatting; compare on digits, suffix match for country codes.
FIND_CONTACT_BY_PHONE_SQL = r"""
SELECT id::text
FROM funnel.contacts
WHERE owner_id IS NOT DISTINCT FROM $1::uuid
  AND regexp_replace(phone, '\D', '', 'g') LIKE '%' || $2::text
ORDER BY created_at ASC
LIMIT 1;
"""

# ---------------------------------------------------------------------------
# SQL: Automation rules
# ---------------------------------------------------------------------------

RULE_COLUMNS = """
    id::text, funnel_id::text, stage_id::text, name, is_active,
    trigger_type, trigger_config, action_type, action_config
"""

LIST_ACTIVE_RULES_SQL = f"""
SELECT {RULE_COLUMNS}
FROM funnel.funnel_automations
WHERE funnel_id = $1::uuid
  AND is_active = TRUE
  AND trigger_type = ANY($2::text[])
ORDER BY created_at ASC;
"""

LOAD_RULE_SQL = f"""
SELECT {RULE_COLUMNS}
FROM funnel.funnel_automations
WHERE id = $1::uuid;
"""

INSERT_RULE_SQL = f"""
INSERT INTO funnel.funnel_automations (
    owner_id, funnel_id, stage_id, name, is_active,
    trigger_type, trigger_config, action_type, action_config
)
VALUES (
    $1::uuid, $2::uuid, $3::uuid, $4::text, $5::boolean,
    $6::text, $7::jsonb, $8::text, $9::jsonb
)
RETURNING {RULE_COLUMNS};
"""

# ---------------------------------------------------------------------------
# SQL: Tags, chatbot flows, notes, tasks
# ---------------------------------------------------------------------------

FIND_TAG_SQL = """
SELECT id::text
FROM funnel.tags
WHERE owner_id IS NOT DISTINCT FROM $1::uuid
  AND name = $2::text
LIMIT 1;
"""

UPSERT_TAG_SQL = """
INSERT INTO funnel.tags (owner_id, name, color)
VALUES ($1::uuid, $2::text, $3::text)
ON CONFLICT (owner_id, name) DO UPDATE SET name = EXCLUDED.name
RETURNING id::text;
"""

ATTACH_TAG_SQL = """
INSERT INTO funnel.contact_tags (contact_id, tag_id)
VALUES ($1::uuid, $2::uuid)
ON CONFLICT (contact_id, tag_id) DO NOTHING;
"""

DETACH_TAG_SQL = """
DELETE FROM funnel.contact_tags
WHERE contact_id = $1::uuid
  AND tag_id = $2::uuid
RETURNING tag_id::text;
"""

LOAD_CHATBOT_FLOW_SQL = """
SELECT id::text, name, is_active
FROM funnel.chatbot_flows
WHERE id = $1::uuid;
"""

LOAD_PUBLISHED_FORM_SQL = """
SELECT id::text, name, slug
FROM funnel.forms
WHERE id = $1::uuid
  AND status = 'published';
"""

INSERT_CHATBOT_EXECUTION_SQL = """
INSERT INTO funnel.chatbot_executions (
    flow_id, contact_id, deal_id, conversation_id, owner_id,
    status, trigger_source, trigger_automation_id, variables
)
VALUES (
    $1::uuid, $2::uuid, $3::uuid, $4::uuid, $5::uuid,
    'pending', 'funnel_automation', $6::uuid, $7::jsonb
)
RETURNING id::text;
"""

INSERT_NOTE_SQL = """
INSERT INTO funnel.conversation_notes (owner_id, contact_id, deal_id, conversation_id, content)
VALUES ($1::uuid, $2::uuid, $3::uuid, $4::uuid, $5::text)
RETURNING id::text;
"""

INSERT_TASK_SQL = """
INSERT INTO funnel.deal_tasks (owner_id, deal_id, title, description, due_date, priority)
VALUES ($1::uuid, $2::uuid, $3::text, $4::text, $5::date, $6::text)
RETURNING id::text;
"""

NEW_TAG_COLOR = "#3B82F6"


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            return {}
    return {}


def _stage_from_row(row: Any) -> Stage:
    return Stage(
        id=row["id"],
        funnel_id=row["funnel_id"],
        name=row["name"],
        color=row["color"],
        display_order=row["display_order"],
        is_final=bool(row["is_final"]),
        final_type=row["final_type"],
        probability=row["probability"] or 0,
    )


def _rule_from_row(row: Any) -> AutomationRule:
    return AutomationRule(
        id=row["id"],
        funnel_id=row["funnel_id"],
        stage_id=row["stage_id"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        trigger_type=row["trigger_type"],
        trigger_config=_as_dict(row["trigger_config"]),
        action_type=row["action_type"],
        action_config=_as_dict(row["action_config"]),
    )


def _deal_from_row(row: Any) -> Deal:
    contact = None
    if row["contact_id"]:
        contact = Contact(
            id=row["contact_id"],
            name=row["contact_name"],
            phone=row["contact_phone"],
            email=row["contact_email"],
        )
    stage = Stage(
        id=row["stage_id"],
        funnel_id=row["funnel_id"],
        name=row["stage_name"],
        color=row["stage_color"],
        display_order=row["stage_display_order"],
        is_final=bool(row["stage_is_final"]),
        final_type=row["stage_final_type"],
        probability=row["stage_probability"] or 0,
    )
    return Deal(
        id=row["id"],
        funnel_id=row["funnel_id"],
        stage_id=row["stage_id"],
        contact_id=row["contact_id"],
        owner_id=row["owner_id"],
        conversation_id=row["conversation_id"],
        title=row["title"],
        value=row["value"] if row["value"] is not None else Decimal("0"),
        currency=row["currency"] or "BRL",
        custom_fields=_as_dict(row["custom_fields"]),
        entered_stage_at=row["entered_stage_at"],
        closed_at=row["closed_at"],
        close_reason_id=row["close_reason_id"],
        version=row["version"],
        contact=contact,
        stage=stage,
        funnel_name=row["funnel_name"],
    )


class PgEngineRepository:
    """EngineRepository on one asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.conn.transaction():
            yield

    async def _fetchrow_by_id(self, sql: str, *args: Any) -> Optional[asyncpg.Record]:
        # asyncpg rejects ids that are not UUIDs while encoding; no row can match them.
        try:
            return await self.conn.fetchrow(sql, *args)
        except asyncpg.DataError:
            return None

    # -- funnels and stages -------------------------------------------------

    async def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        row = await self._fetchrow_by_id(LOAD_FUNNEL_SQL, funnel_id)
        if not row:
            return None
        funnel = Funnel(**dict(row))
        funnel.stages = await self.list_stages(funnel_id)
        return funnel

    async def insert_funnel(self, *, owner_id, name, description, color) -> Funnel:
        row = await self.conn.fetchrow(INSERT_FUNNEL_SQL, owner_id, name, description, color)
        return Funnel(**dict(row))

    async def get_stage(self, stage_id: str) -> Optional[Stage]:
        row = await self._fetchrow_by_id(LOAD_STAGE_SQL, stage_id)
        return _stage_from_row(row) if row else None

    async def list_stages(self, funnel_id: str) -> list[Stage]:
        rows = await self.conn.fetch(LIST_STAGES_SQL, funnel_id)
        return [_stage_from_row(r) for r in rows]

    async def max_stage_order(self, funnel_id: str) -> Optional[int]:
        return await self.conn.fetchval(MAX_STAGE_ORDER_SQL, funnel_id)

    async def insert_stage(self, *, funnel_id, name, color, display_order, is_final, final_type, probability) -> Stage:
        row = await self.conn.fetchrow(
            INSERT_STAGE_SQL,
            funnel_id,
            name,
            color,
            display_order,
            is_final,
            final_type,
            probability,
        )
        return _stage_from_row(row)

    async def find_final_stage(self, funnel_id: str, final_type: str) -> Optional[Stage]:
        row = await self.conn.fetchrow(FIND_FINAL_STAGE_SQL, funnel_id, final_type)
        return _stage_from_row(row) if row else None

    # -- deals --------------------------------------------------------------

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        row = await self._fetchrow_by_id(LOAD_DEAL_SQL, deal_id)
        return _deal_from_row(row) if row else None

    async def insert_deal(
        self, *, funnel_id, stage_id, contact_id, owner_id, title,
        value, currency, conversation_id, custom_fields, state,
    ) -> str:
        return await self.conn.fetchval(
            INSERT_DEAL_SQL,
            funnel_id,
            stage_id,
            contact_id,
            owner_id,
            title,
            value,
            currency,
            conversation_id,
            json.dumps(custom_fields or {}, default=str),
            state.entered_stage_at,
            state.closed_at,
            state.close_reason_id,
        )

    async def update_deal_state(self, deal_id, *, expected_stage_id, expected_version, state) -> bool:
        updated = await self.conn.fetchval(
            UPDATE_DEAL_STATE_SQL,
            deal_id,
            expected_stage_id,
            expected_version,
            state.stage_id,
            state.entered_stage_at,
            state.closed_at,
            state.close_reason_id,
        )
        return updated is not None

    async def insert_history(self, *, deal_id, from_stage_id, to_stage_id, notes) -> str:
        return await self.conn.fetchval(INSERT_HISTORY_SQL, deal_id, from_stage_id, to_stage_id, notes)

    async def list_history(self, deal_id: str) -> list[DealHistoryEntry]:
        rows = await self.conn.fetch(LIST_HISTORY_SQL, deal_id)
        return [DealHistoryEntry(**dict(r)) for r in rows]

    async def merge_custom_field(self, deal_id: str, key: str, value: Any) -> None:
        await self.conn.execute(MERGE_CUSTOM_FIELD_SQL, deal_id, key, json.dumps(value, default=str))

    async def update_deal_value(self, deal_id: str, value: Decimal) -> None:
        await self.conn.execute(UPDATE_DEAL_VALUE_SQL, deal_id, value)

    async def list_open_deal_ids(self, funnel_id: str, stage_id: Optional[str] = None) -> list[str]:
        rows = await self.conn.fetch(LIST_OPEN_DEALS_SQL, funnel_id, stage_id)
        return [r["id"] for r in rows]

    async def find_latest_deal_id(self, funnel_id: str, contact_id: str) -> Optional[str]:
        row = await self._fetchrow_by_id(FIND_LATEST_DEAL_SQL, funnel_id, contact_id)
        return row["id"] if row else None

    async def find_contact_by_phone(self, owner_id: Optional[str], digits: str) -> Optional[str]:
        row = await self._fetchrow_by_id(FIND_CONTACT_BY_PHONE_SQL, owner_id, digits)
        return row["id"] if row else None

    # -- automation rules ---------------------------------------------------

    async def list_active_rules(self, funnel_id: str, trigger_kinds: list[str]) -> list[AutomationRule]:
        rows = await self.conn.fetch(LIST_ACTIVE_RULES_SQL, funnel_id, sorted(set(trigger_kinds)))
        return [_rule_from_row(r) for r in rows]

    async def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        row = await self._fetchrow_by_id(LOAD_RULE_SQL, rule_id)
        return _rule_from_row(row) if row else None

    async def insert_rule(
        self, *, owner_id, funnel_id, stage_id, name, is_active,
        trigger_type, trigger_config, action_type, action_config,
    ) -> AutomationRule:
        row = await self.conn.fetchrow(
            INSERT_RULE_SQL,
            owner_id,
            funnel_id,
            stage_id,
            name,
            is_active,
            trigger_type,
            json.dumps(trigger_config or {}),
            action_type,
            json.dumps(action_config or {}),
        )
        return _rule_from_row(row)

    # -- contact / tag store ------------------------------------------------

    async def find_tag(self, owner_id: Optional[str], name: str) -> Optional[str]:
        return await self.conn.fetchval(FIND_TAG_SQL, owner_id, name)

    async def find_or_create_tag(self, owner_id: Optional[str], name: str) -> str:
        existing = await self.find_tag(owner_id, name)
        if existing:
            return existing
        return await self.conn.fetchval(UPSERT_TAG_SQL, owner_id, name, NEW_TAG_COLOR)

    async def attach_tag(self, contact_id: str, tag_id: str) -> None:
        await self.conn.execute(ATTACH_TAG_SQL, contact_id, tag_id)

    async def detach_tag(self, contact_id: str, tag_id: str) -> bool:
        removed = await self.conn.fetchval(DETACH_TAG_SQL, contact_id, tag_id)
        return removed is not None

    # -- chatbot flows and forms --------------------------------------------

    async def get_chatbot_flow(self, flow_id: str) -> Optional[dict[str, Any]]:
        row = await self._fetchrow_by_id(LOAD_CHATBOT_FLOW_SQL, flow_id)
        return dict(row) if row else None

    async def get_published_form(self, form_id: str) -> Optional[dict[str, Any]]:
        row = await self._fetchrow_by_id(LOAD_PUBLISHED_FORM_SQL, form_id)
        return dict(row) if row else None

    async def insert_chatbot_execution(
        self, *, flow_id, contact_id, deal_id, conversation_id, owner_id,
        trigger_automation_id, variables,
    ) -> str:
        return await self.conn.fetchval(
            INSERT_CHATBOT_EXECUTION_SQL,
            flow_id,
            contact_id,
            deal_id,
            conversation_id,
            owner_id,
            trigger_automation_id,
            json.dumps(variables, default=str),
        )

    # -- notes / tasks ------------------------------------------------------

    async def insert_note(self, *, owner_id, contact_id, deal_id, conversation_id, content) -> str:
        return await self.conn.fetchval(INSERT_NOTE_SQL, owner_id, contact_id, deal_id, conversation_id, content)

    async def insert_task(self, *, owner_id, deal_id, title, description, due_date, priority) -> str:
        return await self.conn.fetchval(INSERT_TASK_SQL, owner_id, deal_id, title, description, due_date, priority)
