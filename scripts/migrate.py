"""
Funnel engine schema migration. Run locally with an owner DATABASE_URL.

Usage:
  python scripts/migrate.py

Creates the `funnel` schema and every table the engine reads or writes.
Safe to re-run (IF NOT EXISTS throughout).
"""
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

import asyncpg

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    print("ERROR: DATABASE_URL not set")
    sys.exit(1)

# (label, DDL) in dependency order
STATEMENTS = [
    ("schema funnel", "CREATE SCHEMA IF NOT EXISTS funnel"),
    ("funnel.funnels", """
        CREATE TABLE IF NOT EXISTS funnel.funnels (
            id            UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id      UUID,
            name          TEXT NOT NULL,
            description   TEXT,
            color         TEXT NOT NULL DEFAULT '#3B82F6',
            display_order INT NOT NULL DEFAULT 0,
            created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.funnel_stages", """
        CREATE TABLE IF NOT EXISTS funnel.funnel_stages (
            id            UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            funnel_id     UUID NOT NULL REFERENCES funnel.funnels(id) ON DELETE CASCADE,
            name          TEXT NOT NULL,
            color         TEXT NOT NULL DEFAULT '#3B82F6',
            display_order INT NOT NULL DEFAULT 0,
            is_final      BOOLEAN NOT NULL DEFAULT false,
            final_type    TEXT CHECK (final_type IN ('won', 'lost')),
            probability   INT NOT NULL DEFAULT 0 CHECK (probability BETWEEN 0 AND 100),
            created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (is_final = (final_type IS NOT NULL))
        )
    """),
    ("funnel.contacts", """
        CREATE TABLE IF NOT EXISTS funnel.contacts (
            id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id   UUID,
            name       TEXT,
            phone      TEXT,
            email      TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.funnel_close_reasons", """
        CREATE TABLE IF NOT EXISTS funnel.funnel_close_reasons (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id    UUID,
            funnel_id   UUID REFERENCES funnel.funnels(id) ON DELETE CASCADE,
            name        TEXT NOT NULL,
            reason_type TEXT NOT NULL CHECK (reason_type IN ('won', 'lost')),
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.funnel_deals", """
        CREATE TABLE IF NOT EXISTS funnel.funnel_deals (
            id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            funnel_id        UUID NOT NULL REFERENCES funnel.funnels(id) ON DELETE CASCADE,
            stage_id         UUID NOT NULL REFERENCES funnel.funnel_stages(id),
            contact_id       UUID REFERENCES funnel.contacts(id) ON DELETE SET NULL,
            owner_id         UUID,
            conversation_id  UUID,
            title            TEXT,
            value            NUMERIC(14, 2) NOT NULL DEFAULT 0,
            currency         TEXT NOT NULL DEFAULT 'BRL',
            custom_fields    JSONB NOT NULL DEFAULT '{}'::jsonb,
            entered_stage_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            closed_at        TIMESTAMPTZ,
            close_reason_id  UUID REFERENCES funnel.funnel_close_reasons(id) ON DELETE SET NULL,
            version          INT NOT NULL DEFAULT 0,
            created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.funnel_deal_history", """
        CREATE TABLE IF NOT EXISTS funnel.funnel_deal_history (
            id            UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            deal_id       UUID NOT NULL REFERENCES funnel.funnel_deals(id) ON DELETE CASCADE,
            from_stage_id UUID REFERENCES funnel.funnel_stages(id) ON DELETE SET NULL,
            to_stage_id   UUID NOT NULL REFERENCES funnel.funnel_stages(id),
            notes         TEXT,
            created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.funnel_automations", """
        CREATE TABLE IF NOT EXISTS funnel.funnel_automations (
            id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id       UUID,
            funnel_id      UUID NOT NULL REFERENCES funnel.funnels(id) ON DELETE CASCADE,
            stage_id       UUID REFERENCES funnel.funnel_stages(id) ON DELETE CASCADE,
            name           TEXT NOT NULL,
            is_active      BOOLEAN NOT NULL DEFAULT true,
            trigger_type   TEXT NOT NULL,
            trigger_config JSONB NOT NULL DEFAULT '{}'::jsonb,
            action_type    TEXT NOT NULL,
            action_config  JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.tags", """
        CREATE TABLE IF NOT EXISTS funnel.tags (
            id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id   UUID,
            name       TEXT NOT NULL,
            color      TEXT NOT NULL DEFAULT '#3B82F6',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE NULLS NOT DISTINCT (owner_id, name)
        )
    """),
    ("funnel.contact_tags", """
        CREATE TABLE IF NOT EXISTS funnel.contact_tags (
            contact_id UUID NOT NULL REFERENCES funnel.contacts(id) ON DELETE CASCADE,
            tag_id     UUID NOT NULL REFERENCES funnel.tags(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (contact_id, tag_id)
        )
    """),
    ("funnel.conversation_notes", """
        CREATE TABLE IF NOT EXISTS funnel.conversation_notes (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id        UUID,
            contact_id      UUID NOT NULL REFERENCES funnel.contacts(id) ON DELETE CASCADE,
            deal_id         UUID REFERENCES funnel.funnel_deals(id) ON DELETE CASCADE,
            conversation_id UUID,
            content         TEXT NOT NULL,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.deal_tasks", """
        CREATE TABLE IF NOT EXISTS funnel.deal_tasks (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id    UUID,
            deal_id     UUID NOT NULL REFERENCES funnel.funnel_deals(id) ON DELETE CASCADE,
            title       TEXT NOT NULL,
            description TEXT,
            due_date    DATE,
            priority    TEXT NOT NULL DEFAULT 'normal',
            status      TEXT NOT NULL DEFAULT 'pending',
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.chatbot_flows", """
        CREATE TABLE IF NOT EXISTS funnel.chatbot_flows (
            id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id   UUID,
            name       TEXT NOT NULL,
            is_active  BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.chatbot_executions", """
        CREATE TABLE IF NOT EXISTS funnel.chatbot_executions (
            id                    UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            flow_id               UUID NOT NULL REFERENCES funnel.chatbot_flows(id) ON DELETE CASCADE,
            contact_id            UUID NOT NULL REFERENCES funnel.contacts(id) ON DELETE CASCADE,
            deal_id               UUID REFERENCES funnel.funnel_deals(id) ON DELETE SET NULL,
            conversation_id       UUID,
            owner_id              UUID,
            status                TEXT NOT NULL DEFAULT 'pending',
            trigger_source        TEXT,
            trigger_automation_id UUID REFERENCES funnel.funnel_automations(id) ON DELETE SET NULL,
            variables             JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at            TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("funnel.forms", """
        CREATE TABLE IF NOT EXISTS funnel.forms (
            id         UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id   UUID,
            name       TEXT NOT NULL,
            slug       TEXT NOT NULL UNIQUE,
            status     TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ('draft', 'published', 'archived')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """),
    ("indexes", """
        CREATE INDEX IF NOT EXISTS funnel_stages_funnel_idx ON funnel.funnel_stages (funnel_id, display_order);
        CREATE INDEX IF NOT EXISTS funnel_deals_funnel_stage_idx ON funnel.funnel_deals (funnel_id, stage_id) WHERE closed_at IS NULL;
        CREATE INDEX IF NOT EXISTS funnel_deal_history_deal_idx ON funnel.funnel_deal_history (deal_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS funnel_automations_lookup_idx ON funnel.funnel_automations (funnel_id, trigger_type) WHERE is_active;
        CREATE INDEX IF NOT EXISTS funnel_deals_contact_idx ON funnel.funnel_deals (funnel_id, contact_id, created_at DESC)
    """),
]


async def migrate():
    conn = await asyncpg.connect(DATABASE_URL)
    try:
        print("Running funnel engine migration...")
        async with conn.transaction():
            for label, ddl in STATEMENTS:
                await conn.execute(ddl)
                print(f"OK {label}")
        print("\nMigration complete.")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(migrate())
