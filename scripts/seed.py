"""
Demo seed: a funnel with the default stages, one contact, one deal and a
handful of automations. Run after scripts/migrate.py.

Usage:
  python scripts/seed.py --name "Vendas" --contact "Ana" --phone "+5511999990000"

Options:
  --name     Funnel name (default: Funil de Vendas)
  --contact  Contact name (default: Ana)
  --phone    Contact phone
  --value    Deal value (default: 150)
"""
import argparse
import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

import asyncpg

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    print("ERROR: DATABASE_URL not set")
    sys.exit(1)

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from app.engine import configs as cfg
from app.engine import stages
from app.engine.deals import create_deal, create_funnel
from app.engine.repository import PgEngineRepository


def _stage(funnel, name):
    return next(s for s in funnel.stages if s.name == name)


async def seed(name: str, contact_name: str, phone: str, value: Decimal):
    conn = await asyncpg.connect(DATABASE_URL)
    repo = PgEngineRepository(conn)
    try:
        funnel = await create_funnel(repo, name=name)
        print(f"OK Funnel: {funnel.name} ({funnel.id}), {len(funnel.stages)} stages")

        contact_id = await conn.fetchval(
            "INSERT INTO funnel.contacts (name, phone) VALUES ($1, $2) RETURNING id::text",
            contact_name,
            phone,
        )
        print(f"OK Contact: {contact_name} ({contact_id})")

        first = funnel.stages[0]
        proposal = _stage(funnel, "Proposta Enviada")
        rules = [
            dict(
                name="Boas-vindas",
                stage_id=None,
                trigger_type=stages.ON_FUNNEL_ENTER,
                action_type=cfg.SEND_MESSAGE,
                action_config={"message": "Olá {{nome}}, obrigado pelo contato!"},
            ),
            dict(
                name="Nota de proposta",
                stage_id=proposal.id,
                trigger_type=stages.ON_STAGE_ENTER,
                action_type=cfg.ADD_NOTE,
                action_config={"note_content": "Proposta de {{valor}} enviada para {{nome}} em {{data}}"},
            ),
            dict(
                name="Follow-up da proposta",
                stage_id=proposal.id,
                trigger_type=stages.ON_STAGE_ENTER,
                action_type=cfg.CREATE_TASK,
                action_config={"task_title": "Ligar para {{nome}}", "due_days": 2},
            ),
            dict(
                name="Tag cliente fechado",
                stage_id=None,
                trigger_type=stages.ON_DEAL_WON,
                action_type=cfg.ADD_TAG,
                action_config={"tag_name": "cliente-fechado"},
            ),
            dict(
                name="Interesse por palavra-chave",
                stage_id=first.id,
                trigger_type=stages.ON_KEYWORD_RECEIVED,
                trigger_config={"keywords": "preço, proposta, orçamento"},
                action_type=cfg.MOVE_STAGE,
                action_config={"target_stage_id": proposal.id},
            ),
        ]
        for rule in rules:
            trigger_config, action_config = cfg.validate_rule_configs(
                rule["trigger_type"],
                rule.get("trigger_config"),
                rule["action_type"],
                rule["action_config"],
            )
            saved = await repo.insert_rule(
                owner_id=None,
                funnel_id=funnel.id,
                stage_id=rule["stage_id"],
                name=rule["name"],
                is_active=True,
                trigger_type=rule["trigger_type"],
                trigger_config=trigger_config,
                action_type=rule["action_type"],
                action_config=action_config,
            )
            print(f"OK Automation: {saved.name} ({saved.trigger_type} -> {saved.action_type})")

        deal = await create_deal(
            repo,
            funnel_id=funnel.id,
            stage_id=first.id,
            contact_id=contact_id,
            title=f"Negócio {contact_name}",
            value=value,
        )
        print(f"OK Deal: {deal.title} ({deal.id}) in {first.name}")

        print("\nSeed complete.")
    finally:
        await conn.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed a demo funnel")
    parser.add_argument("--name", default="Funil de Vendas")
    parser.add_argument("--contact", default="Ana")
    parser.add_argument("--phone", default="+5511999990000")
    parser.add_argument("--value", default="150")
    args = parser.parse_args()
    asyncio.run(seed(args.name, args.contact, args.phone, Decimal(args.value)))
