import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.engine import configs as cfg
from app.engine.routes import get_repo, router
from app.engine.stages import ON_DEAL_WON, ON_EXISTING_DEALS, ON_FUNNEL_ENTER, ON_STAGE_ENTER, ON_WEBHOOK


@pytest.fixture
def client(repo):
    app = FastAPI()
    app.include_router(router)

    async def _repo():
        yield repo

    app.dependency_overrides[get_repo] = _repo
    return TestClient(app)


def test_process_accepts_camel_case(client, repo, funnel, stages, deal):
    repo.add_rule(funnel, ON_STAGE_ENTER, cfg.SEND_MESSAGE, action_config={"message": "Olá {{nome}}"})

    resp = client.post("/engine/automations/process", json={
        "dealId": deal.id,
        "fromStageId": stages["Novo Lead"].id,
        "toStageId": stages["Contato Inicial"].id,
    })

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["results"][0]["success"] is True
    assert body["results"][0]["depth"] == 0


def test_process_unknown_deal_is_404(client):
    resp = client.post("/engine/automations/process", json={"deal_id": "missing"})
    assert resp.status_code == 404


def test_process_requires_deal_id(client):
    assert client.post("/engine/automations/process", json={}).status_code == 422


def test_move_and_history(client, repo, funnel, stages, deal, contact):
    repo.add_rule(funnel, ON_DEAL_WON, cfg.ADD_TAG, action_config={"tag_name": "cliente-fechado"})

    resp = client.post(f"/engine/deals/{deal.id}/move", json={
        "toStageId": stages["Ganho"].id,
        "notes": "assinou",
        "closeReasonId": "reason-1",
    })

    assert resp.status_code == 200
    body = resp.json()
    assert body["moved"] is True
    assert body["closed_at"] is not None
    assert [r["success"] for r in body["results"]] == [True]
    assert repo.tag_names(contact.id) == {"cliente-fechado"}

    history = client.get(f"/engine/deals/{deal.id}/history").json()["history"]
    assert len(history) == 1
    assert history[0]["notes"] == "assinou"
    assert history[0]["to_stage_id"] == stages["Ganho"].id


def test_move_across_funnels_is_409(client, repo, deal):
    other = repo.add_funnel("Outro")
    resp = client.post(f"/engine/deals/{deal.id}/move", json={"to_stage_id": other.stages[0].id})
    assert resp.status_code == 409


def test_move_missing_deal_is_404(client, stages):
    resp = client.post("/engine/deals/missing/move", json={"to_stage_id": stages["Ganho"].id})
    assert resp.status_code == 404


def test_history_missing_deal_is_404(client):
    assert client.get("/engine/deals/missing/history").status_code == 404


def test_create_deal_dispatches_funnel_enter(client, repo, funnel, stages, contact):
    repo.add_rule(funnel, ON_FUNNEL_ENTER, cfg.ADD_TAG, action_config={"tag_name": "novo"})

    resp = client.post("/engine/deals", json={
        "funnelId": funnel.id,
        "stageId": stages["Novo Lead"].id,
        "contactId": contact.id,
        "title": "Plano anual",
        "value": "150",
    })

    assert resp.status_code == 200
    body = resp.json()
    assert body["closed_at"] is None
    assert [r["action_type"] for r in body["results"]] == [cfg.ADD_TAG]
    assert repo.tag_names(contact.id) == {"novo"}


def test_create_funnel_and_stage(client, repo):
    resp = client.post("/engine/funnels", json={"name": "Parcerias"})
    assert resp.status_code == 200
    funnel = resp.json()
    assert len(funnel["stages"]) == 6

    stage = client.post(f"/engine/funnels/{funnel['id']}/stages", json={"name": "Onboarding"})
    assert stage.status_code == 200
    assert stage.json()["display_order"] == 6

    bad = client.post(f"/engine/funnels/{funnel['id']}/stages", json={"name": "X", "isFinal": True})
    assert bad.status_code == 422
    assert client.post("/engine/funnels/missing/stages", json={"name": "X"}).status_code == 404


def test_create_automation_validates_configs(client, repo, funnel, stages):
    ok = client.post("/engine/automations", json={
        "funnelId": funnel.id,
        "stageId": stages["Proposta Enviada"].id,
        "name": "Follow-up",
        "triggerType": ON_STAGE_ENTER,
        "actionType": cfg.CREATE_TASK,
        "actionConfig": {"task_title": "Ligar para {{nome}}", "due_days": 2},
    })
    assert ok.status_code == 200
    assert ok.json()["action_config"]["due_days"] == 2
    assert len(repo.rules) == 1

    bad = client.post("/engine/automations", json={
        "funnelId": funnel.id,
        "name": "Mover",
        "triggerType": ON_STAGE_ENTER,
        "actionType": cfg.MOVE_STAGE,
        "actionConfig": {},
    })
    assert bad.status_code == 422
    assert "target_stage_id" in bad.json()["detail"]

    unknown = client.post("/engine/automations", json={
        "funnelId": funnel.id,
        "name": "???",
        "triggerType": ON_STAGE_ENTER,
        "actionType": "launch_rocket",
    })
    assert unknown.status_code == 422
    assert len(repo.rules) == 1


def test_create_automation_rejects_foreign_stage(client, repo, funnel):
    other = repo.add_funnel("Outro")
    resp = client.post("/engine/automations", json={
        "funnelId": funnel.id,
        "stageId": other.stages[0].id,
        "name": "x",
        "triggerType": ON_STAGE_ENTER,
        "actionType": cfg.ADD_NOTE,
    })
    assert resp.status_code == 422


def test_run_existing(client, repo, funnel, deal, contact):
    rule = repo.add_rule(funnel, ON_EXISTING_DEALS, cfg.ADD_TAG, action_config={"tag_name": "reativar"})
    other = repo.add_rule(funnel, ON_STAGE_ENTER, cfg.ADD_NOTE)

    resp = client.post(f"/engine/automations/{rule.id}/run-existing")
    assert resp.status_code == 200
    assert resp.json()["processed"] == 1
    assert repo.tag_names(contact.id) == {"reativar"}

    assert client.post(f"/engine/automations/{other.id}/run-existing").status_code == 400
    assert client.post("/engine/automations/missing/run-existing").status_code == 404


def test_inbound_webhook(client, repo, funnel, deal, contact):
    rule = repo.add_rule(funnel, ON_WEBHOOK, cfg.ADD_NOTE, trigger_config={"security_token": "s3cret"},
                         action_config={"note_content": "Pedido {{pedido}} de {{nome}}"})
    url = f"/engine/automations/{rule.id}/webhook"

    assert client.post(url, json={"dealId": deal.id}).status_code == 401
    assert client.post(url, params={"token": "errado"}, json={"dealId": deal.id}).status_code == 401

    resp = client.post(url, params={"token": "s3cret"}, json={
        "contactPhone": "+55 (11) 99999-0000",
        "customData": {"pedido": 42},
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["deal_id"] == deal.id
    assert body["results"][0]["success"] is True
    assert repo.notes[-1]["content"] == "Pedido 42 de Ana"


def test_inbound_webhook_not_found(client, repo, funnel, deal):
    rule = repo.add_rule(funnel, ON_WEBHOOK, cfg.ADD_NOTE)
    url = f"/engine/automations/{rule.id}/webhook"

    assert client.post(url).status_code == 404
    assert client.post(url, json={"contact_id": "ninguem"}).status_code == 404
    assert client.post("/engine/automations/missing/webhook", json={"deal_id": deal.id}).status_code == 404


def test_create_automation_rejects_empty_trigger_condition(client, repo, funnel):
    resp = client.post("/engine/automations", json={
        "funnelId": funnel.id,
        "name": "Tag",
        "triggerType": "on_tag_added",
        "triggerConfig": {"tag_name": ""},
        "actionType": cfg.ADD_NOTE,
    })
    assert resp.status_code == 422
    assert repo.rules == []
