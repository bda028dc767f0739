import pytest
from fastapi.testclient import TestClient

from settlement import crud
from settlement.ledger import SettlementLedger
from settlement.main import app
from settlement.models import TaxStatus

ADMIN = {"X-Role": "admin"}


def _agent_headers(agent_id):
    return {"X-Role": "agent", "X-Agent-Id": str(agent_id)}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _setup_tiers(client):
    resp = client.put(
        "/tiers",
        json={
            "tiers": [
                {"min_monthly_revenue": 0, "rate_percent": "7"},
                {"min_monthly_revenue": 1_000_000, "rate_percent": "10"},
            ]
        },
        headers=ADMIN,
    )
    assert resp.status_code == 200


def _create_agent(client, name="API Agent", tax_status="individual"):
    resp = client.post(
        "/agents",
        json={"full_name": name, "email": "agent@example.com", "email_verified": True, "tax_status": tax_status},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def _create_clinic(client, name="Клиника Здоровье"):
    resp = client.post("/clinics", json={"name": name}, headers=ADMIN)
    assert resp.status_code == 201
    return resp.json()["id"]


def _settle_one_referral(client, agent_id, clinic_id):
    resp = client.post(
        "/referrals",
        json={"patient_full_name": "Иванов Иван Иванович", "patient_birthdate": "15.03.1985", "clinic_ids": [clinic_id]},
        headers=_agent_headers(agent_id),
    )
    assert resp.status_code == 201

    preview = client.post(
        f"/reconciliation/{clinic_id}/preview",
        json={
            "rows": [
                {
                    "row_index": 2,
                    "patient_name": "иванов  иван иванович",
                    "birthdate": "15.03.1985",
                    "visit_date": "20.02.2026",
                    "amount": 300_000,
                }
            ]
        },
        headers=ADMIN,
    )
    assert preview.status_code == 200
    matched = preview.json()["matched"]
    assert len(matched) == 1
    assert matched[0]["clinic_id"] == clinic_id

    item = {
        key: matched[0][key]
        for key in ("referral_id", "visit_date", "amount", "referral_version", "duplicate_referral_ids", "clinic_id", "row_index")
    }
    commit = client.post("/reconciliation/commit", json={"items": [item]}, headers=ADMIN)
    assert commit.status_code == 200
    return commit.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_missing_identity_gets_401(client):
    resp = client.get("/tiers")
    assert resp.status_code == 401
    assert resp.json().get("detail") == "Not authenticated"


def test_agent_cannot_use_admin_routes(client):
    agent_id = _create_agent(client)
    resp = client.put("/tiers", json={"tiers": [{"min_monthly_revenue": 0, "rate_percent": "5"}]}, headers=_agent_headers(agent_id))
    assert resp.status_code == 403


def test_invalid_tier_table_is_rejected(client):
    resp = client.put(
        "/tiers",
        json={"tiers": [{"min_monthly_revenue": 500, "rate_percent": "5"}]},
        headers=ADMIN,
    )
    assert resp.status_code == 422
    assert "zero threshold" in resp.json()["detail"]


def test_commit_credits_the_agent_balance(client):
    _setup_tiers(client)
    agent_id = _create_agent(client)
    clinic_id = _create_clinic(client)

    summary = _settle_one_referral(client, agent_id, clinic_id)

    assert summary["updated_count"] == 1
    assert summary["commission_total"] == 21_000
    balance = client.get("/agents/me/balance", headers=_agent_headers(agent_id)).json()
    assert balance["available_balance"] == 21_000
    assert balance["paid_referrals"] == 1

    statement = client.get(f"/agents/{agent_id}/statement", headers=ADMIN).json()
    assert statement["totals"]["commission_amount"] == 21_000


def test_payment_request_over_balance_returns_400(client):
    _setup_tiers(client)
    agent_id = _create_agent(client)
    _settle_one_referral(client, agent_id, _create_clinic(client))

    resp = client.post("/payments", json={"amount": 30_000}, headers=_agent_headers(agent_id))

    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["kind"] == "insufficient_funds"
    assert detail["available_balance"] == 21_000
    assert "current_state" not in detail


def test_payment_lifecycle_through_the_api(client):
    _setup_tiers(client)
    agent_id = _create_agent(client)
    other_id = _create_agent(client, name="Other Agent")
    _settle_one_referral(client, agent_id, _create_clinic(client))
    headers = _agent_headers(agent_id)

    created = client.post("/payments", json={"amount": 10_000}, headers=headers)
    assert created.status_code == 201
    payment = created.json()
    assert (payment["tax_amount"], payment["social_amount"], payment["net_amount"]) == (1_300, 3_000, 5_700)
    payment_id = payment["id"]

    assert client.get(f"/payments/{payment_id}", headers=_agent_headers(other_id)).status_code == 404

    act = client.post(f"/payments/{payment_id}/act", headers=headers).json()
    assert act["act_number"].startswith("ACT-")

    dispatch = client.post(f"/payments/{payment_id}/send-for-signing", headers=headers)
    assert dispatch.status_code == 200
    assert dispatch.json()["channel"] == "email"

    wrong = client.post(f"/payments/{payment_id}/sign", json={"code": "not-a-code"}, headers=headers)
    assert wrong.status_code == 400
    assert wrong.json()["detail"]["message"] == "The code is invalid or has expired"

    code = app.state.signer.store.get(f"act:{act['id']}").code
    signed = client.post(f"/payments/{payment_id}/sign", json={"code": code}, headers=headers)
    assert signed.status_code == 200
    assert signed.json()["status"] == "signed"

    ready = client.post("/payments/ready", json={"payment_ids": [payment_id]}, headers=ADMIN).json()
    assert ready["updated"] == [payment_id]

    done = client.post(
        "/payments/complete",
        json={"payment_ids": [payment_id], "external_reference": "BANK-REF-1"},
        headers=ADMIN,
    ).json()
    assert done["updated"] == [payment_id]

    final = client.get(f"/payments/{payment_id}", headers=headers).json()
    assert final["status"] == "completed"
    assert final["display_status"] == "Paid"

    balance = client.get("/agents/me/balance", headers=headers).json()
    assert balance["available_balance"] == 11_000
    assert balance["lifetime_paid_out"] == 10_000

    export = client.get("/payments/export.csv", headers=ADMIN)
    assert export.status_code == 200
    assert "BANK-REF-1" in export.text


def test_admin_sees_conflict_details(client):
    _setup_tiers(client)
    agent_id = _create_agent(client)
    _settle_one_referral(client, agent_id, _create_clinic(client))
    payment_id = client.post("/payments", json={"amount": 10_000}, headers=_agent_headers(agent_id)).json()["id"]

    resp = client.post(f"/payments/{payment_id}/send-for-signing", headers=ADMIN)

    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["kind"] == "state_conflict"
    assert detail["current_state"] == "pending"
    assert detail["retryable"] is True


def test_csv_upload_preview(client):
    _setup_tiers(client)
    agent_id = _create_agent(client)
    clinic_id = _create_clinic(client)
    client.post(
        "/referrals",
        json={"patient_full_name": "Иванов Иван Иванович", "patient_birthdate": "1985-03-15"},
        headers=_agent_headers(agent_id),
    )
    content = (
        "ФИО пациента,Дата рождения,Дата визита,Сумма лечения (руб)\n"
        "Иванов Иван Иванович,15.03.1985,20.02.2026,\"3 000,00\"\n"
        "Неизвестный Пациент,01.01.1970,20.02.2026,1500\n"
    ).encode("utf-8")

    resp = client.post(
        f"/reconciliation/{clinic_id}/preview-upload",
        files={"file": ("clinic.csv", content, "text/csv")},
        headers=ADMIN,
    )

    assert resp.status_code == 200
    data = resp.json()
    assert [row["amount"] for row in data["matched"]] == [300_000]
    assert [row["row_index"] for row in data["not_found"]] == [3]


def test_csv_upload_without_required_columns_is_422(client):
    clinic_id = _create_clinic(client)
    resp = client.post(
        f"/reconciliation/{clinic_id}/preview-upload",
        files={"file": ("clinic.csv", b"Name,Amount\nAnna,100\n", "text/csv")},
        headers=ADMIN,
    )
    assert resp.status_code == 422


def test_tier_replacement_is_audited_once_with_the_caller(client, test_db):
    _setup_tiers(client)

    entries = crud.list_audit_entries(test_db, "tiers_replaced")

    assert len(entries) == 1
    assert entries[0].actor == "admin"
    assert '"tiers"' in entries[0].details


def test_rejected_tier_table_leaves_no_audit_entry(client, test_db):
    client.put("/tiers", json={"tiers": [{"min_monthly_revenue": 500, "rate_percent": "5"}]}, headers=ADMIN)

    assert crud.list_audit_entries(test_db, "tiers_replaced") == []


def test_payments_export_is_not_paginated(client, test_db):
    agent = crud.create_agent(test_db, "Export Agent", tax_status=TaxStatus.SELF_EMPLOYED)
    agent.available_balance = 150_000
    test_db.commit()
    agent_id = agent.id
    ledger = SettlementLedger(test_db)
    for _ in range(150):
        assert ledger.request_payment(agent_id, 1_000, TaxStatus.SELF_EMPLOYED).ok

    export = client.get("/payments/export.csv", headers=ADMIN)

    assert export.status_code == 200
    lines = export.text.strip().splitlines()
    assert len(lines) - 1 == 150
    assert "net_display" in lines[0]
