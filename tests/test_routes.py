"""
HTTP API tests through FastAPI's TestClient with fake collaborators
"""

import pytest
from fastapi.testclient import TestClient

from api_server import create_app

from conftest import ADMIN_ID, BUYER_ID, SELLER_ID, SYSTEM_ID, dispute_payload, file_asset


def headers(user_id, role):
    return {"X-User-Id": user_id, "X-User-Role": role}


BUYER = headers(BUYER_ID, "buyer")
SELLER = headers(SELLER_ID, "SELLER")
ADMIN = headers(ADMIN_ID, "ADMIN")
SYSTEM = headers(SYSTEM_ID, "SYSTEM")


@pytest.fixture
def client(operations):
    with TestClient(create_app(operations=operations, enable_scheduler=False)) as test_client:
        yield test_client


def create_rift(client, **extra):
    payload = {"seller_id": SELLER_ID, "item_type": "DIGITAL", "subtotal": "500.00", "currency": "USD"}
    payload.update(extra)
    response = client.post("/rifts", json=payload, headers=BUYER)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def rift_with_proof(client):
    rift_id = create_rift(client)
    assert client.post(f"/rifts/{rift_id}/pay", headers=BUYER).status_code == 200
    response = client.post(f"/rifts/{rift_id}/proof", json={"assets": [file_asset()]}, headers=SELLER)
    assert response.status_code == 200, response.text
    return rift_id


class TestHealthAndIdentity:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["service"] == "rift-escrow"
        assert body["scheduler_jobs"] == []

    def test_missing_identity(self, client):
        assert client.get("/rifts/RF_x").status_code == 401
        assert client.get("/rifts/RF_x", headers={"X-User-Id": BUYER_ID}).status_code == 401

    def test_unknown_role(self, client):
        assert client.get("/rifts/RF_x", headers=headers(BUYER_ID, "auditor")).status_code == 401


class TestRiftEndpoints:
    """Lifecycle over HTTP"""

    def test_create_and_get(self, client):
        rift_id = create_rift(client, title="E-book bundle")
        body = client.get(f"/rifts/{rift_id}", headers=BUYER).json()
        assert body["status"] == "DRAFT"
        assert body["title"] == "E-book bundle"
        assert body["subtotal"] == "500.00"
        assert body["allowed_actions"] == ["cancel", "pay"]

    def test_pay(self, client, processor):
        rift_id = create_rift(client)
        body = client.post(f"/rifts/{rift_id}/pay", headers=BUYER).json()
        assert body["status"] == "FUNDED"
        assert body["charge_id"] == f"ch_{rift_id}:pay"
        assert len(processor.charges) == 1

    def test_seller_cannot_pay(self, client):
        rift_id = create_rift(client)
        response = client.post(f"/rifts/{rift_id}/pay", headers=SELLER)
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "permission_denied"
        assert body["action"] == "pay"

    def test_validation_error(self, client):
        response = client.post("/rifts", json={"seller_id": SELLER_ID, "item_type": "DIGITAL", "subtotal": "-5"},
                               headers=BUYER)
        assert response.status_code == 422
        assert response.json()["field"] == "subtotal"

    def test_unknown_rift(self, client):
        response = client.get("/rifts/RF_missing", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_release_twice_is_conflict(self, client):
        rift_id = rift_with_proof(client)
        assert client.post(f"/rifts/{rift_id}/release", headers=BUYER).json()["status"] == "RELEASED"
        response = client.post(f"/rifts/{rift_id}/release", headers=BUYER)
        assert response.status_code == 409
        assert response.json()["error"] == "already_processed"

    def test_release_credits_wallet(self, client):
        rift_id = rift_with_proof(client)
        client.post(f"/rifts/{rift_id}/release", headers=BUYER)

        wallet = client.get(f"/wallets/{SELLER_ID}", headers=SELLER).json()
        assert wallet["available_balance"] == "460.00"
        assert wallet["entries"][0]["related_rift_id"] == rift_id

        assert client.get(f"/wallets/{SELLER_ID}", headers=BUYER).status_code == 403
        assert client.get(f"/wallets/{SELLER_ID}", headers=ADMIN).status_code == 200

    def test_timeline_and_reported_events(self, client):
        rift_id = rift_with_proof(client)
        response = client.post(f"/rifts/{rift_id}/events",
                               json={"event_type": "DELIVERY_VIEWED", "seconds_viewed": 40}, headers=BUYER)
        assert response.status_code == 200

        events = client.get(f"/rifts/{rift_id}/events", headers=BUYER).json()["events"]
        types = [e["event_type"] for e in events]
        assert types[0] == "RIFT_CREATED"
        assert "DELIVERY_VIEWED" in types

        forged = client.post(f"/rifts/{rift_id}/events", json={"event_type": "FUNDS_RELEASED"}, headers=BUYER)
        assert forged.status_code == 422

    def test_processor_chargeback(self, client):
        rift_id = rift_with_proof(client)
        client.post(f"/rifts/{rift_id}/release", headers=BUYER)
        response = client.post(f"/rifts/{rift_id}/chargebacks",
                               json={"amount": "100.00", "reference": "cb_77"}, headers=SYSTEM)
        assert response.status_code == 200
        assert client.get(f"/wallets/{SELLER_ID}", headers=SELLER).json()["available_balance"] == "360.00"


class TestVaultEndpoints:
    def test_list_and_reveal(self, client):
        rift_id = rift_with_proof(client)
        assets = client.get(f"/rifts/{rift_id}/vault", headers=BUYER).json()["assets"]
        assert len(assets) == 1

        revealed = client.post(f"/vault/assets/{assets[0]['id']}/reveal", headers=BUYER).json()
        assert revealed["url"].startswith("https://blobs.test/")

    def test_scan_callback_is_system_only(self, client):
        rift_id = rift_with_proof(client)
        asset_id = client.get(f"/rifts/{rift_id}/vault", headers=SELLER).json()["assets"][0]["id"]
        assert client.post(f"/vault/assets/{asset_id}/scan", json={"scan_status": "PASS"},
                           headers=SELLER).status_code == 403
        scanned = client.post(f"/vault/assets/{asset_id}/scan", json={"scan_status": "PASS"}, headers=SYSTEM)
        assert scanned.json()["scan_status"] == "PASS"


class TestDisputeEndpoints:
    def test_open_review_and_resolve(self, client):
        rift_id = rift_with_proof(client)
        opened = client.post(f"/rifts/{rift_id}/dispute", json=dispute_payload(), headers=BUYER)
        assert opened.status_code == 201, opened.text
        assert opened.json()["status"] == "DISPUTED"

        dispute = client.get(f"/rifts/{rift_id}/dispute", headers=SELLER).json()
        assert dispute["reason"] == "not_received"
        assert len(dispute["evidence"]) == 2

        queue = client.get("/admin/disputes/queue", headers=ADMIN).json()
        assert queue["count"] == 1
        assert queue["disputes"][0]["rift_id"] == rift_id
        assert client.get("/admin/disputes/queue", headers=BUYER).status_code == 403

        reviewing = client.post(f"/rifts/{rift_id}/dispute/start-review", headers=ADMIN)
        assert reviewing.json()["active_dispute"]["status"] == "under_review"

        resolved = client.post(f"/rifts/{rift_id}/dispute/resolve-buyer", json={"note": "refund"}, headers=ADMIN)
        assert resolved.json()["status"] == "RESOLVED"
        assert client.get(f"/wallets/{BUYER_ID}", headers=BUYER).json()["available_balance"] == "500.00"

    def test_short_summary_rejected(self, client):
        rift_id = rift_with_proof(client)
        response = client.post(f"/rifts/{rift_id}/dispute", json=dispute_payload(summary="too short"), headers=BUYER)
        assert response.status_code == 422
        assert response.json()["field"] == "summary"

    def test_add_evidence(self, client):
        rift_id = rift_with_proof(client)
        client.post(f"/rifts/{rift_id}/dispute", json=dispute_payload(), headers=BUYER)
        response = client.post(f"/rifts/{rift_id}/dispute/evidence",
                               json={"evidence": [{"type": "link", "text": "https://tracking.example/1"}]},
                               headers=SELLER)
        assert response.status_code == 200
        assert len(client.get(f"/rifts/{rift_id}/dispute", headers=ADMIN).json()["evidence"]) == 3
