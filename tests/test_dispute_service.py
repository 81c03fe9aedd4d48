"""
Dispute workflow tests: submission gates, freezing, admin resolution and the queue
"""

import base64
from datetime import timedelta
from decimal import Decimal

import pytest

from database import managed_session
from models import DisputeAction, RiftStatus
from utils.exception_handler import NotFound, PermissionDenied, ValidationFailed
from utils.helpers import utc_now

from conftest import (
    ADMIN_ID, BUYER_ID, SELLER_ID, dispute_payload, file_asset, force_rift_fields, text_evidence,
)


def image_evidence():
    return {"type": "image", "file_name": "screenshot.png",
            "content_base64": base64.b64encode(b"\x89PNG fake").decode("ascii")}


class TestSubmissionGates:
    """Every gate is checked before anything is written"""

    @pytest.mark.asyncio
    async def test_short_summary_rejected(self, driver, operations):
        snapshot = await driver.with_proof()
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload(summary="Never arrived."))
        assert exc.value.field == "summary"
        assert operations.get_rift(snapshot.id, BUYER_ID, "BUYER")["status"] == RiftStatus.PROOF_SUBMITTED.value

    @pytest.mark.asyncio
    async def test_declaration_must_match(self, driver, operations):
        snapshot = await driver.with_proof()
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload(declaration_text="yes"))
        assert exc.value.field == "declaration_text"

        with pytest.raises(ValidationFailed):
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload(sworn_declaration=False))

    @pytest.mark.asyncio
    async def test_declaration_flag_required(self, driver, operations):
        snapshot = await driver.with_proof()
        payload = dispute_payload()
        payload.pop("sworn_declaration")
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", payload)
        assert exc.value.field == "declaration_text"
        assert operations.get_rift(snapshot.id, BUYER_ID, "BUYER")["status"] == RiftStatus.PROOF_SUBMITTED.value

    @pytest.mark.asyncio
    async def test_unknown_reason(self, driver, operations):
        snapshot = await driver.with_proof()
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload(reason="changed_mind"))
        assert exc.value.field == "reason"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("evidence", [[], text_evidence(1)])
    async def test_not_received_needs_evidence(self, driver, operations, evidence):
        snapshot = await driver.with_proof()
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload(evidence=evidence))
        assert exc.value.field == "evidence"

    @pytest.mark.asyncio
    async def test_two_texts_are_enough(self, driver):
        disputed = await driver.disputed()
        assert disputed.status == RiftStatus.DISPUTED.value
        assert disputed.active_dispute["status"] == "submitted"

    @pytest.mark.asyncio
    async def test_one_file_is_enough(self, driver, operations, blob_store):
        snapshot = await driver.with_proof()
        disputed = await operations.open_dispute(
            snapshot.id, BUYER_ID, "BUYER", dispute_payload(evidence=[image_evidence()])
        )
        assert disputed.status == RiftStatus.DISPUTED.value
        evidence_uploads = [m for m in blob_store.metadata.values() if m.get("purpose") == "dispute_evidence"]
        assert len(evidence_uploads) == 1

        dispute = operations.get_dispute(snapshot.id, BUYER_ID, "BUYER")
        assert dispute["evidence"][0]["type"] == "image"
        assert dispute["evidence"][0]["asset_ref"].startswith("blob-")

    @pytest.mark.asyncio
    async def test_other_reason_needs_no_evidence(self, driver, operations):
        snapshot = await driver.with_proof()
        disputed = await operations.open_dispute(
            snapshot.id, BUYER_ID, "BUYER", dispute_payload(reason="other", evidence=[])
        )
        assert disputed.active_dispute["reason"] == "other"

    @pytest.mark.asyncio
    async def test_bad_link_evidence(self, driver, operations):
        snapshot = await driver.with_proof()
        bad_link = [{"type": "link", "text": "ftp://files.example/screenshot"}]
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(snapshot.id, BUYER_ID, "BUYER",
                                          dispute_payload(reason="other", evidence=bad_link))
        assert exc.value.field == "evidence[0].text"

    @pytest.mark.asyncio
    async def test_stranger_cannot_open(self, driver, operations):
        snapshot = await driver.with_proof()
        with pytest.raises(PermissionDenied):
            await operations.open_dispute(snapshot.id, "someone-else", "BUYER", dispute_payload())


class TestTicketEligibility:
    """Ticket disputes depend on the event date"""

    @pytest.mark.asyncio
    async def test_event_passed(self, driver, operations):
        funded = await driver.funded(item_type="TICKETS")
        force_rift_fields(funded.id, event_date_tz=utc_now() - timedelta(hours=1))
        with pytest.raises(ValidationFailed) as exc:
            await operations.open_dispute(funded.id, BUYER_ID, "BUYER", dispute_payload())
        assert exc.value.field == "event_date"

    @pytest.mark.asyncio
    async def test_event_imminent_is_high_priority(self, driver, operations):
        funded = await driver.funded(item_type="TICKETS")
        force_rift_fields(funded.id, event_date_tz=utc_now() + timedelta(hours=3))
        disputed = await operations.open_dispute(funded.id, BUYER_ID, "BUYER", dispute_payload())
        assert disputed.active_dispute["priority"] == "high"
        dispute = operations.get_dispute(funded.id, ADMIN_ID, "ADMIN")
        assert dispute["flags"]["urgent"] is True


class TestFreeze:
    """An open dispute freezes the rift"""

    @pytest.mark.asyncio
    async def test_release_blocked_while_disputed(self, driver, operations):
        disputed = await driver.disputed()
        with pytest.raises(PermissionDenied) as exc:
            await operations.release(disputed.id, BUYER_ID, "BUYER")
        assert exc.value.reason == "rift is frozen while a dispute is open"

        with pytest.raises(PermissionDenied):
            await operations.submit_additional_proof(
                disputed.id, SELLER_ID, "SELLER", {"assets": [file_asset()]}
            )

    @pytest.mark.asyncio
    async def test_no_second_dispute(self, driver, operations):
        disputed = await driver.disputed()
        with pytest.raises(PermissionDenied):
            await operations.open_dispute(disputed.id, SELLER_ID, "SELLER", dispute_payload(reason="other"))

    @pytest.mark.asyncio
    async def test_buyer_vault_hidden_while_disputed(self, driver, operations):
        disputed = await driver.disputed()
        assert operations.list_vault(disputed.id, BUYER_ID, "BUYER") == []
        assert len(operations.list_vault(disputed.id, ADMIN_ID, "ADMIN")) == 1


class TestResolution:
    """Admin decisions and their money movement"""

    @pytest.mark.asyncio
    async def test_resolve_for_buyer_refunds(self, driver, operations):
        disputed = await driver.disputed()
        resolved = await operations.resolve_dispute_buyer(disputed.id, ADMIN_ID, "ADMIN", {"note": "no delivery"})
        assert resolved.status == RiftStatus.RESOLVED.value
        assert resolved.resolution_outcome == "buyer"
        assert resolved.active_dispute is None

        wallet = operations.get_wallet(BUYER_ID, BUYER_ID, "BUYER")
        assert wallet["available_balance"] == "500.00"
        assert wallet["entries"][0]["type"] == "CREDIT_REFUND"

        dispute = operations.get_dispute(disputed.id, BUYER_ID, "BUYER")
        assert dispute["status"] == "resolved_buyer"
        assert dispute["resolved_at"] is not None
        with managed_session() as session:
            actions = session.query(DisputeAction).all()
            assert [(a.action_type, a.actor_id, a.note) for a in actions] == [
                ("resolve_buyer", ADMIN_ID, "no delivery")
            ]

    @pytest.mark.asyncio
    async def test_refund_excludes_released_milestones(self, driver, operations):
        milestones = [{"title": "Design", "amount": "300.00"}, {"title": "Build", "amount": "200.00"}]
        funded = await driver.funded(item_type="SERVICES", milestones=milestones)
        await operations.release_milestone(funded.id, BUYER_ID, "BUYER", {"milestone_index": 0})
        await operations.open_dispute(funded.id, BUYER_ID, "BUYER", dispute_payload())

        await operations.resolve_dispute_buyer(funded.id, ADMIN_ID, "ADMIN")
        assert operations.get_wallet(BUYER_ID, BUYER_ID, "BUYER")["available_balance"] == "200.00"
        assert operations.get_wallet(SELLER_ID, SELLER_ID, "SELLER")["available_balance"] == "276.00"

    @pytest.mark.asyncio
    async def test_resolve_for_seller_restores_review(self, driver, operations):
        disputed = await driver.disputed()
        restored = await operations.resolve_dispute_seller(disputed.id, ADMIN_ID, "ADMIN")
        assert restored.status == RiftStatus.PROOF_SUBMITTED.value
        assert restored.resolution_outcome == "seller"
        assert restored.review_window_ends_at > utc_now()

        released = await operations.release(disputed.id, BUYER_ID, "BUYER")
        assert released.status == RiftStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_reject_restores_funded(self, driver, operations):
        disputed = await driver.disputed(proof=False)
        restored = await operations.reject_dispute(disputed.id, ADMIN_ID, "ADMIN", {"note": "duplicate"})
        assert restored.status == RiftStatus.FUNDED.value
        assert restored.resolution_outcome is None
        assert restored.review_window_ends_at is None
        assert operations.get_dispute(disputed.id, SELLER_ID, "SELLER")["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_only_admin_resolves(self, driver, operations):
        disputed = await driver.disputed()
        with pytest.raises(PermissionDenied):
            await operations.resolve_dispute_seller(disputed.id, SELLER_ID, "SELLER")
        with pytest.raises(PermissionDenied):
            await operations.resolve_dispute_buyer(disputed.id, BUYER_ID, "BUYER")

    @pytest.mark.asyncio
    async def test_closed_dispute_accepts_no_actions(self, driver, operations):
        disputed = await driver.disputed()
        await operations.reject_dispute(disputed.id, ADMIN_ID, "ADMIN")
        with pytest.raises(NotFound):
            await operations.request_dispute_info(disputed.id, ADMIN_ID, "ADMIN")

    @pytest.mark.asyncio
    async def test_needs_info_then_evidence(self, driver, operations):
        disputed = await driver.disputed()
        asked = await operations.request_dispute_info(disputed.id, ADMIN_ID, "ADMIN", {"note": "send receipts"})
        assert asked.active_dispute["status"] == "needs_info"

        answered = await operations.add_dispute_evidence(
            disputed.id, BUYER_ID, "BUYER", {"evidence": [{"type": "text", "text": "Order confirmation #1234"}]}
        )
        assert answered.active_dispute["status"] == "under_review"
        assert len(operations.get_dispute(disputed.id, BUYER_ID, "BUYER")["evidence"]) == 3

    @pytest.mark.asyncio
    async def test_empty_evidence_addition(self, driver, operations):
        disputed = await driver.disputed()
        with pytest.raises(ValidationFailed):
            await operations.add_dispute_evidence(disputed.id, SELLER_ID, "SELLER", {"evidence": []})


class TestAdminQueue:
    """Queue ordering and triage output"""

    @pytest.mark.asyncio
    async def test_queue_ordered_by_priority(self, driver, operations):
        # normal: digital rift, nothing recorded yet
        normal = await driver.disputed()

        # low: buyer already confirmed receipt of the digital delivery
        confirmed = await driver.with_proof()
        await operations.report_event(confirmed.id, BUYER_ID, "BUYER", {"event_type": "BUYER_CONFIRMED_RECEIPT"})
        low = await operations.open_dispute(confirmed.id, BUYER_ID, "BUYER", dispute_payload())
        assert low.active_dispute["priority"] == "low"

        # high: ticket event starts soon
        ticket = await driver.funded(item_type="TICKETS")
        force_rift_fields(ticket.id, event_date_tz=utc_now() + timedelta(hours=2))
        await operations.open_dispute(ticket.id, BUYER_ID, "BUYER", dispute_payload())

        queue = operations.admin_queue(ADMIN_ID, "ADMIN")
        assert [item["priority"] for item in queue] == ["high", "normal", "low"]
        assert queue[1]["rift_id"] == normal.id
        assert queue[2]["auto_triage"]["decision"] == "auto_reject"
        assert "confirmed receipt" in queue[2]["triage_rationale"]
        assert queue[2]["evidence_count"] == 2

    @pytest.mark.asyncio
    async def test_digital_cooldown_flag(self, driver, operations):
        disputed = await driver.disputed()
        dispute = operations.get_dispute(disputed.id, ADMIN_ID, "ADMIN")
        assert dispute["flags"]["cooldown_warning"] is True
        assert dispute["category_snapshot"]["item_type"] == "DIGITAL"
        assert Decimal(dispute["category_snapshot"]["subtotal"]) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_seller_recently_messaged(self, driver, operations):
        funded = await driver.funded()
        await operations.report_event(funded.id, SELLER_ID, "SELLER", {"event_type": "CHAT_MESSAGE", "message_id": "m1"})
        disputed = await operations.open_dispute(
            funded.id, BUYER_ID, "BUYER", dispute_payload(reason="seller_nonresponsive", evidence=[])
        )
        assert disputed.active_dispute["priority"] == "low"

    @pytest.mark.asyncio
    async def test_queue_is_admin_only(self, operations):
        with pytest.raises(PermissionDenied):
            operations.admin_queue(BUYER_ID, "BUYER")

    @pytest.mark.asyncio
    async def test_resolved_disputes_leave_queue(self, driver, operations):
        disputed = await driver.disputed()
        await operations.resolve_dispute_seller(disputed.id, ADMIN_ID, "ADMIN")
        assert operations.admin_queue(ADMIN_ID, "ADMIN") == []
