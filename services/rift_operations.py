"""
Rift operation surface used by the HTTP routes and background jobs.

One coroutine per transition or dispute action, each taking
``(rift_id, caller_id, caller_role, payload)`` and returning a
``RiftSnapshot`` or raising a typed ``RiftError``. Read helpers (rift,
timeline, wallet, vault listing) take no locks.
"""

import logging
from typing import Any, Dict, List, Optional

from database import managed_session
from models import Rift
from services import permission_engine
from services.dispute_service import DisputeService
from services.external_services import BlobStore, PaymentProcessor
from services.rift_events import event_to_dict, get_events
from services.rift_state_machine import RiftSnapshot, RiftStateMachine, parse_role
from services.vault_service import VaultService
from services.wallet_service import WalletService, entry_to_dict
from utils.exception_handler import NotFound, PermissionDenied
from utils.rift_locks import RiftLockRegistry
from utils.vault_encryption import VaultEncryption

logger = logging.getLogger(__name__)


class RiftOperations:
    """Facade over the state machine, vault and dispute workflow"""

    def __init__(
        self,
        processor: PaymentProcessor,
        blob_store: BlobStore,
        encryption: Optional[VaultEncryption] = None,
        locks: Optional[RiftLockRegistry] = None,
    ):
        self.vault = VaultService(blob_store, encryption)
        self.state_machine = RiftStateMachine(processor, self.vault, locks)
        self.disputes = DisputeService(self.state_machine)

    # Transaction lifecycle

    async def create_rift(self, caller_id: str, caller_role, payload: Dict[str, Any]) -> RiftSnapshot:
        return await self.state_machine.create_rift(caller_id, caller_role, payload)

    async def pay(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.pay(rift_id, caller_id, caller_role, payload)

    async def cancel(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.cancel(rift_id, caller_id, caller_role, payload)

    async def upload_proof(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.upload_proof(rift_id, caller_id, caller_role, payload)

    async def submit_additional_proof(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.submit_additional_proof(rift_id, caller_id, caller_role, payload)

    async def route_to_review(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.route_to_review(rift_id, caller_id, caller_role, payload)

    async def approve_proof(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.approve_proof(rift_id, caller_id, caller_role, payload)

    async def release(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.release(rift_id, caller_id, caller_role, payload)

    async def release_milestone(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.release_milestone(rift_id, caller_id, caller_role, payload)

    async def request_revision(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.request_revision(rift_id, caller_id, caller_role, payload)

    async def schedule_payout(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.schedule_payout(rift_id, caller_id, caller_role, payload)

    async def confirm_payout(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.confirm_payout(rift_id, caller_id, caller_role, payload)

    async def record_chargeback(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.record_chargeback(rift_id, caller_id, caller_role, payload)

    async def record_processor_refund(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.record_processor_refund(rift_id, caller_id, caller_role, payload)

    async def report_event(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.state_machine.record_delivery_fact(rift_id, caller_id, caller_role, payload)

    async def reconcile(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.state_machine.reconcile(rift_id, caller_id, caller_role, payload)

    # Disputes

    async def open_dispute(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.disputes.open_dispute(rift_id, caller_id, caller_role, payload)

    async def add_dispute_evidence(self, rift_id, caller_id, caller_role, payload) -> RiftSnapshot:
        return await self.disputes.add_evidence(rift_id, caller_id, caller_role, payload)

    async def request_dispute_info(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.disputes.request_info(rift_id, caller_id, caller_role, payload)

    async def start_dispute_review(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.disputes.start_review(rift_id, caller_id, caller_role, payload)

    async def resolve_dispute_seller(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.disputes.resolve_seller(rift_id, caller_id, caller_role, payload)

    async def resolve_dispute_buyer(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.disputes.resolve_buyer(rift_id, caller_id, caller_role, payload)

    async def reject_dispute(self, rift_id, caller_id, caller_role, payload=None) -> RiftSnapshot:
        return await self.disputes.reject(rift_id, caller_id, caller_role, payload)

    def get_dispute(self, rift_id: str, caller_id: str, caller_role) -> Dict[str, Any]:
        return self.disputes.get_dispute(rift_id, caller_id, caller_role)

    def admin_queue(self, caller_id: str, caller_role) -> List[Dict[str, Any]]:
        return self.disputes.admin_queue(caller_id, caller_role)

    # Vault

    def list_vault(self, rift_id: str, caller_id: str, caller_role) -> List[Dict[str, Any]]:
        return self.vault.list_assets(rift_id, caller_id, parse_role(caller_role).value)

    async def reveal_asset(self, asset_id: str, caller_id: str, caller_role) -> Dict[str, Any]:
        return await self.vault.reveal(asset_id, caller_id, parse_role(caller_role).value)

    def record_scan_result(self, asset_id: str, caller_id: str, caller_role, scan_status: str) -> Dict[str, Any]:
        role = parse_role(caller_role).value
        if role != "SYSTEM":
            raise PermissionDenied("-", role, "record_scan_result", "scan results come from the scanner")
        return self.vault.record_scan_result(asset_id, scan_status)

    # Reads

    def _visible_rift(self, session, rift_id: str, caller_id: str, caller_role) -> Rift:
        rift = session.get(Rift, rift_id)
        if rift is None:
            raise NotFound("rift", rift_id)
        role = parse_role(caller_role)
        reason = permission_engine.role_matches_party(rift, caller_id, role)
        if reason:
            raise PermissionDenied(rift.status, role.value, "view_rift", reason)
        return rift

    def get_rift(self, rift_id: str, caller_id: str, caller_role) -> Dict[str, Any]:
        """Snapshot plus the actions the caller may take next"""
        with managed_session() as session:
            rift = self._visible_rift(session, rift_id, caller_id, caller_role)
            data = RiftSnapshot.from_rift(rift).to_dict()
            data["allowed_actions"] = sorted(
                a.value for a in permission_engine.allowed_actions(rift.status, parse_role(caller_role))
            )
            return data

    def get_timeline(self, rift_id: str, caller_id: str, caller_role) -> List[Dict[str, Any]]:
        with managed_session() as session:
            self._visible_rift(session, rift_id, caller_id, caller_role)
            return [event_to_dict(e) for e in get_events(session, rift_id)]

    def get_wallet(self, user_id: str, caller_id: str, caller_role, currency: str = "USD") -> Dict[str, Any]:
        """Balances derived from the ledger; users see their own wallet, admins any"""
        role = parse_role(caller_role).value
        if role != "ADMIN" and caller_id != user_id:
            raise PermissionDenied("-", role, "view_wallet", "users may only view their own wallet")
        with managed_session() as session:
            balance = WalletService.get_balance(session, user_id, currency.upper())
            entries = WalletService.get_entries(session, user_id, currency.upper())
            data = balance.to_dict()
            data["entries"] = [entry_to_dict(e) for e in entries]
            return data
