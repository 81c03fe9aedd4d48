"""
Rift Vault - proof-of-delivery assets and their access rules.

Buyers see nothing until the rift reaches a proof-visible status; the seller
who owns the vault and admins see everything. License keys are revealed
one-way: the first buyer reveal flips ``is_revealed`` and is logged exactly
once, and every reveal returns the same stored secret. Files are never served
directly; callers get a short-lived signed URL from the blob store.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import update

from config import Config
from database import managed_session
from models import (
    ActorRole, DigitalDelivery, Rift, RiftItemType, ScanStatus, VaultAsset, VaultAssetType, VaultEvent,
)
from services import permission_engine
from services.api_adapter_retry import call_with_retry
from services.external_services import BlobStore
from services.permission_engine import RiftAction
from services.rift_events import RiftEventType, record_event
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import NotFound, PermissionDenied, ValidationFailed
from utils.helpers import generate_id, utc_now
from utils.vault_encryption import VaultEncryption, sha256_hex

logger = logging.getLogger(__name__)

FILE_ASSET_TYPES = frozenset({VaultAssetType.FILE, VaultAssetType.TICKET_PROOF})
TEXT_ASSET_TYPES = frozenset({VaultAssetType.TRACKING, VaultAssetType.URL, VaultAssetType.TEXT_INSTRUCTIONS})


@dataclass
class PreparedAsset:
    """Asset validated and (for files) already uploaded, ready to insert"""
    asset_type: VaultAssetType
    asset_ref: Optional[str] = None
    file_name: Optional[str] = None
    sha256: Optional[str] = None
    content_text: Optional[str] = None
    secret_ciphertext: Optional[bytes] = None


def decode_file_bytes(item: Dict[str, Any], index: int, field_prefix: str = "assets") -> bytes:
    data = item.get("data")
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    encoded = item.get("content_base64")
    if not encoded:
        raise ValidationFailed(f"{field_prefix}[{index}].content_base64", "file content is required")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationFailed(f"{field_prefix}[{index}].content_base64", "file content is not valid base64")


def asset_to_dict(asset: VaultAsset) -> Dict[str, Any]:
    """Metadata only; never includes secrets or file bytes"""
    return {
        "id": asset.id,
        "rift_id": asset.rift_id,
        "asset_type": asset.asset_type,
        "file_name": asset.file_name,
        "sha256": asset.sha256,
        "scan_status": asset.scan_status,
        "is_revealed": asset.is_revealed,
        "revealed_at": asset.revealed_at.isoformat() if asset.revealed_at else None,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
    }


class VaultService:
    """Vault writes, listing and reveal"""

    def __init__(self, blob_store: BlobStore, encryption: Optional[VaultEncryption] = None):
        self.blob_store = blob_store
        self.encryption = encryption or VaultEncryption()

    async def prepare_assets(self, rift_id: str, uploader_id: str, assets: List[Dict[str, Any]]) -> List[PreparedAsset]:
        """
        Validate an upload payload and push file bytes to the blob store.

        Runs before the database unit of work so no external call happens
        while rows are locked.
        """
        if not assets:
            raise ValidationFailed("assets", "at least one proof asset is required")

        prepared: List[PreparedAsset] = []
        for index, item in enumerate(assets):
            try:
                asset_type = VaultAssetType(str(item.get("asset_type", "")).upper())
            except ValueError:
                raise ValidationFailed(f"assets[{index}].asset_type", f"unknown asset type {item.get('asset_type')!r}")

            if asset_type in FILE_ASSET_TYPES:
                data = decode_file_bytes(item, index)
                if not data:
                    raise ValidationFailed(f"assets[{index}]", "file is empty")
                file_name = item.get("file_name") or "proof.bin"
                digest = sha256_hex(data)
                asset_ref = await call_with_retry(
                    self.blob_store.service_name,
                    self.blob_store.put_asset,
                    data,
                    {"rift_id": rift_id, "uploader_id": uploader_id, "file_name": file_name,
                     "content_type": item.get("content_type"), "sha256": digest},
                )
                prepared.append(PreparedAsset(asset_type, asset_ref=asset_ref, file_name=file_name, sha256=digest))
            elif asset_type == VaultAssetType.LICENSE_KEY:
                secret = str(item.get("secret") or "").strip()
                if not secret:
                    raise ValidationFailed(f"assets[{index}].secret", "license key is required")
                prepared.append(PreparedAsset(asset_type, secret_ciphertext=self.encryption.encrypt(secret)))
            else:
                text = str(item.get("text") or "").strip()
                if not text:
                    raise ValidationFailed(f"assets[{index}].text", f"{asset_type.value} content is required")
                if asset_type == VaultAssetType.URL and not text.lower().startswith(("http://", "https://")):
                    raise ValidationFailed(f"assets[{index}].text", "URL must start with http:// or https://")
                prepared.append(PreparedAsset(asset_type, content_text=text))
        return prepared

    def store_prepared(self, session, rift: Rift, uploader_id: str, prepared: List[PreparedAsset]) -> List[VaultAsset]:
        """Insert prepared assets inside the caller's unit of work"""
        now = utc_now()
        rows = []
        for item in prepared:
            asset = VaultAsset(
                id=generate_id("VA"),
                rift_id=rift.id,
                asset_type=item.asset_type.value,
                uploader_id=uploader_id,
                asset_ref=item.asset_ref,
                file_name=item.file_name,
                sha256=item.sha256,
                content_text=item.content_text,
                secret_ciphertext=item.secret_ciphertext,
                scan_status=(ScanStatus.PENDING if item.asset_type in FILE_ASSET_TYPES else ScanStatus.PASS).value,
                created_at=now,
            )
            session.add(asset)
            rows.append(asset)
        session.flush()

        if rift.item_type in (RiftItemType.DIGITAL.value, RiftItemType.LICENSE_KEYS.value):
            has_delivery = session.query(DigitalDelivery.id).filter(DigitalDelivery.rift_id == rift.id).first()
            first_delivered = next(
                (a for a in rows if a.asset_type in (VaultAssetType.FILE.value, VaultAssetType.LICENSE_KEY.value)),
                None,
            )
            if has_delivery is None and first_delivered is not None:
                session.add(DigitalDelivery(rift_id=rift.id, asset_id=first_delivered.id, uploaded_at=now))

        logger.info(f"🗄️ VAULT: stored {len(rows)} asset(s) for rift {rift.id}")
        return rows

    def list_assets(self, rift_id: str, caller_id: str, caller_role: str) -> List[Dict[str, Any]]:
        """Asset metadata visible to the caller; empty for a buyer before proof is visible"""
        with managed_session() as session:
            rift = session.get(Rift, rift_id)
            if rift is None:
                raise NotFound("rift", rift_id)
            self._check_party(rift, caller_id, caller_role, RiftAction.ACCESS_VAULT)

            if not permission_engine.allowed(rift.status, caller_role, RiftAction.ACCESS_VAULT):
                if str(caller_role).upper() == ActorRole.BUYER.value:
                    return []
                permission_engine.require(rift.status, caller_role, RiftAction.ACCESS_VAULT)

            assets = (
                session.query(VaultAsset)
                .filter(VaultAsset.rift_id == rift_id)
                .order_by(VaultAsset.created_at, VaultAsset.id)
                .all()
            )
            return [asset_to_dict(a) for a in assets]

    async def reveal(self, asset_id: str, caller_id: str, caller_role: str) -> Dict[str, Any]:
        """Return the secret, text or a signed URL for one asset"""
        role = str(caller_role).upper()
        with managed_session() as session:
            asset = session.get(VaultAsset, asset_id)
            if asset is None:
                raise NotFound("vault_asset", asset_id)
            rift = session.get(Rift, asset.rift_id)
            self._check_party(rift, caller_id, role, RiftAction.REVEAL_ASSET)
            permission_engine.require(rift.status, role, RiftAction.REVEAL_ASSET)
            asset_type = VaultAssetType(asset.asset_type)
            rift_id = rift.id
            asset_ref = asset.asset_ref
            scan_status = asset.scan_status
            ciphertext = asset.secret_ciphertext
            content_text = asset.content_text

        if asset_type == VaultAssetType.LICENSE_KEY:
            secret = self.encryption.decrypt(ciphertext)
            first_reveal = False
            if role == ActorRole.BUYER.value:
                first_reveal = self._mark_revealed(asset_id, rift_id, caller_id, role)
            else:
                self._log_access(asset_id, rift_id, caller_id, role, "LICENSE_KEY_VIEWED")
            return {"asset_id": asset_id, "asset_type": asset_type.value, "secret": secret, "first_reveal": first_reveal}

        if asset_type in FILE_ASSET_TYPES:
            if scan_status == ScanStatus.FAIL.value:
                raise ValidationFailed("scan_status", "file failed the malware scan and cannot be downloaded")
            ttl = Config.VAULT_SIGNED_URL_TTL_SECONDS
            url = await call_with_retry(self.blob_store.service_name, self.blob_store.signed_url, asset_ref, ttl)
            with atomic_transaction() as session:
                session.add(VaultEvent(rift_id=rift_id, asset_id=asset_id, actor_id=caller_id,
                                       actor_role=role, event_type="FILE_URL_ISSUED"))
                if role == ActorRole.BUYER.value:
                    record_event(session, rift_id, RiftEventType.FILE_DOWNLOADED, caller_id, role,
                                 {"asset_id": asset_id})
            return {"asset_id": asset_id, "asset_type": asset_type.value, "url": url, "expires_in": ttl}

        self._log_access(asset_id, rift_id, caller_id, role, "ASSET_VIEWED")
        return {"asset_id": asset_id, "asset_type": asset_type.value, "text": content_text}

    def record_scan_result(self, asset_id: str, scan_status: str) -> Dict[str, Any]:
        """Store the malware scanner verdict for an uploaded file"""
        try:
            status = ScanStatus(str(scan_status).upper())
        except ValueError:
            raise ValidationFailed("scan_status", f"unknown scan status {scan_status!r}")
        with atomic_transaction() as session:
            asset = session.get(VaultAsset, asset_id)
            if asset is None:
                raise NotFound("vault_asset", asset_id)
            if VaultAssetType(asset.asset_type) not in FILE_ASSET_TYPES:
                raise ValidationFailed("asset_type", "only uploaded files are scanned")
            asset.scan_status = status.value
            session.flush()
            if status == ScanStatus.FAIL:
                logger.warning(f"⚠️ VAULT: asset {asset_id} on rift {asset.rift_id} failed malware scan")
            return asset_to_dict(asset)

    def _mark_revealed(self, asset_id: str, rift_id: str, caller_id: str, role: str) -> bool:
        """Flip is_revealed once; only the winning writer logs the reveal"""
        now = utc_now()
        with atomic_transaction() as session:
            result = session.execute(
                update(VaultAsset)
                .where(VaultAsset.id == asset_id, VaultAsset.is_revealed.is_(False))
                .values(is_revealed=True, revealed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            session.add(VaultEvent(rift_id=rift_id, asset_id=asset_id, actor_id=caller_id,
                                   actor_role=role, event_type="LICENSE_KEY_REVEALED", created_at=now))
            record_event(session, rift_id, RiftEventType.LICENSE_KEY_REVEALED, caller_id, role,
                         {"asset_id": asset_id}, created_at=now)
        logger.info(f"🔑 VAULT: license key {asset_id} revealed to buyer {caller_id}")
        return True

    def _log_access(self, asset_id: str, rift_id: str, caller_id: str, role: str, event_type: str) -> None:
        with atomic_transaction() as session:
            session.add(VaultEvent(rift_id=rift_id, asset_id=asset_id, actor_id=caller_id,
                                   actor_role=role, event_type=event_type))

    @staticmethod
    def _check_party(rift: Rift, caller_id: str, caller_role: str, action: RiftAction) -> None:
        reason = permission_engine.role_matches_party(rift, caller_id, caller_role)
        if reason:
            raise PermissionDenied(rift.status, str(caller_role).upper(), action.value, reason)
