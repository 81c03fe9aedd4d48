"""
Vault tests: buyer visibility, one-way license reveal, signed file URLs and scans
"""

import pytest

from database import managed_session
from models import DigitalDelivery, RiftEvent, VaultAsset, VaultEvent
from utils.exception_handler import PermissionDenied, ValidationFailed

from conftest import ADMIN_ID, BUYER_ID, SELLER_ID, SYSTEM_ID, file_asset

LICENSE = "ABCD-EFGH-IJKL-MNOP"


class TestVaultVisibility:
    """Who sees which assets when"""

    @pytest.mark.asyncio
    async def test_buyer_sees_nothing_before_proof(self, driver, operations):
        funded = await driver.funded()
        assert operations.list_vault(funded.id, BUYER_ID, "BUYER") == []
        assert operations.list_vault(funded.id, SELLER_ID, "SELLER") == []

    @pytest.mark.asyncio
    async def test_buyer_sees_assets_after_proof(self, driver, operations):
        snapshot = await driver.with_proof()
        assets = operations.list_vault(snapshot.id, BUYER_ID, "BUYER")
        assert len(assets) == 1
        assert assets[0]["asset_type"] == "FILE"
        assert assets[0]["file_name"] == "ebook.pdf"
        assert assets[0]["scan_status"] == "PENDING"
        assert "secret" not in assets[0]

    @pytest.mark.asyncio
    async def test_stranger_denied(self, driver, operations):
        snapshot = await driver.with_proof()
        with pytest.raises(PermissionDenied):
            operations.list_vault(snapshot.id, "someone-else", "BUYER")

    @pytest.mark.asyncio
    async def test_seller_reveals_own_upload(self, driver, operations):
        snapshot = await driver.with_proof()
        asset_id = operations.list_vault(snapshot.id, SELLER_ID, "SELLER")[0]["id"]
        # Seller can still look at their own upload while the buyer is reviewing
        revealed = await operations.reveal_asset(asset_id, SELLER_ID, "SELLER")
        assert revealed["url"].startswith("https://blobs.test/")


class TestLicenseKeys:
    """License keys are encrypted at rest and revealed once"""

    @pytest.mark.asyncio
    async def test_secret_encrypted_at_rest(self, driver):
        snapshot = await driver.with_proof(item_type="LICENSE_KEYS")
        with managed_session() as session:
            asset = session.query(VaultAsset).filter(VaultAsset.rift_id == snapshot.id).one()
            assert asset.secret_ciphertext
            assert LICENSE.encode() not in asset.secret_ciphertext
            assert asset.content_text is None

    @pytest.mark.asyncio
    async def test_reveal_is_logged_once(self, driver, operations):
        snapshot = await driver.with_proof(item_type="LICENSE_KEYS")
        asset_id = operations.list_vault(snapshot.id, BUYER_ID, "BUYER")[0]["id"]

        first = await operations.reveal_asset(asset_id, BUYER_ID, "BUYER")
        second = await operations.reveal_asset(asset_id, BUYER_ID, "BUYER")
        assert first["secret"] == second["secret"] == LICENSE
        assert first["first_reveal"] is True
        assert second["first_reveal"] is False

        with managed_session() as session:
            vault_events = session.query(VaultEvent).filter(
                VaultEvent.asset_id == asset_id, VaultEvent.event_type == "LICENSE_KEY_REVEALED"
            ).count()
            rift_events = session.query(RiftEvent).filter(
                RiftEvent.rift_id == snapshot.id, RiftEvent.event_type == "LICENSE_KEY_REVEALED"
            ).count()
            asset = session.get(VaultAsset, asset_id)
            assert asset.is_revealed
            assert asset.revealed_at is not None
        assert vault_events == 1
        assert rift_events == 1

    @pytest.mark.asyncio
    async def test_admin_view_does_not_mark_revealed(self, driver, operations):
        snapshot = await driver.with_proof(item_type="LICENSE_KEYS")
        asset_id = operations.list_vault(snapshot.id, ADMIN_ID, "ADMIN")[0]["id"]
        viewed = await operations.reveal_asset(asset_id, ADMIN_ID, "ADMIN")
        assert viewed["secret"] == LICENSE
        assert viewed["first_reveal"] is False
        assert operations.list_vault(snapshot.id, BUYER_ID, "BUYER")[0]["is_revealed"] is False

    @pytest.mark.asyncio
    async def test_empty_license_rejected(self, driver, operations):
        funded = await driver.funded(item_type="LICENSE_KEYS")
        with pytest.raises(ValidationFailed) as exc:
            await operations.upload_proof(funded.id, SELLER_ID, "SELLER",
                                          {"assets": [{"asset_type": "LICENSE_KEY", "secret": "  "}]})
        assert exc.value.field == "assets[0].secret"


class TestFileAssets:
    """Files go to the blob store and are served via signed URLs"""

    @pytest.mark.asyncio
    async def test_upload_goes_to_blob_store(self, driver, blob_store):
        snapshot = await driver.with_proof(assets=[file_asset(b"chapter one", "book.epub")])
        assert list(blob_store.assets.values()) == [b"chapter one"]
        metadata = next(iter(blob_store.metadata.values()))
        assert metadata["rift_id"] == snapshot.id
        assert metadata["file_name"] == "book.epub"
        assert len(metadata["sha256"]) == 64

    @pytest.mark.asyncio
    async def test_digital_delivery_recorded(self, driver):
        snapshot = await driver.with_proof()
        with managed_session() as session:
            delivery = session.query(DigitalDelivery).filter(DigitalDelivery.rift_id == snapshot.id).one()
            assert delivery.asset_id.startswith("VA_")

    @pytest.mark.asyncio
    async def test_signed_url_and_download_event(self, driver, operations):
        snapshot = await driver.with_proof()
        asset_id = operations.list_vault(snapshot.id, BUYER_ID, "BUYER")[0]["id"]
        revealed = await operations.reveal_asset(asset_id, BUYER_ID, "BUYER")
        assert revealed["url"] == "https://blobs.test/blob-1?ttl=300"
        assert revealed["expires_in"] == 300
        timeline = operations.get_timeline(snapshot.id, BUYER_ID, "BUYER")
        assert "FILE_DOWNLOADED" in [e["event_type"] for e in timeline]

    @pytest.mark.asyncio
    async def test_failed_scan_blocks_download(self, driver, operations):
        snapshot = await driver.with_proof()
        asset_id = operations.list_vault(snapshot.id, BUYER_ID, "BUYER")[0]["id"]

        with pytest.raises(PermissionDenied):
            operations.record_scan_result(asset_id, SELLER_ID, "SELLER", "PASS")

        scanned = operations.record_scan_result(asset_id, SYSTEM_ID, "SYSTEM", "fail")
        assert scanned["scan_status"] == "FAIL"
        with pytest.raises(ValidationFailed) as exc:
            await operations.reveal_asset(asset_id, BUYER_ID, "BUYER")
        assert exc.value.field == "scan_status"

    @pytest.mark.asyncio
    async def test_invalid_base64_rejected(self, driver, operations):
        funded = await driver.funded()
        bad = {"asset_type": "FILE", "file_name": "x.pdf", "content_base64": "not base64!!"}
        with pytest.raises(ValidationFailed) as exc:
            await operations.upload_proof(funded.id, SELLER_ID, "SELLER", {"assets": [bad]})
        assert exc.value.field == "assets[0].content_base64"


class TestTextAssets:
    """Tracking numbers, links and instructions"""

    @pytest.mark.asyncio
    async def test_url_must_be_http(self, driver, operations):
        funded = await driver.funded(item_type="SERVICES")
        with pytest.raises(ValidationFailed) as exc:
            await operations.upload_proof(funded.id, SELLER_ID, "SELLER",
                                          {"assets": [{"asset_type": "URL", "text": "ftp://files.example/x"}]})
        assert exc.value.field == "assets[0].text"

    @pytest.mark.asyncio
    async def test_text_reveal(self, driver, operations):
        snapshot = await driver.with_proof(
            item_type="PHYSICAL",
            assets=[{"asset_type": "TRACKING", "text": "1Z999AA10123456784"}],
        )
        asset_id = operations.list_vault(snapshot.id, BUYER_ID, "BUYER")[0]["id"]
        revealed = await operations.reveal_asset(asset_id, BUYER_ID, "BUYER")
        assert revealed == {"asset_id": asset_id, "asset_type": "TRACKING", "text": "1Z999AA10123456784"}

    @pytest.mark.asyncio
    async def test_empty_upload_rejected(self, driver, operations):
        funded = await driver.funded()
        with pytest.raises(ValidationFailed) as exc:
            await operations.upload_proof(funded.id, SELLER_ID, "SELLER", {"assets": []})
        assert exc.value.field == "assets"
