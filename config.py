"""Configuration management for the Rift escrow core"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    PORT = int(os.getenv("PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./rift_escrow.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Fees
    SELLER_FEE_RATE = Decimal(os.getenv("SELLER_FEE_RATE", "0.08"))  # 8% platform fee on seller payout
    BUYER_FEE_RATE = Decimal(os.getenv("BUYER_FEE_RATE", "0"))
    SUPPORTED_CURRENCIES = [
        c.strip().upper() for c in os.getenv("SUPPORTED_CURRENCIES", "USD,EUR,GBP,CAD").split(",") if c.strip()
    ]

    # Review windows (hours after proof submission before auto-release)
    REVIEW_WINDOW_HOURS_DIGITAL = int(os.getenv("REVIEW_WINDOW_HOURS_DIGITAL", "24"))
    REVIEW_WINDOW_HOURS_TICKETS = int(os.getenv("REVIEW_WINDOW_HOURS_TICKETS", "24"))
    REVIEW_WINDOW_HOURS_SERVICES = int(os.getenv("REVIEW_WINDOW_HOURS_SERVICES", "24"))
    REVIEW_WINDOW_HOURS_LICENSE_KEYS = int(os.getenv("REVIEW_WINDOW_HOURS_LICENSE_KEYS", "24"))
    REVIEW_WINDOW_HOURS_PHYSICAL = int(os.getenv("REVIEW_WINDOW_HOURS_PHYSICAL", "48"))  # legacy physical goods

    # Milestones
    DEFAULT_REVISION_LIMIT = int(os.getenv("DEFAULT_REVISION_LIMIT", "1"))

    # Dispute gates
    DISPUTE_MIN_SUMMARY_LENGTH = int(os.getenv("DISPUTE_MIN_SUMMARY_LENGTH", "200"))
    DISPUTE_DECLARATION_TEXT = os.getenv("DISPUTE_DECLARATION_TEXT", "I CONFIRM")
    DISPUTE_MIN_FILE_EVIDENCE = int(os.getenv("DISPUTE_MIN_FILE_EVIDENCE", "1"))
    DISPUTE_MIN_TEXT_EVIDENCE = int(os.getenv("DISPUTE_MIN_TEXT_EVIDENCE", "2"))
    TICKET_URGENT_WINDOW_HOURS = int(os.getenv("TICKET_URGENT_WINDOW_HOURS", "6"))
    DIGITAL_DISPUTE_COOLDOWN_HOURS = int(os.getenv("DIGITAL_DISPUTE_COOLDOWN_HOURS", "1"))

    # Auto-triage rule thresholds
    TRIAGE_MIN_VIEW_SECONDS = int(os.getenv("TRIAGE_MIN_VIEW_SECONDS", "30"))
    TRIAGE_SELLER_RESPONSE_HOURS = int(os.getenv("TRIAGE_SELLER_RESPONSE_HOURS", "24"))
    ABUSE_LOOKBACK_DAYS = int(os.getenv("ABUSE_LOOKBACK_DAYS", "60"))
    ABUSE_DISPUTE_THRESHOLD = int(os.getenv("ABUSE_DISPUTE_THRESHOLD", "3"))
    ABUSE_AUTO_REJECT_THRESHOLD = int(os.getenv("ABUSE_AUTO_REJECT_THRESHOLD", "2"))

    # Ledger
    PAYOUT_HOLD_HOURS = int(os.getenv("PAYOUT_HOLD_HOURS", "0"))  # seller credit stays pending this long

    # Vault
    VAULT_SIGNED_URL_TTL_SECONDS = int(os.getenv("VAULT_SIGNED_URL_TTL_SECONDS", "300"))
    VAULT_ENCRYPTION_KEY = os.getenv("VAULT_ENCRYPTION_KEY")  # Fernet key, urlsafe base64

    # External collaborators
    PAYMENT_PROCESSOR_URL = os.getenv("PAYMENT_PROCESSOR_URL", "")
    PAYMENT_PROCESSOR_API_KEY = os.getenv("PAYMENT_PROCESSOR_API_KEY", "")
    BLOB_STORE_URL = os.getenv("BLOB_STORE_URL", "")
    BLOB_STORE_API_KEY = os.getenv("BLOB_STORE_API_KEY", "")
    EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "15"))
    EXTERNAL_RETRY_ATTEMPTS = int(os.getenv("EXTERNAL_RETRY_ATTEMPTS", "3"))
    EXTERNAL_RETRY_BASE_DELAY = float(os.getenv("EXTERNAL_RETRY_BASE_DELAY", "0.5"))  # seconds, doubled per attempt

    # Background jobs
    ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"
    AUTO_RELEASE_INTERVAL_MINUTES = int(os.getenv("AUTO_RELEASE_INTERVAL_MINUTES", "5"))
    PAYOUT_INTERVAL_MINUTES = int(os.getenv("PAYOUT_INTERVAL_MINUTES", "10"))
    RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "15"))
    JOB_BATCH_SIZE = int(os.getenv("JOB_BATCH_SIZE", "50"))
    MAX_RECONCILIATION_ATTEMPTS = int(os.getenv("MAX_RECONCILIATION_ATTEMPTS", "10"))
    # A pending pay/payout untouched this long is treated as a crashed call
    RECONCILIATION_STALE_MINUTES = int(os.getenv("RECONCILIATION_STALE_MINUTES", "10"))

    @classmethod
    def review_window_hours(cls, item_type: str) -> int:
        """Review window length for an item type (RiftItemType value or name)"""
        key = str(item_type).split(".")[-1].upper()
        windows = {
            "DIGITAL": cls.REVIEW_WINDOW_HOURS_DIGITAL,
            "TICKETS": cls.REVIEW_WINDOW_HOURS_TICKETS,
            "SERVICES": cls.REVIEW_WINDOW_HOURS_SERVICES,
            "LICENSE_KEYS": cls.REVIEW_WINDOW_HOURS_LICENSE_KEYS,
            "PHYSICAL": cls.REVIEW_WINDOW_HOURS_PHYSICAL,
        }
        return windows.get(key, cls.REVIEW_WINDOW_HOURS_PHYSICAL)

    @staticmethod
    def log_environment_config():
        """Log the effective configuration at startup"""
        logger.info(f"🔧 Environment: {Config.ENVIRONMENT} (production={Config.IS_PRODUCTION})")
        logger.info(
            f"💰 Fees: seller={Config.SELLER_FEE_RATE}, buyer={Config.BUYER_FEE_RATE}, "
            f"currencies={','.join(Config.SUPPORTED_CURRENCIES)}"
        )
        logger.info(
            f"⏱️ Review windows (h): digital={Config.REVIEW_WINDOW_HOURS_DIGITAL}, "
            f"tickets={Config.REVIEW_WINDOW_HOURS_TICKETS}, services={Config.REVIEW_WINDOW_HOURS_SERVICES}, "
            f"license_keys={Config.REVIEW_WINDOW_HOURS_LICENSE_KEYS}, physical={Config.REVIEW_WINDOW_HOURS_PHYSICAL}"
        )
        if not Config.PAYMENT_PROCESSOR_URL:
            logger.warning("⚠️ PAYMENT_PROCESSOR_URL not set - payment processor adapter disabled")
        if not Config.BLOB_STORE_URL:
            logger.warning("⚠️ BLOB_STORE_URL not set - blob store adapter disabled")

    @staticmethod
    def validate_production_config() -> Dict[str, Any]:
        """Check settings that must be present before serving production traffic"""
        issues = []
        warnings = []

        if Config.DATABASE_URL.startswith("sqlite"):
            (issues if Config.IS_PRODUCTION else warnings).append(
                "DATABASE_URL points at SQLite; row locking is not enforced"
            )
        if not Config.VAULT_ENCRYPTION_KEY:
            (issues if Config.IS_PRODUCTION else warnings).append(
                "VAULT_ENCRYPTION_KEY missing; license keys cannot be stored"
            )
        if not (Decimal("0") <= Config.SELLER_FEE_RATE < Decimal("1")):
            issues.append(f"SELLER_FEE_RATE must be in [0, 1), got {Config.SELLER_FEE_RATE}")
        if Config.EXTERNAL_RETRY_ATTEMPTS < 1:
            issues.append("EXTERNAL_RETRY_ATTEMPTS must be at least 1")

        for issue in issues:
            logger.error(f"❌ CONFIG: {issue}")
        for warning in warnings:
            logger.warning(f"⚠️ CONFIG: {warning}")
        if not issues:
            logger.info("✅ Configuration validation complete")

        return {"issues": issues, "warnings": warnings}
