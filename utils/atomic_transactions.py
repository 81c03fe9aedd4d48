"""Atomic transaction utilities for rift status changes and ledger writes"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Generator, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from database import SessionLocal, IS_SQLITE
from utils.exception_handler import NotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for one atomic unit of work with rollback on any error.

    Status transitions and the ledger entries they produce are written inside
    a single block so no reader observes one without the other. When a session
    is passed in, nesting depth is tracked and only the outermost block commits.
    """
    session_provided = session is not None
    if not session_provided:
        session = SessionLocal()
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


@contextmanager
def locked_rift_operation(
    rift_id: str, session: Session, max_retries: int = 3
) -> Generator[Any, None, None]:
    """
    Load a rift with a row-level lock (SELECT ... FOR UPDATE).

    SQLite has no row locks; there the per-rift asyncio lock and the version
    check in ``OptimisticLockManager`` carry the serialization.
    """
    from models import Rift

    retry_count = 0
    while True:
        try:
            query = session.query(Rift).filter(Rift.id == rift_id)
            if not IS_SQLITE:
                query = query.with_for_update(nowait=False)
            rift = query.first()
            break
        except OperationalError as e:
            lowered = str(e).lower()
            if ("deadlock detected" in lowered or "lock_timeout" in lowered) and retry_count < max_retries - 1:
                retry_count += 1
                backoff_time = 0.1 * (2 ** retry_count)
                logger.warning(
                    f"Deadlock detected for rift {rift_id}, retrying ({retry_count}/{max_retries}) after {backoff_time}s"
                )
                session.rollback()
                time.sleep(backoff_time)
                continue
            logger.error(f"Database operational error locking rift {rift_id}: {e}")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error in locked rift operation: {e}")
            raise

    if rift is None:
        raise NotFound("rift", rift_id)

    logger.debug(f"🔒 Acquired lock for rift {rift_id}")
    yield rift


def locked_wallet(user_id: str, currency: str, session: Session):
    """Fetch (creating if needed) a user's wallet for the currency, row-locked"""
    from models import Wallet

    query = session.query(Wallet).filter(Wallet.user_id == user_id, Wallet.currency == currency)
    if not IS_SQLITE:
        query = query.with_for_update()
    wallet = query.first()
    if wallet is None:
        wallet = Wallet(user_id=user_id, currency=currency)
        session.add(wallet)
        session.flush()
        logger.info(f"💼 Created {currency} wallet for user {user_id}")
    return wallet
