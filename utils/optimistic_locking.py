"""
Optimistic Locking Infrastructure
Version-based concurrency control for rift status writes
"""

import logging
from typing import Any, Dict, Optional, Type
from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from models import Base
from utils.exception_handler import ConcurrentModification, NotFound
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Manager for optimistic locking operations
    Every write is ``UPDATE ... WHERE id = :id AND version = :seen``; zero rows
    updated means another writer got there first.
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: Optional[int] = None
    ) -> int:
        """
        Perform version-controlled update

        Args:
            model_class: SQLAlchemy model class with ``version`` and ``updated_at``
            entity_id: Primary key value
            updates: Dictionary of field updates
            current_version: Expected current version (fetched if not provided)

        Returns:
            int: the new version

        Raises:
            ConcurrentModification: If version conflict detected
        """
        try:
            if current_version is None:
                current_obj = self.session.get(model_class, entity_id)
                if current_obj is None:
                    raise NotFound(model_class.__tablename__, entity_id)
                current_version = current_obj.version

            update_values = {
                **updates,
                "version": current_version + 1,
                "updated_at": utc_now(),
            }

            stmt = (
                update(model_class)
                .where(model_class.id == entity_id, model_class.version == current_version)
                .values(update_values)
                .execution_options(synchronize_session="evaluate")
            )
            result = self.session.execute(stmt)

            if result.rowcount == 0:
                logger.warning(
                    f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                    f"expected_version={current_version}"
                )
                raise ConcurrentModification(str(entity_id), current_version)

            logger.debug(
                f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
                f"v{current_version} → v{current_version + 1}"
            )
            return current_version + 1

        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise
