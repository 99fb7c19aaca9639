from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trustflow.core.exceptions import PersistenceError
from trustflow.utils.logging import get_logger

ModelType = TypeVar("ModelType")

LOGGER = get_logger(__name__)


class BaseRepository(Generic[ModelType]):
    """Base repository with the primitive operations the stores build on.

    Every SQLAlchemy failure is logged and re-raised as ``PersistenceError``
    so callers never depend on driver exceptions.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
        """
        self.session = session
        self.model = model
        self.logger = LOGGER

    async def get(self, key: Any, populate_existing: bool = False) -> Optional[ModelType]:
        """Get a row by primary key.

        Args:
            key: Primary key value
            populate_existing: Reload from the database even if the row is
                already in the session
        """
        try:
            return await self.session.get(
                self.model, key, populate_existing=populate_existing
            )
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving {self.model.__name__} {key}: {str(e)}",
                exc_info=True,
            )
            raise PersistenceError(f"Failed to load {self.model.__name__}", e) from e

    async def add(self, instance: ModelType) -> ModelType:
        """Insert a row and commit.

        Raises:
            PersistenceError: If the write fails; the session is rolled back
        """
        try:
            self.session.add(instance)
            await self.session.flush()
            await self.session.commit()
            return instance
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error writing {self.model.__name__}: {str(e)}",
                exc_info=True,
            )
            raise PersistenceError(f"Failed to write {self.model.__name__}", e) from e
