"""Base repository pattern implementation.

This module provides a generic repository pattern that can be used
as a base for domain-specific repositories.
"""

from typing import Generic, TypeVar

from sqlalchemy.orm import Session

ModelType = TypeVar("ModelType")


class BaseRepository(Generic[ModelType]):
    """Generic repository with common CRUD operations.

    Every write commits immediately, so one repository call is one
    transaction. Callers that need several rows updated atomically must
    not use this class.

    Example:
        ```python
        class CertificateLedger(BaseRepository[CertificateRecord]):
            def __init__(self, db: Session):
                super().__init__(db, CertificateRecord)
        ```
    """

    def __init__(self, db: Session, model: type[ModelType]):
        """Initialize repository with database session and model class.

        Args:
            db: SQLAlchemy session.
            model: The model class this repository operates on.
        """
        self.db = db
        self.model = model

    def create(self, **kwargs: object) -> ModelType:
        """Create and commit a new entity.

        Args:
            **kwargs: Entity attributes.

        Returns:
            The created entity.
        """
        instance = self.model(**kwargs)  # type: ignore[call-arg]
        self.db.add(instance)
        self.db.commit()
        self.db.refresh(instance)
        return instance

    def update(self, instance: ModelType, **kwargs: object) -> ModelType:
        """Update and commit an existing entity.

        Args:
            instance: The entity to update.
            **kwargs: Attributes to update.

        Returns:
            The updated entity.
        """
        for key, value in kwargs.items():
            if hasattr(instance, key):
                setattr(instance, key, value)
        self.db.commit()
        self.db.refresh(instance)
        return instance
