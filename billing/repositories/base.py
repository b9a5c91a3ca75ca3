from typing import Any, Generic, Optional, Protocol, Type, TypeVar

from sqlalchemy.orm import Session

ModelT = TypeVar("ModelT")


class Repository(Protocol[ModelT]):
    """Capability set the services depend on"""

    def find_by_id(self, entity_id: str) -> Optional[ModelT]: ...

    def find_by(self, **filters: Any) -> list[ModelT]: ...

    def save(self, entity: ModelT) -> ModelT: ...

    def update(self, entity_id: str, values: dict) -> int: ...


class SqlAlchemyRepository(Generic[ModelT]):
    """Repository backed by a SQLAlchemy session; the caller owns commit/rollback"""

    model: Type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, entity_id: str) -> Optional[ModelT]:
        return self.db.query(self.model).filter(self.model.id == entity_id).first()

    def find_by(self, **filters: Any) -> list[ModelT]:
        query = self.db.query(self.model)
        for field, value in filters.items():
            query = query.filter(getattr(self.model, field) == value)
        return query.all()

    def save(self, entity: ModelT) -> ModelT:
        self.db.add(entity)
        self.db.flush()
        return entity

    def update(self, entity_id: str, values: dict) -> int:
        return self.db.query(self.model).filter(self.model.id == entity_id).update(values)
