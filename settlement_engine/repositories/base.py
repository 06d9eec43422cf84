"""
Base repository class for the settlement data access layer.

Repositories own every query the engine runs, so the orchestrator reads as a
sequence of store operations and tests can swap a single repository method.

Example:
    class MarketRepository(BaseRepository[Market]):
        def find_open(self) -> List[Market]:
            return self.query().filter(Market.market_status == MarketStatus.OPEN).all()
"""
import uuid
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, Dict

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

T = TypeVar("T")


def new_id() -> str:
    return str(uuid.uuid4())


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    # ========================================================================
    # Reads
    # ========================================================================

    def find_by_id(self, id) -> Optional[T]:
        """Find a single record by primary key."""
        return self.db.get(self.model_type, id)

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def where_first(self, *criterion) -> Optional[T]:
        """Filter records using SQLAlchemy expressions and return first match."""
        return self.db.query(self.model_type).filter(*criterion).first()

    def exists_where(self, *criterion) -> bool:
        """Check if any record matching the criterion exists."""
        return self.db.query(
            self.db.query(self.model_type).filter(*criterion).exists()
        ).scalar()

    def count(self, *criterion) -> int:
        """Count records matching optional criterion."""
        query = self.db.query(func.count()).select_from(self.model_type)
        if criterion:
            query = query.filter(*criterion)
        return query.scalar() or 0

    def group_by_and_count(self, group_field: str, *additional_criterion) -> Dict[str, int]:
        """
        Group by a field and count records in each group.

        Returns:
            Mapping of group value to count
        """
        column = getattr(self.model_type, group_field)
        query = self.db.query(column, func.count())
        if additional_criterion:
            query = query.filter(*additional_criterion)
        return {value: count for value, count in query.group_by(column).all()}

    # ========================================================================
    # Writes
    # ========================================================================

    def create(self, **kwargs) -> T:
        """
        Add a new record to the session (not committed).

        A string ``id`` is generated when the model has one and none is given.
        """
        if "id" not in kwargs and hasattr(self.model_type, "id"):
            column = self.model_type.__table__.c.get("id")
            if column is not None and column.type.python_type is str:
                kwargs["id"] = new_id()
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        return instance
