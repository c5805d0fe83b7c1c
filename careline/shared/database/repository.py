"""Base repository for the PostgreSQL-backed stores."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from psycopg2 import errors as pg_errors

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Table-scoped CRUD helpers.

    Subclasses map rows to entities; column names passed to the query
    helpers come from code, never from user input.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        pass

    def find_by_id(self, entity_id: str) -> Optional[T]:
        rows = self.find_where({"id": entity_id}, limit=1)
        return rows[0] if rows else None

    def get(self, entity_id: str) -> T:
        entity = self.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError(f"{self.table_name} {entity_id} not found")
        return entity

    def find_where(
        self,
        filters: Dict[str, Any],
        order_by: str = "created_at DESC",
        limit: Optional[int] = None,
        extra_clause: str = "",
        extra_params: Sequence[Any] = (),
    ) -> List[T]:
        """Select rows matching all equality filters.

        Args:
            filters: column -> value equality conditions
            order_by: ORDER BY expression
            limit: optional row limit
            extra_clause: additional SQL condition ANDed in, with %s params
            extra_params: parameters for extra_clause
        """
        conditions = [f"{column} = %s" for column in filters]
        params: List[Any] = list(filters.values())
        if extra_clause:
            conditions.append(extra_clause)
            params.extend(extra_params)

        query = f"SELECT * FROM {self.table_name}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()

        return [self._row_to_entity(row) for row in rows]

    def insert(self, entity: T) -> T:
        """Insert a new row. Raises DuplicateError if the id exists."""
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders})"
        )

        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, list(params.values()))
                conn.commit()
        except pg_errors.UniqueViolation as e:
            logger.warning(
                "REPOSITORY_DUPLICATE",
                extra={"table_name": self.table_name}
            )
            raise DuplicateError(str(e)) from e

        return entity

    def save(self, entity: T) -> T:
        """Insert or update by id."""
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col != "id"
        )

        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT (id) DO UPDATE SET {update_clause}"
        )

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, list(params.values()))
            conn.commit()

        return entity

    def count(self) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.table_name}")
                row = cur.fetchone()

        return row[0] if row else 0
