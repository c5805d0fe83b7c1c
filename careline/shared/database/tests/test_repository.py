"""Tests for base repository pattern."""
import pytest
from unittest.mock import MagicMock
from dataclasses import dataclass
from typing import Any, Dict

from psycopg2 import errors as pg_errors

from careline.shared.database.connection import ConnectionManager, DatabaseConfig
from careline.shared.database.repository import (
    BaseRepository,
    DuplicateError,
    NotFoundError,
    RepositoryError,
)


@dataclass
class Widget:
    id: str
    name: str
    value: int


class WidgetRepository(BaseRepository[Widget]):
    """Concrete repository for testing."""

    def _row_to_entity(self, row: tuple) -> Widget:
        return Widget(id=row[0], name=row[1], value=row[2])

    def _entity_to_params(self, entity: Widget) -> Dict[str, Any]:
        return {"id": entity.id, "name": entity.name, "value": entity.value}


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def repository(cursor):
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    manager._pool = MagicMock()
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    manager._pool.getconn.return_value = conn
    return WidgetRepository(manager, "widgets")


class TestRepositoryExceptions:
    """Tests for repository exception classes."""

    def test_hierarchy(self):
        assert issubclass(NotFoundError, RepositoryError)
        assert issubclass(DuplicateError, RepositoryError)


class TestBaseRepository:
    """Tests for BaseRepository class."""

    def test_find_where_builds_filtered_query(self, repository, cursor):
        cursor.fetchall.return_value = [("w1", "alpha", 1)]

        result = repository.find_where({"name": "alpha"}, limit=5)

        query, params = cursor.execute.call_args.args
        assert "FROM widgets WHERE name = %s" in query
        assert query.endswith("LIMIT %s")
        assert params == ["alpha", 5]
        assert result == [Widget("w1", "alpha", 1)]

    def test_find_where_extra_clause(self, repository, cursor):
        cursor.fetchall.return_value = []

        repository.find_where({}, extra_clause="value > %s", extra_params=(3,))

        query, params = cursor.execute.call_args.args
        assert "WHERE value > %s" in query
        assert params == [3]

    def test_find_by_id_none(self, repository, cursor):
        cursor.fetchall.return_value = []

        assert repository.find_by_id("missing") is None

    def test_get_raises_not_found(self, repository, cursor):
        cursor.fetchall.return_value = []

        with pytest.raises(NotFoundError):
            repository.get("missing")

    def test_insert(self, repository, cursor):
        widget = Widget("w1", "alpha", 1)

        assert repository.insert(widget) is widget
        query, params = cursor.execute.call_args.args
        assert query.startswith("INSERT INTO widgets (id, name, value)")
        assert params == ["w1", "alpha", 1]

    def test_insert_duplicate(self, repository, cursor):
        cursor.execute.side_effect = pg_errors.UniqueViolation("duplicate key")

        with pytest.raises(DuplicateError):
            repository.insert(Widget("w1", "alpha", 1))

    def test_save_upserts(self, repository, cursor):
        repository.save(Widget("w1", "alpha", 2))

        query, _ = cursor.execute.call_args.args
        assert "ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name" in query

    def test_count(self, repository, cursor):
        cursor.fetchone.return_value = (7,)

        assert repository.count() == 7
