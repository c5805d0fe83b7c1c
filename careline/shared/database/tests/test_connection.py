"""Tests for database connection manager."""
import pytest
from unittest.mock import MagicMock, patch

from careline.shared.database.connection import ConnectionManager, DatabaseConfig


def _manager_with_pool():
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    manager._pool = MagicMock()
    conn = MagicMock()
    manager._pool.getconn.return_value = conn
    return manager, conn


class TestDatabaseConfig:
    """Tests for DatabaseConfig dataclass."""

    def test_default_values(self):
        config = DatabaseConfig(host="localhost")

        assert config.port == 5432
        assert config.database == "careline"
        assert config.min_connections == 2
        assert config.max_connections == 10
        assert config.ssl_mode == "require"

    def test_rejects_inverted_pool_size(self):
        with pytest.raises(ValueError):
            DatabaseConfig(host="localhost", min_connections=5, max_connections=2)

    def test_from_env(self):
        with patch.dict("os.environ", {
            "CARELINE_DB_HOST": "env-host",
            "CARELINE_DB_PORT": "5434",
            "CARELINE_DB_NAME": "env_db",
            "CARELINE_DB_USER": "env_user",
            "CARELINE_DB_PASSWORD": "env_pass",
        }):
            config = DatabaseConfig.from_env()

            assert config.host == "env-host"
            assert config.port == 5434
            assert config.database == "env_db"
            assert config.username == "env_user"
            assert config.password == "env_pass"

    def test_from_env_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            config = DatabaseConfig.from_env()

            assert config.host == "localhost"
            assert config.database == "careline"

    def test_from_secrets_manager(self):
        client = MagicMock()
        client.get_secret_value.return_value = {
            "SecretString": '{"host": "db.internal", "username": "svc", "password": "pw"}'
        }
        with patch("boto3.client", return_value=client):
            config = DatabaseConfig.from_secrets_manager("arn:aws:secretsmanager:x")

        assert config.host == "db.internal"
        assert config.username == "svc"

    def test_from_env_prefers_secret_arn(self):
        with patch.dict("os.environ", {"CARELINE_DB_SECRET_ARN": "arn:aws:secretsmanager:y"}):
            with patch.object(DatabaseConfig, "from_secrets_manager") as load:
                DatabaseConfig.from_env()

        assert load.call_args.args[0] == "arn:aws:secretsmanager:y"


class TestConnectionManager:
    """Tests for ConnectionManager class."""

    def test_health_check_not_initialized(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        result = manager.health_check()

        assert result["healthy"] is False
        assert result["status"] == "not_initialized"

    def test_initialize_opens_threaded_pool(self):
        manager = ConnectionManager(DatabaseConfig(host="db", database="careline"))
        with patch("careline.shared.database.connection.pool.ThreadedConnectionPool") as pool_cls:
            manager.initialize()
            manager.initialize()

        assert pool_cls.call_count == 1
        assert pool_cls.call_args.kwargs["host"] == "db"
        assert manager.initialized

    def test_connection_returned_to_pool(self):
        manager, conn = _manager_with_pool()

        with manager.get_connection() as borrowed:
            assert borrowed is conn

        manager._pool.putconn.assert_called_once_with(conn)

    def test_connection_rolled_back_on_error(self):
        manager, conn = _manager_with_pool()

        with pytest.raises(RuntimeError):
            with manager.get_connection():
                raise RuntimeError("query failed")

        conn.rollback.assert_called_once()
        manager._pool.putconn.assert_called_once_with(conn)

    def test_health_check_connected(self):
        manager, _ = _manager_with_pool()

        result = manager.health_check()

        assert result["healthy"] is True
        assert result["status"] == "connected"

    def test_health_check_reports_errors(self):
        manager, _ = _manager_with_pool()
        manager._pool.getconn.side_effect = Exception("connection refused")

        result = manager.health_check()

        assert result["healthy"] is False
        assert "connection refused" in result["error"]

    def test_close(self):
        manager, _ = _manager_with_pool()
        pool = manager._pool

        manager.close()

        pool.closeall.assert_called_once()
        assert not manager.initialized
