"""PostgreSQL connection pooling and health checks for the durable stores."""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict

from psycopg2 import pool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Credentials come from environment variables in development and from
    AWS Secrets Manager in production.
    """
    host: str
    port: int = 5432
    database: str = "careline"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"

    def __post_init__(self):
        if self.min_connections < 1 or self.max_connections < self.min_connections:
            raise ValueError(
                f"Invalid pool size {self.min_connections}..{self.max_connections}"
            )

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.

        Environment variables:
            CARELINE_DB_HOST, CARELINE_DB_PORT, CARELINE_DB_NAME,
            CARELINE_DB_USER, CARELINE_DB_PASSWORD, CARELINE_DB_MIN_CONN,
            CARELINE_DB_MAX_CONN, CARELINE_DB_SSL_MODE

        With CARELINE_DB_SECRET_ARN set, credentials come from Secrets
        Manager instead (region from AWS_REGION).
        """
        secret_arn = os.getenv("CARELINE_DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn, os.getenv("AWS_REGION", "us-east-1"))

        return cls(
            host=os.getenv("CARELINE_DB_HOST", "localhost"),
            port=int(os.getenv("CARELINE_DB_PORT", "5432")),
            database=os.getenv("CARELINE_DB_NAME", "careline"),
            username=os.getenv("CARELINE_DB_USER", ""),
            password=os.getenv("CARELINE_DB_PASSWORD", ""),
            min_connections=int(os.getenv("CARELINE_DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("CARELINE_DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("CARELINE_DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Load credentials from AWS Secrets Manager."""
        try:
            import boto3

            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])

            return cls(
                host=secret.get("host", os.getenv("CARELINE_DB_HOST", "localhost")),
                port=int(secret.get("port", os.getenv("CARELINE_DB_PORT", "5432"))),
                database=secret.get("dbname", os.getenv("CARELINE_DB_NAME", "careline")),
                username=secret.get("username", ""),
                password=secret.get("password", ""),
            )
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise


class ConnectionManager:
    """Threaded psycopg2 pool shared by the detection and alert stores."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "min_connections": config.min_connections,
                "max_connections": config.max_connections,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool. Call during application startup."""
        if self._pool is not None:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                sslmode=self.config.ssl_mode,
            )
            logger.info(
                "CONNECTION_POOL_INITIALIZED",
                extra={"host": self.config.host, "database": self.config.database}
            )
        except Exception as e:
            logger.error(
                "CONNECTION_POOL_INIT_FAILED",
                extra={"error": str(e)}
            )
            raise

    @contextmanager
    def get_connection(self):
        """Borrow a connection from the pool.

        Usage:
            with manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        if self._pool is None:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()

            return {
                "status": "connected",
                "healthy": True,
                "host": self.config.host,
                "database": self.config.database,
            }
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"error": str(e)}
            )
            return {"status": "error", "healthy": False, "error": str(e)}

    def close(self) -> None:
        """Close all pooled connections. Call during shutdown."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("CONNECTION_POOL_CLOSED")
