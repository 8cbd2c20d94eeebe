"""
Database connection utilities for the CRM settings store
"""
import os
import psycopg
from typing import Optional


def get_database_url() -> str:
    """Get database URL from environment."""
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise ValueError("DATABASE_URL environment variable not set")
    return dsn


def database_configured() -> bool:
    return bool(os.environ.get("DATABASE_URL"))


def get_db_connection(dsn: Optional[str] = None) -> psycopg.Connection:
    """
    Get a synchronous database connection.

    Args:
        dsn: Connection string; DATABASE_URL when None

    Returns:
        psycopg.Connection: Database connection (caller must close)

    Raises:
        ValueError: If DATABASE_URL not configured
        psycopg.Error: If connection fails

    Example:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT key, value FROM crm.user_settings WHERE user_id = %s", (user,))
                rows = cur.fetchall()
    """
    return psycopg.connect(dsn or get_database_url(), autocommit=False)
