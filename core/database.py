"""Database management module."""
import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import aiosqlite

from models.settings import UserData

logger = logging.getLogger(__name__)


class Database:
    """SQLite store for tenant records and the server keypair."""

    def __init__(self, db_path: str):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Establish database connection."""
        # Create data directory if it doesn't exist
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.connection = await aiosqlite.connect(self.db_path)
        self.connection.row_factory = aiosqlite.Row

        logger.info(f"Connected to database: {self.db_path}")
        await self.init_schema()

    async def disconnect(self):
        """Close database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info("Database connection closed")

    async def init_schema(self):
        """Initialize database schema."""
        schema = """
        -- One JSON document per tenant: subscriptions, notifications, settings
        CREATE TABLE IF NOT EXISTS user_data (
            username TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        -- Process-wide keypairs (PEM)
        CREATE TABLE IF NOT EXISTS keypairs (
            name TEXT PRIMARY KEY,
            public_pem TEXT NOT NULL,
            private_pem TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """

        await self.connection.executescript(schema)
        await self.connection.commit()
        logger.info("Database schema initialized")

    async def load_user_data(self, username: str) -> UserData:
        """
        Load a tenant record, creating a default one on first use.

        Args:
            username: Tenant key

        Returns:
            UserData with defaults filled in and history normalized
        """
        row = await self.fetchone(
            "SELECT payload FROM user_data WHERE username = ?",
            (username,)
        )

        if row is None:
            logger.info(f"No data for {username}, creating defaults")
            data = UserData()
            await self.save_user_data(username, data)
            return data

        try:
            payload = json.loads(row['payload'])
        except ValueError as e:
            logger.error(f"Stored data for {username} is not valid JSON: {e}")
            payload = {}

        return UserData.from_payload(payload)

    async def save_user_data(self, username: str, data: UserData):
        """
        Write a tenant record back in one statement.

        Args:
            username: Tenant key
            data: Tenant record
        """
        # Round trip through the loader so the stored copy is normalized too
        payload = UserData.from_payload(data.to_payload()).to_payload()

        await self.execute("""
            INSERT INTO user_data (username, payload)
            VALUES (?, ?)
            ON CONFLICT(username) DO UPDATE SET
                payload = excluded.payload,
                updated_at = CURRENT_TIMESTAMP
        """, (username, json.dumps(payload, ensure_ascii=False)))

    async def get_keypair(self, name: str) -> Optional[Tuple[str, str]]:
        """Get (public_pem, private_pem) of a stored keypair."""
        row = await self.fetchone(
            "SELECT public_pem, private_pem FROM keypairs WHERE name = ?",
            (name,)
        )
        if row is None:
            return None
        return row['public_pem'], row['private_pem']

    async def save_keypair(self, name: str, public_pem: str, private_pem: str):
        """Store a keypair, replacing any previous one under the same name."""
        await self.execute("""
            INSERT INTO keypairs (name, public_pem, private_pem)
            VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                public_pem = excluded.public_pem,
                private_pem = excluded.private_pem,
                created_at = CURRENT_TIMESTAMP
        """, (name, public_pem, private_pem))

    async def execute(self, query: str, params: tuple = ()):
        """Execute a query."""
        cursor = await self.connection.execute(query, params)
        await self.connection.commit()
        return cursor

    async def fetchone(self, query: str, params: tuple = ()):
        """Fetch one row."""
        cursor = await self.connection.execute(query, params)
        return await cursor.fetchone()


async def init_database(db_path: str) -> Database:
    """
    Open the database and make sure the schema exists.

    Args:
        db_path: Path to database file

    Returns:
        Database instance
    """
    database = Database(db_path)
    await database.connect()
    return database

