"""
MongoDB Database Connection and Collections

Async motor client singleton and collection accessors for the sync worker.
"""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from brawlsync.core.config import get_settings
from brawlsync.core.errors import ConfigError
from brawlsync.utils.logger import get_logger, mask_url

log = get_logger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db = None


def get_client(uri: Optional[str] = None) -> AsyncIOMotorClient:
    """Get MongoDB client (singleton)"""
    global _client
    if _client is None:
        if not uri:
            uri = get_settings().mongo_uri
        if not uri:
            raise ConfigError("MONGO_URI is required for the MongoDB repository", key="MONGO_URI")
        _client = AsyncIOMotorClient(uri)
        log.info(f"MongoDB client initialized for {mask_url(uri)}")
    return _client


def get_db(name: Optional[str] = None, uri: Optional[str] = None):
    """Get the brawlsync database"""
    global _db
    if _db is None:
        if not name:
            name = get_settings().mongo_db
        _db = get_client(uri)[name]
        log.info(f"Connected to {name} database")
    return _db


def _database(db):
    return db if db is not None else get_db()


def get_players_col(db=None):
    return _database(db)["players"]


def get_aliases_col(db=None):
    return _database(db)["player_aliases"]


def get_ranked_col(db=None):
    return _database(db)["player_ranked"]


def get_stats_col(db=None):
    return _database(db)["player_stats"]


def get_teams_col(db=None):
    """2v2 leaderboard teams"""
    return _database(db)["teams_2v2"]


def get_clans_col(db=None):
    return _database(db)["clans"]


async def init_indexes(db=None):
    """
    Create indexes for the collections the worker writes

    Run once during setup (``brawlsync init-db``).
    """
    db = _database(db)
    log.info("Creating MongoDB indexes...")

    players = get_players_col(db)
    await players.create_index("brawlhalla_id", unique=True)
    await players.create_index([("rating", DESCENDING)])
    await players.create_index("name")

    aliases = get_aliases_col(db)
    await aliases.create_index([("brawlhalla_id", ASCENDING), ("key", ASCENDING)], unique=True)
    await aliases.create_index("key")

    await get_ranked_col(db).create_index("brawlhalla_id", unique=True)
    stats = get_stats_col(db)
    await stats.create_index("brawlhalla_id", unique=True)
    await stats.create_index("clan.clan_id")

    await get_teams_col(db).create_index(
        [("region", ASCENDING), ("id_one", ASCENDING), ("id_two", ASCENDING)], unique=True
    )

    clans = get_clans_col(db)
    await clans.create_index("clan_id", unique=True)
    await clans.create_index([("last_updated", DESCENDING)])
    log.info("MongoDB indexes created")


async def close_db():
    """Close MongoDB connection"""
    global _client, _db
    if _client:
        _client.close()
        _client = None
        _db = None
        log.info("MongoDB connection closed")


async def ping_db(client: Optional[AsyncIOMotorClient] = None) -> bool:
    """
    Ping MongoDB to check connection

    Args:
        client: Client to ping, defaults to the shared singleton

    Returns:
        bool: True if connected, False otherwise
    """
    try:
        client = client if client is not None else get_client()
        await client.admin.command("ping")
        return True
    except (PyMongoError, ConfigError) as e:
        log.error(f"MongoDB connection failed: {e}")
        return False
