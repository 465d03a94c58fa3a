"""Scoped connection to the target MongoDB deployment."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..config import MigrationConfig
from ..utils import mask_connection_string
from .errors import TargetConnectionError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def connect_target(config: MigrationConfig) -> AsyncIterator[AsyncIOMotorDatabase]:
    """
    Connect to MongoDB, verify the deployment answers a ping, and yield the
    target database. The client is closed on every exit path.

    Raises:
        TargetConnectionError: the deployment could not be reached
    """
    logger.info(f"Connecting to MongoDB at {mask_connection_string(config.connection_string)}...")

    client = AsyncIOMotorClient(
        config.connection_string,
        serverSelectionTimeoutMS=config.server_selection_timeout_ms,
        connectTimeoutMS=config.connect_timeout_ms,
    )
    try:
        try:
            await client.admin.command('ping')
        except PyMongoError as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            logger.info("Make sure MongoDB is running and the connection string is correct")
            raise TargetConnectionError(f"Cannot connect to MongoDB: {e}") from e

        logger.info("Connected to MongoDB")
        yield client[config.database_name]
    finally:
        client.close()
        logger.debug("MongoDB connection closed")
