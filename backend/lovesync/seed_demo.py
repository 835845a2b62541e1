"""
Demo data seeder for LoveSite Sync.

Fills the in-memory remote store with one anniversary, one message and one
setting so a fresh mock-mode start has something to sync.

This seeder is idempotent: it only writes to collections that are still empty.
"""
import logging
from datetime import datetime, timezone

from .services.memory_remote import InMemoryRemoteClient

logger = logging.getLogger(__name__)

DEMO_ANNIVERSARY = {
    "title": "First date",
    "date": "2020-05-20",
    "description": "Coffee that turned into dinner",
    "remind": True,
}
DEMO_MESSAGE = {
    "author": "Demo",
    "content": "Welcome to our little site!",
}
DEMO_SETTING = {
    "key": "theme",
    "value": "pink",
}
DEMO_CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def seed_demo_data(remote: InMemoryRemoteClient) -> int:
    """Seed demo records; returns how many were created."""
    created = 0
    for collection, data in (
        ("Anniversary", DEMO_ANNIVERSARY),
        ("Message", DEMO_MESSAGE),
        ("Setting", DEMO_SETTING),
    ):
        if remote.records(collection):
            continue
        remote.seed(collection, data, created_at=DEMO_CREATED_AT)
        logger.info("[seed] Created demo %s record", collection)
        created += 1
    return created
