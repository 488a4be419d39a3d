"""Shared fixtures: an in-memory database, a private event bus and wired services."""

import pytest
import pytest_asyncio

from resultspro.db import InMemoryDatabase
from resultspro.services.messaging import MessagingService
from resultspro.services.milestones import MilestoneService
from resultspro.services.templates import TemplateService
from resultspro.sse import EventBus

PATIENT = "patient-1"
ADMIN = "admin-1"
OTHER_ADMIN = "admin-2"


@pytest_asyncio.fixture
async def database():
    database = InMemoryDatabase()
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def bus():
    return EventBus(queue_size=10)


@pytest.fixture
def messaging(database, bus):
    return MessagingService(database=database, bus=bus)


@pytest.fixture
def templates(database, messaging):
    return TemplateService(database=database, messaging=messaging)


@pytest.fixture
def milestones(database, bus):
    return MilestoneService(database=database, bus=bus)


@pytest_asyncio.fixture
async def conversation(messaging):
    return await messaging.create_conversation(PATIENT, ADMIN)
