import os
from datetime import datetime
from typing import AsyncGenerator

os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-secret")

import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from main import app
from models.expense import ExpenseCreate
from routes import get_cache, get_expenses_collection
from utils.auth import get_current_user_id


USER_ID = "user-a"
OTHER_USER_ID = "user-b"


def make_expense(**overrides) -> ExpenseCreate:
    """Build a valid expense, overriding any field by its wire name."""
    data = {
        "amount": 12.5,
        "description": "Lunch",
        "date": datetime(2024, 1, 15, 12, 0, 0),
        "category": "food",
        "paymentMethod": "card",
    }
    data.update(overrides)
    return ExpenseCreate(**data)


def expense_payload(**overrides) -> dict:
    """JSON body for POST/PUT /api/expenses."""
    data = {
        "amount": 12.5,
        "description": "Lunch",
        "date": "2024-01-15T12:00:00",
        "category": "food",
        "paymentMethod": "card",
    }
    data.update(overrides)
    return data


@pytest_asyncio.fixture(scope="function")
async def collection():
    """A fresh in-memory expenses collection."""
    mongo_client = AsyncMongoMockClient()
    yield mongo_client["expense_tracker_test"]["expenses"]


@pytest_asyncio.fixture(scope="function")
async def cache() -> AsyncGenerator[FakeAsyncRedis, None]:
    """An empty in-memory Redis."""
    redis = FakeAsyncRedis(decode_responses=True)
    await redis.flushall()
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest_asyncio.fixture(scope="function")
async def client(collection, cache) -> AsyncGenerator[AsyncClient, None]:
    """Test client authenticated as USER_ID, backed by the in-memory store and cache."""
    app.dependency_overrides[get_expenses_collection] = lambda: collection
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_current_user_id] = lambda: USER_ID

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def anonymous_client(collection, cache) -> AsyncGenerator[AsyncClient, None]:
    """Test client that goes through real token verification."""
    app.dependency_overrides[get_expenses_collection] = lambda: collection
    app.dependency_overrides[get_cache] = lambda: cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
