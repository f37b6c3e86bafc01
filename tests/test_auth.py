from datetime import datetime, timedelta, timezone

import jwt
import pytest
from httpx import AsyncClient

from services import expenses_service
from utils import auth
from conftest import USER_ID, OTHER_USER_ID, make_expense


def make_token(claims: dict, secret: str = None) -> str:
    return jwt.encode(claims, secret or auth.ACCESS_TOKEN_SECRET, algorithm=auth.JWT_ALGORITHM)


@pytest.mark.asyncio
async def test_request_without_token_is_unauthorized(anonymous_client: AsyncClient):
    response = await anonymous_client.get("/api/expenses")

    assert response.status_code == 401
    assert response.json() == {
        "statusCode": 401,
        "data": None,
        "message": "Unauthorized request",
        "success": False,
    }


@pytest.mark.asyncio
async def test_bearer_token_scopes_requests_to_its_user(anonymous_client: AsyncClient, collection):
    await expenses_service.add_expense(collection, USER_ID, make_expense(description="Mine"))
    await expenses_service.add_expense(collection, OTHER_USER_ID, make_expense(description="Theirs"))
    headers = {"Authorization": f"Bearer {make_token({'_id': USER_ID})}"}

    response = await anonymous_client.get("/api/expenses", headers=headers)

    assert response.status_code == 200
    records = response.json()["data"]["records"]
    assert [r["description"] for r in records] == ["Mine"]


@pytest.mark.asyncio
async def test_access_token_cookie_is_accepted(anonymous_client: AsyncClient):
    headers = {"Cookie": f"accessToken={make_token({'sub': OTHER_USER_ID})}"}

    response = await anonymous_client.post(
        "/api/expenses",
        headers=headers,
        json={"amount": 1, "description": "Gum", "date": "2024-01-01T00:00:00", "category": "food", "paymentMethod": "cash"},
    )

    assert response.status_code == 201
    assert response.json()["data"]["owner"] == OTHER_USER_ID


@pytest.mark.asyncio
async def test_token_signed_with_wrong_secret_is_rejected(anonymous_client: AsyncClient):
    headers = {"Authorization": f"Bearer {make_token({'_id': USER_ID}, secret='another-secret')}"}

    response = await anonymous_client.get("/api/expenses", headers=headers)

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid access token"


@pytest.mark.asyncio
async def test_expired_token_is_rejected(anonymous_client: AsyncClient):
    expired = datetime.now(timezone.utc) - timedelta(minutes=5)
    headers = {"Authorization": f"Bearer {make_token({'_id': USER_ID, 'exp': expired})}"}

    response = await anonymous_client.get("/api/expenses", headers=headers)

    assert response.status_code == 401
    assert response.json()["message"] == "Access token expired"


@pytest.mark.asyncio
async def test_token_without_user_claim_is_rejected(anonymous_client: AsyncClient):
    headers = {"Authorization": f"Bearer {make_token({'role': 'admin'})}"}

    response = await anonymous_client.get("/api/expenses/statistics", headers=headers)

    assert response.status_code == 401
