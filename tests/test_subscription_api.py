"""
Subscription API Tests
======================
"""

from datetime import datetime, timedelta, timezone
import uuid

import pytest
from httpx import AsyncClient

from tests.factories import seed_subscription


class TestLookup:

    @pytest.mark.asyncio
    async def test_requires_service_key(self, client: AsyncClient):
        response = await client.get(f"/api/v1/subscriptions/{uuid.uuid4()}")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_user_without_subscription(self, client: AsyncClient, service_headers):
        user_id = uuid.uuid4()
        response = await client.get(f"/api/v1/subscriptions/{user_id}", headers=service_headers)

        assert response.status_code == 200
        assert response.json() == {
            "user_id": str(user_id),
            "is_premium": False,
            "subscription": None,
        }

    @pytest.mark.asyncio
    async def test_current_subscription(self, client: AsyncClient, service_headers, db_session):
        user_id = uuid.uuid4()
        await seed_subscription(
            db_session,
            user_id=user_id,
            expires_date=datetime.now(timezone.utc) + timedelta(days=7),
        )
        await db_session.close()

        response = await client.get(f"/api/v1/subscriptions/{user_id}", headers=service_headers)

        data = response.json()
        assert data["is_premium"] is True
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["platform"] == "apple"
        assert data["subscription"]["original_transaction_id"] == "txn-1000"

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, client: AsyncClient, service_headers):
        response = await client.get("/api/v1/subscriptions/not-a-uuid", headers=service_headers)
        assert response.status_code == 422


class TestLink:

    @pytest.mark.asyncio
    async def test_link_conflict(self, client: AsyncClient, service_headers, db_session):
        await seed_subscription(db_session, user_id=uuid.uuid4())
        await db_session.close()

        response = await client.post(
            "/api/v1/subscriptions/link",
            json={
                "user_id": str(uuid.uuid4()),
                "platform": "apple",
                "original_transaction_id": "txn-1000",
            },
            headers=service_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "SUB_003"

    @pytest.mark.asyncio
    async def test_link_new_transaction(self, client: AsyncClient, service_headers):
        user_id = uuid.uuid4()
        response = await client.post(
            "/api/v1/subscriptions/link",
            json={
                "user_id": str(user_id),
                "platform": "stripe",
                "original_transaction_id": "sub_123",
                "linking_token": "cus_123",
                "environment": "sandbox",
            },
            headers=service_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == str(user_id)
        assert data["status"] == "unknown"
        assert data["requeued_events"] == 0

        premium = await client.get(
            f"/api/v1/subscriptions/{user_id}/premium", headers=service_headers
        )
        assert premium.json()["is_premium"] is False
