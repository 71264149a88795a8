"""
Webhook API Tests
=================
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from app.models.subscription import Platform, SubscriptionStatus
from app.schemas.common import ErrorResponse
from app.services.event_recorder import EventRecorder
from app.services.subscription_store import SubscriptionKey, SubscriptionStore
from tests.factories import make_envelope

URL = "/api/v1/webhooks/subscriptions"


def _body(envelope) -> dict:
    return envelope.model_dump(mode="json")


async def _post(client: AsyncClient, envelope, headers):
    return await client.post(URL, json=_body(envelope), headers=headers)


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_key(self, client: AsyncClient):
        response = await client.post(URL, json=_body(make_envelope("TEST")))
        assert response.status_code == 401
        body = ErrorResponse.model_validate(response.json())
        assert body.success is False
        assert body.error.code == "AUTH_001"

    @pytest.mark.asyncio
    async def test_wrong_key(self, client: AsyncClient):
        response = await _post(
            client, make_envelope("TEST"), {"Authorization": "Bearer not-the-key"}
        )
        assert response.status_code == 401


class TestIngest:

    @pytest.mark.asyncio
    async def test_linked_purchase_is_applied(
        self, client: AsyncClient, service_headers, session_factory
    ):
        user_id = uuid.uuid4()
        link = await client.post(
            "/api/v1/subscriptions/link",
            json={
                "user_id": str(user_id),
                "platform": "apple",
                "original_transaction_id": "txn-api",
            },
            headers=service_headers,
        )
        assert link.status_code == 200

        envelope = make_envelope(
            "SUBSCRIBED",
            subtype="INITIAL_BUY",
            original_transaction_id="txn-api",
            expires_date=datetime.now(timezone.utc) + timedelta(days=30),
        )
        response = await _post(client, envelope, service_headers)

        assert response.status_code == 200
        ack = response.json()
        assert ack["received"] is True
        assert ack["applied"] is True
        assert ack["parked"] is False
        assert ack["already_processed"] is False

        premium = await client.get(
            f"/api/v1/subscriptions/{user_id}/premium", headers=service_headers
        )
        assert premium.json() == {"user_id": str(user_id), "is_premium": True}

        async with session_factory() as db:
            row = await SubscriptionStore(db).get(SubscriptionKey(Platform.APPLE, "txn-api"))
            assert row.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged(self, client: AsyncClient, service_headers):
        envelope = make_envelope("TEST", notification_id="ntf-redeliver")

        first = await _post(client, envelope, service_headers)
        second = await _post(client, envelope, service_headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["already_processed"] is True
        assert second.json()["event_id"] == first.json()["event_id"]

    @pytest.mark.asyncio
    async def test_unapplicable_event_is_still_acknowledged(
        self, client: AsyncClient, service_headers, session_factory
    ):
        envelope = make_envelope("SUBSCRIBED", original_transaction_id="txn-nobody")

        response = await _post(client, envelope, service_headers)

        assert response.status_code == 200
        ack = response.json()
        assert ack["parked"] is True
        assert ack["applied"] is False

        async with session_factory() as db:
            event = await EventRecorder(db).get(uuid.UUID(ack["event_id"]))
            assert event.processed is False

    @pytest.mark.asyncio
    async def test_record_failure_returns_503(self, client: AsyncClient, service_headers):
        error = OperationalError("INSERT", {}, Exception("database is down"))
        with patch.object(EventRecorder, "record", side_effect=error):
            response = await _post(client, make_envelope("DID_RENEW"), service_headers)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SUB_002"

    @pytest.mark.asyncio
    async def test_invalid_envelope(self, client: AsyncClient, service_headers):
        body = _body(make_envelope("DID_RENEW"))
        body["platform"] = "amazon"

        response = await client.post(URL, json=body, headers=service_headers)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
