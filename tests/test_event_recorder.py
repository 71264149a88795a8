"""
Event Recorder Tests
====================
"""

import pytest
from sqlalchemy import func, select

from app.models.subscription import EventKind, Platform, SubscriptionEvent
from app.services.event_recorder import EventRecorder


async def _record(db, notification_id="ntf-1", ntype="DID_RENEW", **kwargs):
    return await EventRecorder(db).record(
        notification_id=notification_id,
        platform=kwargs.pop("platform", Platform.APPLE),
        notification_type=ntype,
        original_transaction_id=kwargs.pop("original_transaction_id", "txn-1"),
        **kwargs,
    )


class TestRecord:

    @pytest.mark.asyncio
    async def test_inserts_new_event(self, db_session):
        result = await _record(db_session, decoded_payload={"product_id": "premium"})
        await db_session.commit()

        assert result.already_processed is False
        event = await EventRecorder(db_session).get(result.event_id)
        assert event.notification_id == "ntf-1"
        assert event.event_kind == EventKind.RENEWAL
        assert event.processed is False
        assert event.decoded_payload == {"product_id": "premium"}

    @pytest.mark.asyncio
    async def test_duplicate_notification_is_a_noop(self, db_session):
        first = await _record(db_session)
        second = await _record(db_session, ntype="EXPIRED")
        await db_session.commit()

        assert second.already_processed is True
        assert second.event_id == first.event_id

        count = await db_session.execute(select(func.count(SubscriptionEvent.id)))
        assert count.scalar_one() == 1
        event = await EventRecorder(db_session).get(first.event_id)
        # The original row is untouched
        assert event.notification_type == "DID_RENEW"

    @pytest.mark.asyncio
    async def test_unrecognized_type_is_still_recorded(self, db_session):
        result = await _record(db_session, ntype="BRAND_NEW_TYPE")
        event = await EventRecorder(db_session).get(result.event_id)
        assert event.event_kind == EventKind.UNRECOGNIZED

    @pytest.mark.asyncio
    async def test_lookup_by_notification_id(self, db_session):
        result = await _record(db_session, notification_id="ntf-lookup")
        event = await EventRecorder(db_session).get_by_notification_id("ntf-lookup")
        assert event.id == result.event_id
        assert await EventRecorder(db_session).get_by_notification_id("missing") is None


class TestMarkProcessed:

    @pytest.mark.asyncio
    async def test_marks_once(self, db_session):
        recorder = EventRecorder(db_session)
        result = await _record(db_session)

        assert await recorder.mark_processed(result.event_id, error="first") is True
        assert await recorder.mark_processed(result.event_id, error="second") is False

        event = await recorder.get(result.event_id)
        assert event.processed is True
        assert event.processing_error == "first"
