"""Tests for the two-tier recurring lookup (Plaid first, custom detector second)."""
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import DataError

from cash_snapshot.models.recurring import RecurringTransaction
from cash_snapshot.services.account_resolver import build_account_map
from cash_snapshot.services import recurring
from cash_snapshot.services.recurring import (
    MERCHANT_NAME_MAX,
    PROVIDER_CONFIDENCE,
    fetch_provider_streams,
    get_recurring,
)
from cash_snapshot.services.transaction_upserter import mark_removed, upsert_transaction
from tests.fixtures import seed_item
from tests.fixtures.mocks import FakePlaidClient, SAMPLE_RECURRING, product_not_ready, server_error, weekly_series


async def seed_transactions(session_factory, user_id, item_pk, records):
    async with session_factory() as db:
        account_map = await build_account_map(db, item_pk)
        for record in records:
            await upsert_transaction(db, record, account_map, user_id)
        await db.commit()


async def stored_streams(session_factory) -> list[RecurringTransaction]:
    async with session_factory() as db:
        result = await db.execute(select(RecurringTransaction))
        return list(result.scalars())


def gym_payload(amount=12.50):
    return {
        "outflow_streams": [{
            "stream_id": "stream-gym",
            "description": "ACME GYM MEMBERSHIP",
            "merchant_name": "Acme Gym",
            "average_amount": {"value": amount},
            "first_date": "2024-01-01",
            "last_date": "2024-06-01",
            "frequency": {"days": 30},
            "occurrences": 6,
        }]
    }


class TestProviderTier:
    async def test_provider_streams_are_returned_and_persisted(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)
        plaid = FakePlaidClient(recurring=gym_payload())

        result = await get_recurring(db, plaid, user_id, "outflow")

        assert result.plaid_api == 1
        assert result.custom_detector == 0
        assert result.total_streams == 1
        assert result.streams[0].avg_amount == -12.5
        assert result.streams[0].source == "provider"

        (row,) = await stored_streams(session_factory)
        assert row.user_id == user_id
        assert row.merchant_name == "Acme Gym"
        assert row.direction == "outflow"
        assert row.frequency == "monthly"
        assert row.avg_amount == Decimal("-12.50")
        assert row.min_amount == row.max_amount == row.avg_amount
        assert row.occurrences == 6
        assert row.last_date == date(2024, 6, 1)
        assert row.next_estimated_date == date(2024, 7, 1)
        assert row.confidence == PROVIDER_CONFIDENCE
        assert row.is_active is True

    async def test_later_detection_overwrites_in_place(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)

        await get_recurring(db, FakePlaidClient(recurring=gym_payload(12.50)), user_id, "outflow")
        await get_recurring(db, FakePlaidClient(recurring=gym_payload(14.00)), user_id, "outflow")

        rows = await stored_streams(session_factory)
        assert len(rows) == 1
        assert rows[0].avg_amount == Decimal("-14.00")

    async def test_inflow_uses_inflow_streams(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)

        result = await get_recurring(db, FakePlaidClient(recurring=SAMPLE_RECURRING), user_id, "INFLOW")

        assert result.type == "inflow"
        assert [s.description for s in result.streams] == ["ACME CORP PAYROLL"]
        (row,) = await stored_streams(session_factory)
        # No merchant name from Plaid: keyed by description
        assert row.merchant_name == "ACME CORP PAYROLL"
        assert row.frequency == "biweekly"

    async def test_client_error_means_no_data(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)

        tier = await fetch_provider_streams(db, FakePlaidClient(recurring=product_not_ready()), user_id, "outflow")

        assert tier.streams == []
        assert tier.error is None
        assert tier.falls_through

    async def test_server_error_is_reported(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)

        tier = await fetch_provider_streams(db, FakePlaidClient(recurring=server_error()), user_id, "outflow")

        assert tier.error is not None
        assert tier.falls_through

    async def test_out_of_range_frequency_is_tolerated(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)
        payload = gym_payload()
        payload["outflow_streams"][0]["frequency"] = {"days": 10**9}

        result = await get_recurring(db, FakePlaidClient(recurring=payload), user_id, "outflow")

        assert result.plaid_api == 1
        assert result.streams[0].next_estimated_date is None
        (row,) = await stored_streams(session_factory)
        assert row.next_estimated_date is None

    async def test_unreadable_payload_is_reported(self, session_factory, db, user_id, monkeypatch):
        await seed_item(session_factory, user_id)

        def explode(payload, direction):
            raise ValueError("unexpected shape")

        monkeypatch.setattr(recurring, "parse_provider_streams", explode)

        tier = await fetch_provider_streams(db, FakePlaidClient(recurring=gym_payload()), user_id, "outflow")

        assert tier.streams == []
        assert "unexpected shape" in tier.error
        assert tier.falls_through

    async def test_long_description_is_truncated_to_column_width(self, session_factory, db, user_id):
        await seed_item(session_factory, user_id)
        payload = gym_payload()
        payload["outflow_streams"][0]["merchant_name"] = None
        payload["outflow_streams"][0]["description"] = "X" * 300

        await get_recurring(db, FakePlaidClient(recurring=payload), user_id, "outflow")

        (row,) = await stored_streams(session_factory)
        assert row.merchant_name == "X" * MERCHANT_NAME_MAX

    async def test_user_without_items(self, db, user_id):
        plaid = FakePlaidClient(recurring=gym_payload())

        tier = await fetch_provider_streams(db, plaid, user_id, "outflow")

        assert tier.falls_through
        assert plaid.recurring_calls == []


class TestCustomFallback:
    async def _seed_gym_history(self, session_factory, user_id):
        item_pk = await seed_item(session_factory, user_id)
        await seed_transactions(
            session_factory, user_id, item_pk,
            weekly_series("gym", "Acme Gym", 19.99, date(2024, 5, 1), 4),
        )
        return item_pk

    async def test_client_error_falls_back_to_custom(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)

        result = await get_recurring(db, FakePlaidClient(recurring=product_not_ready()), user_id, "outflow")

        assert result.plaid_api == 0
        assert result.custom_detector == 1
        (stream,) = result.streams
        assert stream.merchant_name == "Acme Gym"
        assert stream.frequency_days == 7
        assert stream.avg_amount == -19.99
        assert stream.occurrences == 4
        assert stream.source == "custom"
        # Custom detections are never stored
        assert await stored_streams(session_factory) == []

    async def test_server_error_falls_back_to_custom(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)

        result = await get_recurring(db, FakePlaidClient(recurring=server_error()), user_id, "outflow")

        assert result.custom_detector == 1

    async def test_empty_provider_payload_falls_back(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)

        result = await get_recurring(db, FakePlaidClient(recurring={"outflow_streams": []}), user_id, "outflow")

        assert result.plaid_api == 0
        assert result.custom_detector == 1

    async def test_unconfigured_client_falls_back(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)

        result = await get_recurring(db, None, user_id, "outflow")

        assert result.custom_detector == 1

    async def test_removed_transactions_are_ignored(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)
        await mark_removed(db, ["gym-0", "gym-1"])
        await db.commit()

        result = await get_recurring(db, None, user_id, "outflow")

        assert result.streams == []
        assert result.total_streams == 0

    async def test_store_error_on_persist_falls_back_to_custom(self, session_factory, db, user_id, monkeypatch):
        await self._seed_gym_history(session_factory, user_id)

        async def reject(*args, **kwargs):
            raise DataError("INSERT INTO recurring_transactions", {}, Exception("value too long"))

        monkeypatch.setattr(recurring, "persist_provider_streams", reject)

        result = await get_recurring(db, FakePlaidClient(recurring=gym_payload()), user_id, "outflow")

        assert result.plaid_api == 0
        assert result.custom_detector == 1
        assert result.streams[0].source == "custom"

    async def test_unknown_type_means_outflow(self, session_factory, db, user_id):
        await self._seed_gym_history(session_factory, user_id)

        result = await get_recurring(db, None, user_id, "sideways")

        assert result.type == "outflow"
        assert result.custom_detector == 1
