"""
Tests for CallbackReconciler.

Covers successful credits, failure callbacks, duplicate and concurrent
deliveries, unknown checkout ids, malformed envelopes, and store outages.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from mpesa_relay.exceptions import MalformedCallback, PersistenceError
from mpesa_relay.schemas import CallbackAck
from mpesa_relay.services.ledger import LedgerStore
from mpesa_relay.services.reconciler import (
    CallbackReconciler,
    parse_callback,
    parse_transaction_date,
)

NAIROBI = ZoneInfo("Africa/Nairobi")


async def _pending(
    store: LedgerStore, checkout_request_id: str = "ws_CO_1", amount_cents: int = 50000
):
    record = await store.create_pending("u1", "254712345678", amount_cents)
    await store.attach_gateway_ids(record.id, "29115-34620561-1", checkout_request_id)
    return record


class TestParsing:
    """Tests for the envelope and metadata helpers."""

    def test_parse_callback(self, callback_payload) -> None:
        callback = parse_callback(callback_payload())

        assert callback.checkout_request_id == "ws_CO_1"
        assert callback.result_code == 0
        assert callback.metadata()["MpesaReceiptNumber"] == "R123"

    def test_string_result_code_is_accepted(self, callback_payload) -> None:
        callback = parse_callback(callback_payload(result_code="1032"))
        assert callback.result_code == 1032

    @pytest.mark.parametrize("result_code", [True, 0.0, 1.5, "abc", None, [0]])
    def test_mistyped_result_code_is_malformed(self, callback_payload, result_code) -> None:
        payload = callback_payload(result_code=1)
        payload["Body"]["stkCallback"]["ResultCode"] = result_code

        with pytest.raises(MalformedCallback):
            parse_callback(payload)

    def test_metadata_skips_nameless_items(self, callback_payload) -> None:
        payload = callback_payload(
            items=[{"Value": 1}, {"Name": "MpesaReceiptNumber", "Value": "R9"}]
        )
        assert parse_callback(payload).metadata() == {"MpesaReceiptNumber": "R9"}

    def test_parse_transaction_date(self) -> None:
        expected = datetime(2025, 10, 19, 10, 21, 15, tzinfo=NAIROBI)

        assert parse_transaction_date(20251019102115) == expected
        assert parse_transaction_date("20251019102115") == expected
        assert parse_transaction_date(None) is None
        assert parse_transaction_date("yesterday") is None

    def test_transaction_date_is_east_africa_time(self) -> None:
        parsed = parse_transaction_date(20251019102115)

        assert parsed.utcoffset() == timedelta(hours=3)
        assert parsed.astimezone(timezone.utc) == datetime(
            2025, 10, 19, 7, 21, 15, tzinfo=timezone.utc
        )


class TestSuccessCallbacks:
    """ResultCode 0 completes the record and credits the owner once."""

    @pytest.mark.asyncio
    async def test_success_credits_owner(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        ack = await reconciler.reconcile(callback_payload())

        assert ack.result_code == 0
        assert ack.outcome == "completed"
        stored = await store.get_record(record.id)
        assert stored.status == "completed"
        assert stored.receipt_reference == "R123"
        assert stored.completed_at is not None
        assert stored.raw_callback["Body"]["stkCallback"]["CheckoutRequestID"] == "ws_CO_1"
        assert await store.get_balance_cents("u1") == 50000

    @pytest.mark.asyncio
    async def test_duplicate_delivery_credits_once(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        first = await reconciler.reconcile(callback_payload())
        second = await reconciler.reconcile(callback_payload())

        assert first.outcome == "completed"
        assert second.outcome == "duplicate"
        assert second.result_code == 0
        assert await store.get_balance_cents("u1") == 50000
        assert await store.count_credits(record.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_credit_once(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        acks = await asyncio.gather(
            *(reconciler.reconcile(callback_payload()) for _ in range(3))
        )

        assert all(ack.result_code == 0 for ack in acks)
        assert [ack.outcome for ack in acks].count("completed") == 1
        assert await store.get_balance_cents("u1") == 50000
        assert await store.count_credits(record.id) == 1

    @pytest.mark.asyncio
    async def test_metadata_order_and_extra_items_do_not_matter(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)
        payload = callback_payload(
            items=[
                {"Name": "PhoneNumber", "Value": 254712345678},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20251019102115},
                {"Name": "MpesaReceiptNumber", "Value": "R777"},
                {"Name": "Amount", "Value": 500},
            ]
        )

        ack = await reconciler.reconcile(payload)

        assert ack.outcome == "completed"
        stored = await store.get_record(record.id)
        assert stored.receipt_reference == "R777"
        # 10:21:15 EAT is stored as UTC
        assert stored.completed_at.replace(tzinfo=None) == datetime(2025, 10, 19, 7, 21, 15)

    @pytest.mark.asyncio
    async def test_missing_metadata_still_completes(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        ack = await reconciler.reconcile(callback_payload(items=[]))

        assert ack.outcome == "completed"
        stored = await store.get_record(record.id)
        assert stored.receipt_reference is None
        assert stored.completed_at is not None
        assert await store.get_balance_cents("u1") == 50000

    @pytest.mark.asyncio
    async def test_requested_amount_is_credited_on_mismatch(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        await _pending(store)

        await reconciler.reconcile(callback_payload(amount=1))

        assert await store.get_balance_cents("u1") == 50000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount", ["Infinity", "-Infinity", float("inf"), "NaN", "five hundred", None]
    )
    async def test_unusable_confirmed_amount_still_completes(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload, amount
    ) -> None:
        record = await _pending(store)

        ack = await reconciler.reconcile(callback_payload(amount=amount))

        assert ack.result_code == 0
        assert ack.outcome == "completed"
        assert (await store.get_record(record.id)).status == "completed"
        assert await store.get_balance_cents("u1") == 50000


class TestEarlyCallbacks:
    """Callbacks that arrive before the gateway ids were stored."""

    @pytest.mark.asyncio
    async def test_reference_matches_unlinked_record(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await store.create_pending("u1", "254712345678", 50000)

        ack = await reconciler.reconcile(callback_payload(), callback_ref=record.id)

        assert ack.result_code == 0
        assert ack.outcome == "completed"
        stored = await store.find_by_checkout_id("ws_CO_1")
        assert stored.id == record.id
        assert stored.status == "completed"
        assert stored.merchant_request_id == "29115-34620561-1"
        assert await store.get_balance_cents("u1") == 50000

        # The initiator's own write lands afterwards
        await store.attach_gateway_ids(record.id, "29115-34620561-1", "ws_CO_1")
        redelivered = await reconciler.reconcile(callback_payload())

        assert redelivered.outcome == "duplicate"
        assert (await store.get_record(record.id)).status == "completed"
        assert await store.count_credits(record.id) == 1

    @pytest.mark.asyncio
    async def test_reference_matches_unlinked_record_on_failure(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await store.create_pending("u1", "254712345678", 50000)

        ack = await reconciler.reconcile(
            callback_payload(result_code=1032), callback_ref=record.id
        )

        assert ack.outcome == "failed"
        stored = await store.find_by_checkout_id("ws_CO_1")
        assert stored.id == record.id
        assert stored.status == "failed"
        assert await store.get_balance_cents("u1") == 0

    @pytest.mark.asyncio
    async def test_reference_to_linked_record_is_not_taken_over(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store, checkout_request_id="ws_CO_mine")

        ack = await reconciler.reconcile(
            callback_payload(checkout_request_id="ws_CO_other"), callback_ref=record.id
        )

        assert ack.outcome == "not_found"
        stored = await store.get_record(record.id)
        assert stored.status == "pending"
        assert stored.checkout_request_id == "ws_CO_mine"
        assert await store.get_balance_cents("u1") == 0

    @pytest.mark.asyncio
    async def test_unknown_reference(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        ack = await reconciler.reconcile(callback_payload(), callback_ref="no-such-record")

        assert ack.result_code == 0
        assert ack.outcome == "not_found"

    @pytest.mark.asyncio
    async def test_checkout_id_wins_over_reference(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        linked = await _pending(store)
        unlinked = await store.create_pending("u2", "254712345678", 10000)

        ack = await reconciler.reconcile(callback_payload(), callback_ref=unlinked.id)

        assert ack.outcome == "completed"
        assert (await store.get_record(linked.id)).status == "completed"
        assert (await store.get_record(unlinked.id)).status == "pending"
        assert await store.get_balance_cents("u2") == 0


class TestFailureCallbacks:
    """Non-zero ResultCode marks the record failed without a credit."""

    @pytest.mark.asyncio
    async def test_failure_marks_record_failed(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        first = await reconciler.reconcile(callback_payload(result_code=1032))
        second = await reconciler.reconcile(callback_payload(result_code=1032))

        assert first.outcome == "failed"
        assert first.result_code == 0
        assert second.outcome == "duplicate"
        stored = await store.get_record(record.id)
        assert stored.status == "failed"
        assert stored.result_code == 1032
        assert stored.result_desc == "Request cancelled by user"
        assert await store.get_balance_cents("u1") == 0
        assert await store.count_credits(record.id) == 0

    @pytest.mark.asyncio
    async def test_success_after_failure_is_ignored(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)
        await reconciler.reconcile(callback_payload(result_code=1))

        ack = await reconciler.reconcile(callback_payload())

        assert ack.outcome == "duplicate"
        assert (await store.get_record(record.id)).status == "failed"
        assert await store.get_balance_cents("u1") == 0


class TestRejectedDeliveries:
    """Unknown, malformed and unpersistable callbacks."""

    @pytest.mark.asyncio
    async def test_unknown_checkout_id(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload
    ) -> None:
        record = await _pending(store)

        ack = await reconciler.reconcile(callback_payload(checkout_request_id="ws_CO_other"))

        assert ack.result_code == 0
        assert ack.outcome == "not_found"
        assert (await store.get_record(record.id)).status == "pending"
        assert await store.get_balance_cents("u1") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": True}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": 0.0}}},
            [],
            "callback",
            None,
        ],
    )
    async def test_malformed_envelopes(
        self, reconciler: CallbackReconciler, store: LedgerStore, payload
    ) -> None:
        record = await _pending(store)

        ack = await reconciler.reconcile(payload)

        assert ack.result_code == 1
        assert ack.outcome == "malformed"
        assert not ack.retry_later
        assert (await store.get_record(record.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_store_outage_requests_redelivery(
        self, reconciler: CallbackReconciler, store: LedgerStore, callback_payload, monkeypatch
    ) -> None:
        record = await _pending(store)
        monkeypatch.setattr(
            store,
            "complete_and_credit",
            AsyncMock(side_effect=PersistenceError("complete_and_credit")),
        )

        ack = await reconciler.reconcile(callback_payload())

        assert ack.result_code == 1
        assert ack.outcome == "retry_later"
        assert ack.retry_later is True
        assert (await store.get_record(record.id)).status == "pending"

        monkeypatch.undo()
        redelivered = await reconciler.reconcile(callback_payload())

        assert redelivered.outcome == "completed"
        assert await store.get_balance_cents("u1") == 50000

    def test_ack_serializes_without_internal_fields(self) -> None:
        ack = CallbackAck(result_code=0, result_desc="Accepted", outcome="completed")

        assert ack.model_dump(by_alias=True) == {"resultCode": 0, "resultDesc": "Accepted"}
