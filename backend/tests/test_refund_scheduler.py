"""
Refund scheduler tests

Schedule creation from an approved cancellation, per-installment approval,
payment marking and the resulting cancellation status.
"""
import asyncio
from datetime import date, datetime
from decimal import Decimal

import pytest
from bson import ObjectId

from conftest import make_sale
from core.errors import (
    InvalidStateTransitionError, InvalidInstallmentCountError,
    ScheduleAlreadyExistsError, ConcurrentModificationError, NotFoundError
)
from core.financial_precision import to_decimal


async def approved_cancellation(db, engine, actor, approver, paid_amount=100000):
    sale_id = make_sale(db, paid_amount=paid_amount)
    cancellation = await engine.create_cancellation(sale_id, "Refund flow", actor)
    await engine.decide(str(cancellation["_id"]), True, approver)
    return str(cancellation["_id"])


async def approve_refund(workflow, refund_id, account_manager, hof):
    await workflow.submit(refund_id, account_manager)
    await workflow.approve(refund_id, account_manager)
    return await workflow.approve(refund_id, hof)


class TestCreateSchedule:

    @pytest.mark.asyncio
    async def test_three_installments(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)

        refunds = await refund_scheduler.create_schedule(
            cid, 3, account_manager, start_date=date(2024, 1, 31)
        )

        # refundable = 100000 - 10000
        assert [to_decimal(r["amount"]) for r in refunds] == [
            Decimal("30000"), Decimal("30000"), Decimal("30000")
        ]
        assert [r["installment_number"] for r in refunds] == [1, 2, 3]
        assert [r["due_date"] for r in refunds] == [
            datetime(2024, 1, 31), datetime(2024, 2, 29), datetime(2024, 3, 31)
        ]
        assert all(r["approval_status"] == "Draft" for r in refunds)
        assert all(r["status"] == "Pending" for r in refunds)
        assert all(r["refund_number"].startswith("RFD-") for r in refunds)
        assert len({r["refund_number"] for r in refunds}) == 3

        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["refund_schedule_created"] is True
        assert cancellation["number_of_installments"] == 3

    @pytest.mark.asyncio
    async def test_sum_matches_refundable(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof, paid_amount="10001")
        refunds = await refund_scheduler.create_schedule(cid, 7, account_manager)

        cancellation = await cancellation_engine.get_cancellation(cid)
        total = sum(to_decimal(r["amount"]) for r in refunds)
        assert total == to_decimal(cancellation["refundable_amount"])
        assert all(to_decimal(r["amount"]) > 0 for r in refunds)

    @pytest.mark.asyncio
    async def test_refund_number_format(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 1, account_manager)

        now = datetime.utcnow()
        assert refunds[0]["refund_number"] == f"RFD-{now.year}-{now.month:02d}-00001"

    @pytest.mark.asyncio
    async def test_requires_approved_cancellation(self, cancellation_engine, refund_scheduler, sale_id, account_manager):
        cancellation = await cancellation_engine.create_cancellation(sale_id, "Pending", account_manager)
        with pytest.raises(InvalidStateTransitionError):
            await refund_scheduler.create_schedule(str(cancellation["_id"]), 3, account_manager)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 37])
    async def test_count_out_of_range(self, db, cancellation_engine, refund_scheduler, account_manager, hof, count):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        with pytest.raises(InvalidInstallmentCountError):
            await refund_scheduler.create_schedule(cid, count, account_manager)
        assert db.refunds.docs == []

    @pytest.mark.asyncio
    async def test_more_installments_than_units(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        # 10% of 5 rounds up to 1, leaving 4 whole units to refund
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof, paid_amount=5)
        with pytest.raises(InvalidInstallmentCountError):
            await refund_scheduler.create_schedule(cid, 5, account_manager)

    @pytest.mark.asyncio
    async def test_second_schedule_rejected(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        await refund_scheduler.create_schedule(cid, 2, account_manager)
        with pytest.raises(ScheduleAlreadyExistsError):
            await refund_scheduler.create_schedule(cid, 4, account_manager)
        assert len(db.refunds.docs) == 2

    @pytest.mark.asyncio
    async def test_concurrent_schedules_single_winner(self, db, cancellation_engine, refund_scheduler, account_manager, admin, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        results = await asyncio.gather(
            refund_scheduler.create_schedule(cid, 2, account_manager),
            refund_scheduler.create_schedule(cid, 3, admin),
            return_exceptions=True
        )
        assert sum(1 for r in results if isinstance(r, list)) == 1
        assert sum(1 for r in results if isinstance(r, ScheduleAlreadyExistsError)) == 1
        assert len(db.refunds.docs) in (2, 3)

    @pytest.mark.asyncio
    async def test_failed_write_releases_schedule(self, db, cancellation_engine, refund_scheduler, account_manager, hof, monkeypatch):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        original_insert_one = db.refunds.insert_one

        async def connection_lost_midway(docs, **kwargs):
            await original_insert_one(docs[0])
            raise RuntimeError("connection lost")

        monkeypatch.setattr(db.refunds, "insert_many", connection_lost_midway)
        with pytest.raises(RuntimeError):
            await refund_scheduler.create_schedule(cid, 3, account_manager)
        monkeypatch.undo()

        assert db.refunds.docs == []
        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["refund_schedule_created"] is False
        assert "number_of_installments" not in cancellation

        refunds = await refund_scheduler.create_schedule(cid, 3, account_manager)
        assert [r["installment_number"] for r in refunds] == [1, 2, 3]
        assert len(db.refunds.docs) == 3

    @pytest.mark.asyncio
    async def test_unknown_cancellation(self, refund_scheduler, account_manager):
        with pytest.raises(NotFoundError):
            await refund_scheduler.create_schedule(str(ObjectId()), 2, account_manager)


class TestMarkAsPaid:

    @pytest.mark.asyncio
    async def test_requires_approved_refund(self, db, cancellation_engine, refund_scheduler, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 2, account_manager)

        with pytest.raises(InvalidStateTransitionError):
            await refund_scheduler.mark_as_paid(str(refunds[0]["_id"]), "Cash", account_manager)

    @pytest.mark.asyncio
    async def test_partial_then_refunded(
        self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, hof
    ):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 2, account_manager)
        first, second = (str(r["_id"]) for r in refunds)

        await approve_refund(refund_workflow, first, account_manager, hof)
        paid = await refund_scheduler.mark_as_paid(
            first, "Bank Transfer", account_manager,
            payment_date=date(2024, 2, 1), transaction_ref="TRX-1", remarks="First installment"
        )
        assert paid["status"] == "Paid"
        assert paid["paid_date"] == datetime(2024, 2, 1)
        assert paid["transaction_ref"] == "TRX-1"
        assert paid["payment_remarks"] == "First installment"

        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["status"] == "Partial Refund"
        assert to_decimal(cancellation["refunded_amount"]) == Decimal("45000")

        await approve_refund(refund_workflow, second, account_manager, hof)
        await refund_scheduler.mark_as_paid(second, "Cheque", account_manager)

        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["status"] == "Refunded"
        assert to_decimal(cancellation["remaining_refund"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_pay_twice(self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 1, account_manager)
        refund_id = str(refunds[0]["_id"])
        await approve_refund(refund_workflow, refund_id, account_manager, hof)

        await refund_scheduler.mark_as_paid(refund_id, "Cash", account_manager)
        with pytest.raises(InvalidStateTransitionError):
            await refund_scheduler.mark_as_paid(refund_id, "Cash", account_manager)

    @pytest.mark.asyncio
    async def test_concurrent_pay_single_winner(
        self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, admin, hof
    ):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 1, account_manager)
        refund_id = str(refunds[0]["_id"])
        await approve_refund(refund_workflow, refund_id, account_manager, hof)

        results = await asyncio.gather(
            refund_scheduler.mark_as_paid(refund_id, "Cash", account_manager),
            refund_scheduler.mark_as_paid(refund_id, "Cash", admin),
            return_exceptions=True
        )
        assert sum(1 for r in results if isinstance(r, dict)) == 1
        assert sum(1 for r in results if isinstance(r, ConcurrentModificationError)) == 1

        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["status"] == "Refunded"


    @pytest.mark.asyncio
    async def test_concurrent_last_payments_reach_refunded(
        self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, admin, hof, monkeypatch
    ):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 2, account_manager)
        first, second = (str(r["_id"]) for r in refunds)
        await approve_refund(refund_workflow, first, account_manager, hof)
        await approve_refund(refund_workflow, second, account_manager, hof)

        original = db.cancellations.find_one_and_update
        writes = []

        async def slow_first_write(query, update, **kwargs):
            writes.append(query)
            if len(writes) == 1:
                for _ in range(50):
                    await asyncio.sleep(0)
            return await original(query, update, **kwargs)

        monkeypatch.setattr(db.cancellations, "find_one_and_update", slow_first_write)

        async def pay_later(refund_id, actor):
            for _ in range(10):
                await asyncio.sleep(0)
            return await refund_scheduler.mark_as_paid(refund_id, "Cash", actor)

        await asyncio.gather(
            refund_scheduler.mark_as_paid(first, "Cash", account_manager),
            pay_later(second, admin)
        )

        # the first payment's write carried a one-refund total and had to recount
        assert len(writes) == 3
        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["status"] == "Refunded"
        assert to_decimal(cancellation["refunded_amount"]) == Decimal("90000")
        assert to_decimal(cancellation["remaining_refund"]) == Decimal("0")


class TestRejectedRefund:

    @pytest.mark.asyncio
    async def test_rejection_cancels_payment(
        self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, hof
    ):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 2, account_manager)
        refund_id = str(refunds[0]["_id"])

        await refund_workflow.submit(refund_id, account_manager)
        rejected = await refund_workflow.reject(refund_id, account_manager, "Wrong bank details")
        assert rejected["approval_status"] == "Rejected"

        stored = await refund_scheduler.get_refund(refund_id)
        assert stored["status"] == "Cancelled"

        with pytest.raises(InvalidStateTransitionError):
            await refund_scheduler.mark_as_paid(refund_id, "Cash", account_manager)

        cancellation = await cancellation_engine.get_cancellation(cid)
        assert cancellation["status"] == "Approved"


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_and_stats(self, db, cancellation_engine, refund_scheduler, refund_workflow, account_manager, hof):
        cid = await approved_cancellation(db, cancellation_engine, account_manager, hof)
        refunds = await refund_scheduler.create_schedule(cid, 3, account_manager)
        await refund_workflow.submit(str(refunds[2]["_id"]), account_manager)

        listed = await refund_scheduler.list_refunds(cancellation_id=cid)
        assert [r["installment_number"] for r in listed] == [1, 2, 3]

        drafts = await refund_scheduler.list_refunds(approval_status="Draft")
        assert len(drafts) == 2

        stats = await refund_scheduler.get_stats()
        assert stats["total_refunds"] == 3
        assert stats["pending_refunds"] == 3
        assert stats["pending_approvals"] == 1
        assert to_decimal(stats["total_amount"]) == Decimal("90000")
