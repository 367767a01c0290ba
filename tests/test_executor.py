"""
Tests for batched distribution and payment deduplication.
"""

import asyncio

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.distribution import PaymentAttempt, PaymentStatus
from app.services.distribution import (
    DeduplicatingTransport, DistributionExecutor, PaymentResult, PaymentTransport,
    SimulatedPaymentTransport, make_idempotency_key
)
from app.services.rewards import DistributionPlan, RewardCategory, RewardLineItem
from tests.conftest import RecordingTransport, address


def make_plan(count: int, amount: int = 10**18) -> DistributionPlan:
    return DistributionPlan(items=[
        RewardLineItem(address(i), amount, RewardCategory.SUPPORTER, content_id=5, rank=1)
        for i in range(1, count + 1)
    ])


class SlowTransport(PaymentTransport):
    async def pay(self, recipient, amount, idempotency_key):
        await asyncio.sleep(1)
        return PaymentResult(success=True, reference="0xslow")


async def test_plan_runs_in_three_batches_and_survives_a_failure(executor, transport):
    # 10th recipient of the second batch
    transport.raise_for.add(address(60))
    plan = make_plan(120)

    progress = await executor.execute(1, plan, batch_size=50)

    assert progress.total_batches == 3
    assert progress.completed_batches == 3
    assert progress.status.value == "completed"
    assert progress.processed == 120
    assert progress.successful == 119
    assert progress.failed == 1
    assert progress.distributed_amount == 119 * 10**18
    assert progress.error_details == [{
        "recipient": address(60),
        "amount": str(10**18),
        "error": "connection reset",
        "batch_index": 1,
    }]
    assert len(transport.calls) == 120
    assert transport.calls[-1][0] == address(120)


async def test_failed_payment_result_is_recorded(executor, transport):
    transport.fail_for.add(address(2))

    progress = await executor.execute(1, make_plan(3), batch_size=2)

    failed = [record for record in progress.transaction_records if record["status"] == "failed"]
    assert [record["recipient"] for record in failed] == [address(2)]
    assert progress.error_details[0]["error"] == "insufficient funds"


async def test_payment_timeout_counts_as_failure(session_factory):
    executor = DistributionExecutor(SlowTransport(), session_factory=session_factory, payment_timeout=0.05)

    progress = await executor.execute(1, make_plan(1), batch_size=1)

    assert progress.failed == 1
    assert "timed out" in progress.error_details[0]["error"]


async def test_transaction_records_carry_references(executor):
    progress = await executor.execute(1, make_plan(2), batch_size=10)

    assert [record["reference"] for record in progress.transaction_records] == ["0xref1", "0xref2"]
    assert all(record["amount"] == str(10**18) for record in progress.transaction_records)


async def test_resume_continues_from_next_batch(executor, transport):
    plan = make_plan(120)

    partial = await executor.execute(1, plan, batch_size=50, max_batches=1)
    assert partial.status.value == "in_progress"
    assert partial.completed_batches == 1
    assert len(transport.calls) == 50

    step = await executor.resume(1, plan, max_batches=1)
    assert step.completed_batches == 2
    assert step.status.value == "in_progress"

    finished = await executor.resume(1, plan)
    assert finished.status.value == "completed"
    assert finished.processed == 120
    assert len(transport.calls) == 120
    assert len({call[2] for call in transport.calls}) == 120


async def test_second_run_while_in_progress_conflicts(executor):
    plan = make_plan(4)
    await executor.execute(1, plan, batch_size=2, max_batches=1)

    with pytest.raises(ConflictError):
        await executor.execute(1, plan, batch_size=2)


async def test_completed_season_is_never_paid_again(executor, transport):
    plan = make_plan(4)
    first = await executor.execute(1, plan, batch_size=2)
    assert first.status.value == "completed"

    with pytest.raises(ConflictError) as exc_info:
        await executor.execute(1, plan, batch_size=2)

    assert exc_info.value.details["distribution_id"] == first.distribution_id
    assert len(transport.calls) == 4


async def test_resume_of_completed_run_returns_it_without_paying(executor, transport):
    plan = make_plan(4)
    first = await executor.execute(1, plan, batch_size=2)

    resumed = await executor.resume(1, plan)

    assert resumed.distribution_id == first.distribution_id
    assert resumed.status.value == "completed"
    assert len(transport.calls) == 4


async def test_resume_with_different_plan_conflicts(executor):
    await executor.execute(1, make_plan(4), batch_size=2, max_batches=1)

    with pytest.raises(ConflictError):
        await executor.resume(1, make_plan(5))


async def test_resume_without_run_is_not_found(executor):
    with pytest.raises(NotFoundError):
        await executor.resume(1, make_plan(4))


async def test_invalid_batch_size(executor):
    with pytest.raises(ValidationError):
        await executor.execute(1, make_plan(4), batch_size=0)


async def test_empty_plan_completes_immediately(executor, transport):
    progress = await executor.execute(1, DistributionPlan(), batch_size=50)

    assert progress.status.value == "completed"
    assert progress.total_batches == 0
    assert transport.calls == []


async def test_get_progress_returns_latest_run(executor):
    await executor.execute(1, make_plan(2), batch_size=2)

    progress = await executor.get_progress(1)

    assert progress.season_number == 1
    assert progress.progress_percent == 100.0
    with pytest.raises(NotFoundError):
        await executor.get_progress(2)


def test_simulate_reports_batches():
    simulation = DistributionExecutor(RecordingTransport()).simulate(make_plan(120), batch_size=50)

    assert simulation["batch_count"] == 3
    assert [batch["size"] for batch in simulation["batches"]] == [50, 50, 20]
    assert simulation["total_amount"] == str(120 * 10**18)
    assert simulation["estimated_duration_seconds"] > 0


def test_idempotency_key_format():
    item = RewardLineItem(address(7), 1, RewardCategory.CREATOR_WINNER, content_id=9, rank=3)

    assert make_idempotency_key("dist_1_100", 2, item) == f"dist_1_100:2:{address(7)}:creator_winner:9"


async def test_succeeded_key_is_not_paid_twice(session_factory):
    inner = RecordingTransport()
    transport = DeduplicatingTransport(inner, session_factory)
    key = f"dist_1_1:0:{address(1)}:supporter:5"

    first = await transport.pay(address(1), 100, key)
    second = await transport.pay(address(1), 100, key)

    assert first.success and not first.deduplicated
    assert second.success and second.deduplicated
    assert second.reference == first.reference
    assert len(inner.calls) == 1


async def test_unknown_outcome_is_not_resubmitted(session_factory):
    inner = RecordingTransport()
    transport = DeduplicatingTransport(inner, session_factory)
    key = f"dist_1_1:0:{address(1)}:supporter:5"

    async with session_factory() as session:
        session.add(PaymentAttempt(
            idempotency_key=key,
            distribution_id="dist_1_1",
            batch_index=0,
            recipient=address(1),
            amount=100,
            status=PaymentStatus.SUBMITTED
        ))

    result = await transport.pay(address(1), 100, key)

    assert not result.success
    assert "manual review" in result.error
    assert inner.calls == []


async def test_failed_payment_is_stored(session_factory):
    transport = DeduplicatingTransport(RecordingTransport(fail_for={address(1)}), session_factory)
    key = f"dist_1_1:0:{address(1)}:supporter:5"

    await transport.pay(address(1), 100, key)

    async with session_factory() as session:
        attempt = await session.get(PaymentAttempt, key)
    assert attempt.status == PaymentStatus.FAILED
    assert attempt.error == "insufficient funds"
    assert attempt.amount == 100


async def test_simulated_transport():
    ok = await SimulatedPaymentTransport(failure_rate=0.0).pay(address(1), 1, "key-1")
    again = await SimulatedPaymentTransport(failure_rate=0.0).pay(address(1), 1, "key-1")
    failing = await SimulatedPaymentTransport(failure_rate=1.0).pay(address(1), 1, "key-2")

    assert ok.success and ok.reference == again.reference
    assert ok.reference.startswith("0x") and len(ok.reference) == 66
    assert not failing.success
