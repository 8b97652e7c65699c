import asyncio

import pytest

from taxbot.solana.distribution import DistributionEngine, allocate
from taxbot.solana.errors import TransientRemoteError
from taxbot.solana.models import Cycle, CycleStatus, HolderSnapshot, PayoutStatus

from tests.fakes import FakeTaxTokenProgram, fast_policy


def make_snapshot(holders, sequence=1):
    return HolderSnapshot(cycle_sequence=sequence, holders=holders, total=sum(holders.values()))


def distributing_cycle(snapshot):
    return Cycle(sequence=snapshot.cycle_sequence, status=CycleStatus.DISTRIBUTING, snapshot=snapshot)


class TestAllocate:
    def test_proportional_shares_with_remainder(self):
        allocation = allocate({"A": 700, "B": 300}, 1000, 999)

        assert [(p.address, p.amount) for p in allocation.payouts] == [("A", 699), ("B", 299)]
        assert allocation.remainder == 1

    def test_dust_share_is_skipped_and_carried(self):
        allocation = allocate({"small": 1, "whale": 999_999}, 1_000_000, 100)

        assert [p.address for p in allocation.payouts] == ["whale"]
        assert allocation.payouts[0].amount == 99
        assert allocation.skipped == ["small"]
        assert allocation.remainder == 1

    def test_dust_threshold_raises_minimum_share(self):
        allocation = allocate({"A": 10, "B": 90}, 100, 50, dust_threshold=10)

        assert [(p.address, p.amount) for p in allocation.payouts] == [("B", 45)]
        assert allocation.remainder == 5

    @pytest.mark.parametrize("holders,amount", [
        ({"A": 1, "B": 1, "C": 1}, 100),
        ({"A": 3, "B": 7, "C": 11, "D": 13}, 1_000_003),
        ({"A": 5}, 0),
        ({"A": 10**12, "B": 1}, 10**9 + 7),
    ])
    def test_nothing_is_created_or_lost(self, holders, amount):
        allocation = allocate(holders, sum(holders.values()), amount)

        assert allocation.allocated + allocation.remainder == amount
        assert all(p.amount >= 1 for p in allocation.payouts)

    def test_identical_inputs_give_identical_payouts(self):
        holders = {"C": 5, "A": 3, "B": 2}
        reordered = {"B": 2, "C": 5, "A": 3}

        first = allocate(holders, 10, 77)
        second = allocate(reordered, 10, 77)

        assert [p.model_dump() for p in first.payouts] == [p.model_dump() for p in second.payouts]
        assert [p.address for p in first.payouts] == ["A", "B", "C"]

    def test_empty_snapshot_carries_everything(self):
        allocation = allocate({}, 0, 500)

        assert allocation.payouts == []
        assert allocation.remainder == 500

    def test_negative_amount_is_rejected(self):
        with pytest.raises(ValueError):
            allocate({"A": 1}, 1, -1)


class TestDistributionEngine:
    def test_distribute_pays_every_holder(self):
        program = FakeTaxTokenProgram(reward=999)
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0)
        snapshot = make_snapshot({"A": 700, "B": 300})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 999, snapshot))

        assert all(p.status == PayoutStatus.CONFIRMED for p in payouts)
        assert program.paid == {"A": 699, "B": 299}
        assert program.reward == 1
        assert cycle.distributable_amount == 999
        assert cycle.remainder_amount == 1
        assert cycle.carried_amount == 1

    def test_transient_send_failure_is_retried(self):
        program = FakeTaxTokenProgram(reward=100)
        program.send_failures["A"] = 2
        engine = DistributionEngine(program, fast_policy(max_attempts=3), confirm_timeout=0)
        snapshot = make_snapshot({"A": 1, "B": 1})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 100, snapshot))

        by_address = {p.address: p for p in payouts}
        assert by_address["A"].status == PayoutStatus.CONFIRMED
        assert by_address["A"].attempts == 3
        assert program.paid == {"A": 50, "B": 50}

    def test_exhausted_payout_is_failed_and_carried(self):
        program = FakeTaxTokenProgram(reward=100)
        program.send_failures["A"] = 10
        failures = []

        async def on_failed(info):
            failures.append(info)

        engine = DistributionEngine(program, fast_policy(max_attempts=2), confirm_timeout=0,
                                    on_payout_failed=on_failed)
        snapshot = make_snapshot({"A": 1, "B": 1})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 100, snapshot))

        by_address = {p.address: p for p in payouts}
        assert by_address["A"].status == PayoutStatus.FAILED
        assert by_address["A"].attempts == 2
        assert by_address["B"].status == PayoutStatus.CONFIRMED
        assert cycle.failed_carry_amount == 50
        assert cycle.carried_amount == 50
        assert program.reward == 50
        assert [f["address"] for f in failures] == ["A"]

    def test_insufficient_funds_is_not_retried(self):
        program = FakeTaxTokenProgram(reward=100)
        program.insufficient.add("A")
        engine = DistributionEngine(program, fast_policy(max_attempts=3), confirm_timeout=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 100, snapshot))

        assert payouts[0].status == PayoutStatus.FAILED
        assert payouts[0].attempts == 1

    def test_dropped_transfer_is_resent(self):
        program = FakeTaxTokenProgram(reward=10)
        program.dropped_sends["A"] = 1
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 10, snapshot))

        assert payouts[0].status == PayoutStatus.CONFIRMED
        assert payouts[0].attempts == 2
        assert program.paid == {"A": 10}

    def test_resume_does_not_pay_twice(self):
        program = FakeTaxTokenProgram(reward=999)
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0)
        snapshot = make_snapshot({"A": 700, "B": 300})
        cycle = distributing_cycle(snapshot)
        asyncio.run(engine.distribute(cycle, 999, snapshot))

        # Simulate a restart after A's transfer landed but before it was recorded
        payout_a = cycle.payouts[0]
        payout_a.status = PayoutStatus.SENT
        sends_before = len(program.sends)

        asyncio.run(engine.distribute(cycle, 999, snapshot))

        assert payout_a.status == PayoutStatus.CONFIRMED
        assert len(program.sends) == sends_before
        assert program.paid == {"A": 699, "B": 299}

    def test_payouts_are_computed_once(self):
        program = FakeTaxTokenProgram(reward=999)
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0)
        snapshot = make_snapshot({"A": 700, "B": 300})
        cycle = distributing_cycle(snapshot)

        asyncio.run(engine.distribute(cycle, 999, snapshot))
        asyncio.run(engine.distribute(cycle, 5, snapshot))

        assert cycle.distributable_amount == 999
        assert [p.amount for p in cycle.payouts] == [699, 299]

    def test_checkpoint_sees_signature_before_send(self):
        program = FakeTaxTokenProgram(reward=10)
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)
        seen = []

        async def checkpoint(c):
            payout = c.payouts[0] if c.payouts else None
            if payout and payout.status == PayoutStatus.SENT:
                seen.append((payout.signature, payout.signature in program.sends))

        asyncio.run(engine.distribute(cycle, 10, snapshot, checkpoint))

        assert seen and seen[0][1] is False

    def test_slow_transfer_is_not_sent_twice(self):
        program = FakeTaxTokenProgram(reward=2000)
        program.blockhash_lifetime = 10
        program.late_sends["A"] = 3
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0, poll_interval=0)
        snapshot = make_snapshot({"A": 1, "B": 1})
        cycle = distributing_cycle(snapshot)

        payouts = asyncio.run(engine.distribute(cycle, 2000, snapshot))

        by_address = {p.address: p for p in payouts}
        assert by_address["A"].status == PayoutStatus.CONFIRMED
        assert by_address["A"].attempts == 1
        assert program.paid == {"A": 1000, "B": 1000}
        assert program.reward == 0
        assert len(program.sends) == 2

    def test_transfer_is_resent_only_after_its_blockhash_expires(self):
        program = FakeTaxTokenProgram(reward=10)
        program.blockhash_lifetime = 4
        program.dropped_sends["A"] = 1
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0, poll_interval=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)
        built_at = []

        async def checkpoint(c):
            payout = c.payouts[0] if c.payouts else None
            if payout and payout.status == PayoutStatus.SENT and payout.signature not in dict(built_at):
                built_at.append((payout.signature, program.height, payout.last_valid_block_height))

        payouts = asyncio.run(engine.distribute(cycle, 10, snapshot, checkpoint))

        assert payouts[0].status == PayoutStatus.CONFIRMED
        assert program.paid == {"A": 10}
        (_first, _, first_valid), (_second, second_height, _) = built_at
        assert second_height > first_valid

    def test_timed_out_send_that_landed_is_not_resent(self):
        program = FakeTaxTokenProgram(reward=10)
        engine = DistributionEngine(program, fast_policy(), confirm_timeout=0, poll_interval=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)
        original_send = program.send

        async def send_then_time_out(prepared):
            await original_send(prepared)
            raise TransientRemoteError("send response lost")

        program.send = send_then_time_out

        payouts = asyncio.run(engine.distribute(cycle, 10, snapshot))

        assert payouts[0].status == PayoutStatus.CONFIRMED
        assert payouts[0].attempts == 1
        assert program.paid == {"A": 10}

    def test_unreadable_transfer_status_fails_without_resending(self):
        program = FakeTaxTokenProgram(reward=10)
        program.blockhash_lifetime = 100
        program.dropped_sends["A"] = 1
        engine = DistributionEngine(program, fast_policy(max_attempts=3), confirm_timeout=0, poll_interval=0)
        snapshot = make_snapshot({"A": 1})
        cycle = distributing_cycle(snapshot)

        async def unreadable(signature):
            raise TransientRemoteError("status lookup timed out")

        program.signature_status = unreadable

        payouts = asyncio.run(engine.distribute(cycle, 10, snapshot))

        assert payouts[0].status == PayoutStatus.FAILED
        assert payouts[0].attempts == 1
        assert len(program.sends) == 1
