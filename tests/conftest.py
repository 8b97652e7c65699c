import pytest

from taxbot.solana.distribution import DistributionEngine
from taxbot.solana.fee_collector import FeeHarvestCoordinator
from taxbot.solana.registry import AccountRegistry
from taxbot.solana.scheduler import CycleScheduler
from taxbot.solana.swap_executor import SwapExecutor
from taxbot.storage.cycle_store import CycleStore

from tests.fakes import FakeHolderSource, FakeSwapVenue, FakeTaxTokenProgram, fast_policy

HOLDER_ROWS = [
    ("acct-a", "holder-a", 700),
    ("acct-b", "holder-b", 300),
]


@pytest.fixture
def policy():
    return fast_policy()


@pytest.fixture
def program():
    return FakeTaxTokenProgram(withheld={"acct-a": 600, "acct-b": 400})


@pytest.fixture
def holder_source():
    return FakeHolderSource(HOLDER_ROWS)


@pytest.fixture
def registry():
    return AccountRegistry()


@pytest.fixture
def store(tmp_path):
    return CycleStore(str(tmp_path / "cycles"))


@pytest.fixture
def venue(program):
    return FakeSwapVenue(program, quotes=[999])


@pytest.fixture
def harvester(program, registry, holder_source, policy):
    return FeeHarvestCoordinator(program, registry, holder_source, policy, batch_size=1)


@pytest.fixture
def swapper(venue, program, policy):
    return SwapExecutor(venue, program, policy, slippage_bps=50, max_attempts=3)


@pytest.fixture
def distributor(program, policy):
    return DistributionEngine(program, policy, dust_threshold=1, max_concurrent_transfers=2, confirm_timeout=0)


@pytest.fixture
def scheduler(harvester, swapper, distributor, store):
    return CycleScheduler(harvester, swapper, distributor, store, interval=3600, max_cycle_duration=5)
