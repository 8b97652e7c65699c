"""
In-memory stand-ins for the chain program, swap venue and holder source.

Block height advances by one on every height lookup. Transactions are
signed with a lifetime of blockhash_lifetime blocks, so with the default of
zero a transaction that never landed expires on its first check.
"""

from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from taxbot.solana.errors import InsufficientFunds, SlippageExceeded, SwapNotLanded, TransientRemoteError
from taxbot.solana.models import RetryPolicy
from taxbot.solana.registry import AccountRegistry
from taxbot.solana.swap_venue import SwapQuote, SwapVenue
from taxbot.solana.token_program import (
    HarvestBatchResult,
    PreparedTransaction,
    SignatureStatus,
    TaxTokenProgram,
)


def fast_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0, backoff_multiplier=1, max_delay=0, timeout=5)


class SimulatedCrash(Exception):
    """Raised by a fake to stop a stage the way a killed process would."""


class FakeTaxTokenProgram(TaxTokenProgram):
    """Token program keeping treasury, withheld and holder balances in memory."""

    def __init__(self, withheld: Optional[Dict[str, int]] = None, treasury: int = 0, reward: int = 0):
        self.withheld = dict(withheld or {})
        self.mint_withheld = 0
        self.treasury = treasury
        self.reward = reward
        self.paid: Dict[str, int] = {}
        self.statuses: Dict[str, SignatureStatus] = {}
        self.prepared: Dict[str, Tuple[str, int]] = {}
        self.withdraws: Set[str] = set()

        self.height = 0
        self.blockhash_lifetime = 0
        # signature -> [status lookups until it lands, effect applied on landing]
        self.in_flight: Dict[str, list] = {}

        self.harvest_calls = 0
        self.withdraw_calls = 0
        self.sends: List[str] = []

        # Failure injection, counted down per call
        self.harvest_failures: Dict[str, int] = {}
        self.send_failures: Dict[str, int] = {}
        self.dropped_sends: Dict[str, int] = {}
        self.late_sends: Dict[str, int] = {}
        self.insufficient: set = set()
        self.withdraw_delay = 0
        self.withdraw_send_timeouts = 0
        self.crash_after_withdraw_send = False

        self._counter = 0

    def _signature(self, kind: str) -> str:
        self._counter += 1
        return f"{kind}-{self._counter}"

    def _prepared(self, signature: str, description: str) -> PreparedTransaction:
        return PreparedTransaction(
            signature=signature,
            payload=b"",
            description=description,
            last_valid_block_height=self.height + self.blockhash_lifetime
        )

    def _land_later(self, signature: str, lookups: int, effect: Callable[[], None]) -> None:
        self.in_flight[signature] = [lookups, effect]

    async def block_height(self) -> int:
        self.height += 1
        return self.height

    async def list_withheld_accounts(self, token_accounts: Sequence[str]) -> List[str]:
        return [account for account in token_accounts if self.withheld.get(account, 0) > 0]

    async def harvest_withheld(self, accounts: Sequence[str]) -> HarvestBatchResult:
        self.harvest_calls += 1
        result = HarvestBatchResult(signature=self._signature("harvest"))
        for account in accounts:
            if self.harvest_failures.get(account, 0) > 0:
                self.harvest_failures[account] -= 1
                result.failed.append(account)
                continue
            self.mint_withheld += self.withheld.pop(account, 0)
            result.harvested.append(account)
        return result

    async def prepare_withdraw(self, destination: Optional[str] = None) -> PreparedTransaction:
        signature = self._signature("withdraw")
        self.withdraws.add(signature)
        return self._prepared(signature, "withdraw of withheld tax")

    def _apply_withdraw(self) -> None:
        amount, self.mint_withheld = self.mint_withheld, 0
        self.treasury += amount

    def _send_withdraw(self, prepared: PreparedTransaction) -> str:
        self.withdraw_calls += 1
        self.sends.append(prepared.signature)

        if self.withdraw_delay > 0:
            self._land_later(prepared.signature, self.withdraw_delay, self._apply_withdraw)
        else:
            self._apply_withdraw()
            self.statuses[prepared.signature] = SignatureStatus.CONFIRMED

        if self.crash_after_withdraw_send:
            raise SimulatedCrash("process killed after withdraw broadcast")
        if self.withdraw_send_timeouts > 0:
            self.withdraw_send_timeouts -= 1
            raise TransientRemoteError(f"{prepared.description} timed out")
        return prepared.signature

    async def treasury_balance(self) -> int:
        return self.treasury

    async def reward_balance(self) -> int:
        return self.reward

    async def build_transfer(self, owner: str, amount: int) -> PreparedTransaction:
        signature = self._signature("transfer")
        self.prepared[signature] = (owner, amount)
        return self._prepared(signature, f"transfer of {amount} to {owner}")

    def _pay(self, owner: str, amount: int) -> None:
        self.reward -= amount
        self.paid[owner] = self.paid.get(owner, 0) + amount

    async def send(self, prepared: PreparedTransaction) -> str:
        if prepared.signature in self.withdraws:
            return self._send_withdraw(prepared)

        owner, amount = self.prepared[prepared.signature]

        if self.send_failures.get(owner, 0) > 0:
            self.send_failures[owner] -= 1
            raise TransientRemoteError(f"{prepared.description} timed out")
        if owner in self.insufficient or amount > self.reward:
            raise InsufficientFunds(f"{prepared.description}: insufficient funds")

        self.sends.append(prepared.signature)
        if self.statuses.get(prepared.signature) == SignatureStatus.CONFIRMED:
            return prepared.signature

        if self.dropped_sends.get(owner, 0) > 0:
            self.dropped_sends[owner] -= 1
            return prepared.signature

        if self.late_sends.get(owner, 0) > 0:
            self._land_later(prepared.signature, self.late_sends.pop(owner), lambda: self._pay(owner, amount))
            return prepared.signature

        self._pay(owner, amount)
        self.statuses[prepared.signature] = SignatureStatus.CONFIRMED
        return prepared.signature

    async def signature_status(self, signature: str) -> SignatureStatus:
        entry = self.in_flight.get(signature)
        if entry is not None:
            entry[0] -= 1
            if entry[0] > 0:
                return SignatureStatus.UNKNOWN
            del self.in_flight[signature]
            entry[1]()
            self.statuses[signature] = SignatureStatus.CONFIRMED
        return self.statuses.get(signature, SignatureStatus.UNKNOWN)

    async def wait_for_confirmation(self, signature, timeout_seconds=30, poll_interval=1.0):
        return await self.signature_status(signature)


class FakeSwapVenue(SwapVenue):
    """
    Venue that quotes from a list and fills from another.

    A fill below the swap's minimum output is rejected with SlippageExceeded,
    as a venue rejects it in simulation.
    """

    def __init__(self, program: FakeTaxTokenProgram, quotes: List[int], fills: Optional[List[int]] = None):
        self.program = program
        self.quotes = quotes
        self.fills = fills or quotes
        self.landed: Dict[str, int] = {}
        self.prepared: Dict[str, Tuple[int, int]] = {}
        # signature -> [confirm lookups until it lands, amount in, fill]
        self.in_flight: Dict[str, list] = {}

        self.quote_calls = 0
        self.sends: List[str] = []
        self.confirm_calls = 0

        # Failure injection
        self.crash_after_send = False
        self.quote_failures = 0
        self.send_timeouts = 0
        self.confirm_failures = 0
        self.dropped_sends = 0
        self.late_lookups = 0

    async def quote(self, amount_in: int) -> SwapQuote:
        if self.quote_failures > 0:
            self.quote_failures -= 1
            raise TransientRemoteError("quote timed out")

        expected = self.quotes[min(self.quote_calls, len(self.quotes) - 1)]
        self.quote_calls += 1
        return SwapQuote(amount_in=amount_in, expected_out=expected, reference=f"quote-{self.quote_calls}")

    async def prepare_swap(self, quote: SwapQuote, min_out: int) -> PreparedTransaction:
        signature = f"swap-{quote.reference}"
        self.prepared[signature] = (quote.amount_in, min_out)
        return PreparedTransaction(
            signature=signature,
            payload=b"",
            description=f"swap of {quote.amount_in}",
            last_valid_block_height=self.program.height + self.program.blockhash_lifetime
        )

    def _fill(self, signature: str, amount_in: int, fill: int) -> None:
        self.program.treasury -= amount_in
        self.program.reward += fill
        self.landed[signature] = fill

    async def send(self, prepared: PreparedTransaction) -> str:
        amount_in, min_out = self.prepared[prepared.signature]
        fill = self.fills[min(len(self.sends), len(self.fills) - 1)]
        self.sends.append(prepared.signature)

        if fill < min_out:
            raise SlippageExceeded(f"fill {fill} below minimum {min_out}", min_out=min_out)
        if amount_in > self.program.treasury:
            raise InsufficientFunds(f"treasury holds {self.program.treasury}, swap needs {amount_in}")

        if self.dropped_sends > 0:
            self.dropped_sends -= 1
            return prepared.signature
        if self.late_lookups > 0:
            self.in_flight[prepared.signature] = [self.late_lookups, amount_in, fill]
            self.late_lookups = 0
            return prepared.signature

        self._fill(prepared.signature, amount_in, fill)

        if self.crash_after_send:
            raise SimulatedCrash("process killed after broadcast")
        if self.send_timeouts > 0:
            self.send_timeouts -= 1
            raise TransientRemoteError(f"{prepared.description} timed out")
        return prepared.signature

    async def confirm_swap(
        self,
        signature: str,
        last_valid_block_height: Optional[int] = None,
        timeout_seconds: float = 60
    ) -> Optional[int]:
        self.confirm_calls += 1
        if self.confirm_failures > 0:
            self.confirm_failures -= 1
            raise TransientRemoteError("status lookup timed out")

        entry = self.in_flight.get(signature)
        if entry is not None:
            entry[0] -= 1
            if entry[0] > 0:
                return None
            del self.in_flight[signature]
            self._fill(signature, entry[1], entry[2])

        if signature in self.landed:
            return self.landed[signature]
        if await self.program.has_expired(last_valid_block_height):
            raise SwapNotLanded(f"Swap {signature} expired without landing")
        return None


class FakeHolderSource:
    """Holder source returning fixed (token_account, owner, amount) rows."""

    def __init__(self, rows: List[Tuple[str, str, int]]):
        self.rows = list(rows)
        self.calls = 0

    async def refresh(self, registry: AccountRegistry) -> List[Tuple[str, str, int]]:
        self.calls += 1
        registry.replace(self.rows)
        return list(self.rows)
