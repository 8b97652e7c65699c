"""
Holder registry for the tax token.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional, Set, Tuple

from loguru import logger

from taxbot.solana.models import HolderSnapshot


class AccountRegistry:
    """
    Tracks tax token holders and their balances.

    Balances are kept per owner wallet; several token accounts held by the
    same owner are summed. Excluded owners (treasury, burn and pool vault
    addresses) never appear in a snapshot.
    """

    def __init__(self, excluded: Optional[Iterable[str]] = None):
        """
        Initialize the registry.

        Args:
            excluded: Owner addresses that never take part in distribution
        """
        self.excluded: Set[str] = set(excluded or [])
        self._balances: Dict[str, int] = {}
        self.updated_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._balances)

    def exclude(self, address: str) -> None:
        """Exclude an owner from all future snapshots."""
        self.excluded.add(address)
        self._balances.pop(address, None)

    def set_balance(self, owner: str, balance: int) -> None:
        """Set an owner's balance in base units. Zero removes the owner."""
        if balance < 0:
            raise ValueError(f"Negative balance for {owner}: {balance}")
        if owner in self.excluded or balance == 0:
            self._balances.pop(owner, None)
        else:
            self._balances[owner] = balance
        self.updated_at = datetime.now()

    def balance_of(self, owner: str) -> int:
        return self._balances.get(owner, 0)

    def replace(self, token_accounts: Iterable[Tuple[str, str, int]]) -> None:
        """
        Replace all balances from a token account listing.

        Args:
            token_accounts: (token_account, owner, amount) tuples
        """
        balances: Dict[str, int] = {}
        for _account, owner, amount in token_accounts:
            if owner in self.excluded or amount <= 0:
                continue
            balances[owner] = balances.get(owner, 0) + amount

        self._balances = balances
        self.updated_at = datetime.now()

        logger.info(
            f"Registry refreshed with {len(balances)} holders",
            extra={"holders": len(balances), "excluded": len(self.excluded)}
        )

    def total(self) -> int:
        return sum(self._balances.values())

    def snapshot(self, cycle_sequence: int) -> HolderSnapshot:
        """
        Capture the current balances for a cycle.

        Args:
            cycle_sequence: Sequence number of the owning cycle

        Returns:
            Frozen HolderSnapshot
        """
        holders = dict(sorted(self._balances.items()))
        snapshot = HolderSnapshot(
            cycle_sequence=cycle_sequence,
            holders=holders,
            total=sum(holders.values())
        )

        logger.info(
            f"Captured snapshot of {len(holders)} holders for cycle {cycle_sequence}",
            extra={"cycle": cycle_sequence, "holders": len(holders), "total": snapshot.total}
        )

        return snapshot
