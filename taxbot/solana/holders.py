"""
Holder discovery through the Helius getTokenAccounts RPC method.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import requests
from loguru import logger

from taxbot.solana.errors import TransientRemoteError
from taxbot.solana.registry import AccountRegistry

TokenAccountRow = Tuple[str, str, int]


class HeliusHolderSource:
    """
    Pages through every token account of a mint.

    The last listing is kept so the harvest stage can reuse the token account
    addresses fetched for the snapshot.
    """

    PAGE_SIZE = 1000

    def __init__(self, rpc_url: str, mint: str, timeout: int = 30, session: Optional[requests.Session] = None):
        """
        Initialize the holder source.

        Args:
            rpc_url: Helius RPC endpoint including the api-key query string
            mint: Tax token mint address
            timeout: Request timeout in seconds
            session: Optional requests session
        """
        self.rpc_url = rpc_url
        self.mint = mint
        self.timeout = timeout
        self.session = session or requests.Session()
        self.token_accounts: List[TokenAccountRow] = []

    def _request_page(self, page: int) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": "taxbot",
            "method": "getTokenAccounts",
            "params": {
                "mint": self.mint,
                "page": page,
                "limit": self.PAGE_SIZE,
                "options": {"showZeroBalance": False},
            },
        }

        start_time = time.time()
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientRemoteError(f"getTokenAccounts request failed: {str(e)}") from e

        logger.debug(
            f"Received getTokenAccounts page {page} in {time.time() - start_time:.2f}s",
            extra={"status_code": response.status_code, "page": page}
        )

        if response.status_code != 200:
            raise TransientRemoteError(
                f"getTokenAccounts returned {response.status_code}: {response.text[:200]}"
            )

        data = response.json()
        if "error" in data:
            raise TransientRemoteError(f"getTokenAccounts error: {data['error']}")
        return data["result"]

    def fetch_token_accounts(self) -> List[TokenAccountRow]:
        """
        Fetch all token accounts of the mint.

        Returns:
            List of (token_account, owner, amount) tuples, amounts in base units
        """
        rows: List[TokenAccountRow] = []
        page = 1

        while True:
            result = self._request_page(page)
            accounts = result.get("token_accounts", [])

            for account in accounts:
                rows.append((account["address"], account["owner"], int(account["amount"])))

            if len(accounts) < self.PAGE_SIZE:
                break
            page += 1

        logger.info(
            f"Fetched {len(rows)} token accounts for mint {self.mint} over {page} page(s)",
            extra={"mint": self.mint, "accounts": len(rows), "pages": page}
        )

        self.token_accounts = rows
        return rows

    async def refresh(self, registry: AccountRegistry) -> List[TokenAccountRow]:
        """Fetch the current holders and load them into the registry."""
        rows = await asyncio.to_thread(self.fetch_token_accounts)
        registry.replace(rows)
        return rows
