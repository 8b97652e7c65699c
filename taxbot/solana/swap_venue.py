"""
Swap venue access.

SwapVenue describes quote and swap as the swap stage uses them.
JupiterSwapVenue implements them with the Jupiter quote/swap HTTP API,
restricted to the configured DEX labels, signing locally with the admin key.
"""

import asyncio
import base64
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from taxbot.solana.errors import InsufficientFunds, SlippageExceeded, SwapNotLanded, TransientRemoteError
from taxbot.solana.token_program import (
    IN_FLIGHT_STATUSES,
    PreparedTransaction,
    SignatureStatus,
    TaxTokenProgram,
)

# Error markers that mean the fill came in under the minimum output
SLIPPAGE_MARKERS = (
    "0x1771",                   # Jupiter SlippageToleranceExceeded
    "SlippageToleranceExceeded",
    "TooLittleOutputReceived",  # Raydium CLMM
    "slippage",
)


def is_slippage_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker.lower() in lowered for marker in SLIPPAGE_MARKERS)


@dataclass
class SwapQuote:
    """A venue quote for swapping amount_in of the tax token."""
    amount_in: int
    expected_out: int
    reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    quoted_at: float = field(default_factory=time.time)


class SwapVenue:
    """
    Operations the swap stage performs against a venue.
    """

    async def quote(self, amount_in: int) -> SwapQuote:
        """Quote the expected output for amount_in base units."""
        raise NotImplementedError

    async def prepare_swap(self, quote: SwapQuote, min_out: int) -> PreparedTransaction:
        """Sign a swap of the quoted amount requiring at least min_out, without sending it."""
        raise NotImplementedError

    async def send(self, prepared: PreparedTransaction) -> str:
        """Broadcast a prepared swap. Raises SlippageExceeded on a slippage rejection."""
        raise NotImplementedError

    async def confirm_swap(
        self,
        signature: str,
        last_valid_block_height: Optional[int] = None,
        timeout_seconds: float = 60
    ) -> Optional[int]:
        """
        Resolve a broadcast swap.

        Returns:
            Amount out once confirmed, or None while the swap can still land

        Raises:
            SlippageExceeded: If the swap landed and failed on minimum output
            SwapNotLanded: If the swap failed otherwise or expired unprocessed
        """
        raise NotImplementedError

    async def swap(self, amount_in: int, min_out: int, poll_interval: float = 1.0) -> int:
        """Quote, submit and confirm one swap. Returns the confirmed amount out."""
        quote = await self.quote(amount_in)
        if quote.expected_out < min_out:
            raise SlippageExceeded(
                f"Quote of {quote.expected_out} is below minimum {min_out}", min_out=min_out
            )

        prepared = await self.prepare_swap(quote, min_out)
        try:
            await self.send(prepared)
        except TransientRemoteError as e:
            logger.warning(f"Send of {prepared.signature} failed, checking the chain: {str(e)}")

        while True:
            amount_out = await self.confirm_swap(prepared.signature, prepared.last_valid_block_height)
            if amount_out is not None:
                return amount_out
            await asyncio.sleep(poll_interval)


class JupiterSwapVenue(SwapVenue):
    """
    Swap venue backed by the Jupiter aggregator API.
    """

    def __init__(
        self,
        client: AsyncClient,
        payer: Keypair,
        program: TaxTokenProgram,
        input_mint: str,
        output_mint: str,
        api_url: str = "https://quote-api.jup.ag/v6",
        dexes: Optional[str] = "Raydium CLMM",
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the venue.

        Args:
            client: Async Solana RPC client
            payer: Admin keypair owning the treasury accounts
            program: Token program used for signature status lookups
            input_mint: Tax token mint
            output_mint: Reward token mint
            api_url: Jupiter API base URL
            dexes: Restrict routing to these DEX labels
            timeout: HTTP timeout in seconds
            session: Optional requests session
        """
        self.client = client
        self.payer = payer
        self.program = program
        self.input_mint = input_mint
        self.output_mint = output_mint
        self.api_url = api_url.rstrip("/")
        self.dexes = dexes
        self.timeout = timeout
        self.session = session or requests.Session()

        logger.info(f"JupiterSwapVenue initialized for {input_mint} -> {output_mint}")

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_url}{endpoint}"
        start_time = time.time()

        try:
            response = getattr(self.session, method)(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientRemoteError(f"Jupiter {endpoint} request failed: {str(e)}") from e

        logger.debug(
            f"Received response from {endpoint} in {time.time() - start_time:.2f}s",
            extra={"status_code": response.status_code, "endpoint": endpoint}
        )

        if response.status_code != 200:
            raise TransientRemoteError(
                f"Jupiter {endpoint} returned {response.status_code}: {response.text[:200]}"
            )
        return response.json()

    async def quote(self, amount_in: int) -> SwapQuote:
        params = {
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "amount": str(amount_in),
            "swapMode": "ExactIn",
            "onlyDirectRoutes": "true",
        }
        if self.dexes:
            params["dexes"] = self.dexes

        data = await asyncio.to_thread(self._request, "get", "/quote", params=params)

        quote = SwapQuote(
            amount_in=int(data["inAmount"]),
            expected_out=int(data["outAmount"]),
            reference=str(data["contextSlot"]) if "contextSlot" in data else None,
            raw=data
        )

        logger.debug(
            f"Got quote: {quote.amount_in} -> {quote.expected_out}",
            extra={"amount_in": quote.amount_in, "expected_out": quote.expected_out,
                   "price_impact": data.get("priceImpactPct")}
        )
        return quote

    async def prepare_swap(self, quote: SwapQuote, min_out: int) -> PreparedTransaction:
        # The swap program enforces otherAmountThreshold as the minimum output
        quote_response = dict(quote.raw)
        quote_response["otherAmountThreshold"] = str(min_out)

        payload = {
            "quoteResponse": quote_response,
            "userPublicKey": str(self.payer.pubkey()),
            "wrapAndUnwrapSol": False,
            "dynamicComputeUnitLimit": True,
        }
        data = await asyncio.to_thread(self._request, "post", "/swap", json=payload)

        unsigned = VersionedTransaction.from_bytes(base64.b64decode(data["swapTransaction"]))
        signed = VersionedTransaction(unsigned.message, [self.payer])

        return PreparedTransaction(
            signature=str(signed.signatures[0]),
            payload=bytes(signed),
            description=f"swap of {quote.amount_in} (min out {min_out})",
            last_valid_block_height=data.get("lastValidBlockHeight")
        )

    async def send(self, prepared: PreparedTransaction) -> str:
        try:
            await self.client.send_raw_transaction(
                prepared.payload,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except SolanaRpcException as e:
            raise TransientRemoteError(f"{prepared.description} send failed: {str(e)}") from e
        except RPCException as e:
            message = str(e)
            if is_slippage_error(message):
                raise SlippageExceeded(f"{prepared.description}: {message}") from e
            if "insufficient" in message.lower():
                raise InsufficientFunds(f"{prepared.description}: {message}") from e
            raise TransientRemoteError(f"{prepared.description} rejected: {message}") from e

        logger.info(f"Sent {prepared.description}: {prepared.signature}")
        return prepared.signature

    async def confirm_swap(
        self,
        signature: str,
        last_valid_block_height: Optional[int] = None,
        timeout_seconds: float = 60
    ) -> Optional[int]:
        status = await self.program.resolve(signature, last_valid_block_height, timeout_seconds=timeout_seconds)

        if status in IN_FLIGHT_STATUSES:
            return None
        if status == SignatureStatus.EXPIRED:
            raise SwapNotLanded(f"Swap {signature} expired without landing")

        try:
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="jsonParsed",
                max_supported_transaction_version=0
            )
        except SolanaRpcException as e:
            raise TransientRemoteError(f"Transaction lookup for {signature} failed: {str(e)}") from e

        if resp.value is None:
            raise TransientRemoteError(f"Transaction {signature} is {status.value} but not yet readable")
        meta = resp.value.transaction.meta

        if status == SignatureStatus.FAILED:
            message = f"{meta.err} {' '.join(meta.log_messages or [])}"
            if is_slippage_error(message):
                raise SlippageExceeded(f"Swap {signature} failed on minimum output")
            raise SwapNotLanded(f"Swap {signature} failed: {meta.err}")

        return self._output_delta(meta)

    def _output_delta(self, meta) -> int:
        """Reward token received by the payer, from the transaction's token balances."""
        owner = str(self.payer.pubkey())

        def total(balances) -> int:
            return sum(
                int(balance.ui_token_amount.amount)
                for balance in (balances or [])
                if str(balance.mint) == self.output_mint and str(balance.owner) == owner
            )

        return total(meta.post_token_balances) - total(meta.pre_token_balances)
