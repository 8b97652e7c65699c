"""
Tax token program access.

TaxTokenProgram describes what the reward cycle needs from the chain;
SolanaTaxTokenProgram implements it against the tax-token Anchor program,
the Token-2022 mint and the classic SPL reward token.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from taxbot.solana.errors import InsufficientFunds, PartialBatchFailure, TransientRemoteError

# Program IDs
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

# SPL Token Program Instruction Codes
TRANSFER_INSTRUCTION = 3
# Associated Token Program CreateIdempotent
CREATE_IDEMPOTENT_INSTRUCTION = 1

# getMultipleAccounts limit
MAX_ACCOUNTS_PER_QUERY = 100


class SignatureStatus(Enum):
    """On-chain state of a transaction signature."""
    UNKNOWN = "unknown"      # not seen yet; may still land
    PENDING = "pending"      # processed but not yet confirmed
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"      # never landed and its blockhash is past its last valid height


IN_FLIGHT_STATUSES = (SignatureStatus.UNKNOWN, SignatureStatus.PENDING)


@dataclass
class PreparedTransaction:
    """A signed transaction whose signature is known before broadcast."""
    signature: str
    payload: bytes
    description: str = ""
    last_valid_block_height: Optional[int] = None


@dataclass
class HarvestBatchResult:
    """Outcome of one harvest batch."""
    harvested: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    signature: Optional[str] = None


def anchor_discriminator(name: str, namespace: str = "global") -> bytes:
    """8-byte Anchor instruction discriminator."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def get_associated_token_address(owner: Pubkey, mint: Pubkey, token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """Derive the associated token account of an owner for a mint."""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def create_token_transfer_instruction(
    sender_token_account: Pubkey,
    recipient_token_account: Pubkey,
    owner: Pubkey,
    amount: int,
    program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    """
    Create an SPL token transfer instruction.

    Args:
        sender_token_account: Sender's token account
        recipient_token_account: Recipient's token account
        owner: Owner of the sending token account
        amount: Amount to transfer in base units
        program_id: Token program owning the accounts
    """
    keys = [
        AccountMeta(pubkey=sender_token_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=recipient_token_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    data = bytes([TRANSFER_INSTRUCTION]) + amount.to_bytes(8, byteorder="little")
    return Instruction(program_id, data, keys)


def create_associated_token_account_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    """Create the owner's associated token account if it does not exist yet."""
    keys = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=get_associated_token_address(owner, mint, token_program_id), is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([CREATE_IDEMPOTENT_INSTRUCTION]), keys)


class TaxTokenProgram:
    """
    Operations the reward cycle performs against the chain.

    Subclasses implement the remote calls; confirmation polling and the
    one-shot transfer are shared.
    """

    async def list_withheld_accounts(self, token_accounts: Sequence[str]) -> List[str]:
        """Return the token accounts that currently carry withheld tax."""
        raise NotImplementedError

    async def harvest_withheld(self, accounts: Sequence[str]) -> HarvestBatchResult:
        """Move withheld tax from the given accounts into the mint's withheld pool."""
        raise NotImplementedError

    async def prepare_withdraw(self, destination: Optional[str] = None) -> PreparedTransaction:
        """Sign a withdraw of the mint's withheld pool into the treasury without sending it."""
        raise NotImplementedError

    async def treasury_balance(self) -> int:
        """Tax token balance of the treasury, in base units."""
        raise NotImplementedError

    async def reward_balance(self) -> int:
        """Reward token balance of the treasury, in base units."""
        raise NotImplementedError

    async def build_transfer(self, owner: str, amount: int) -> PreparedTransaction:
        """Sign a reward transfer from the treasury to an owner without sending it."""
        raise NotImplementedError

    async def send(self, prepared: PreparedTransaction) -> str:
        """Broadcast a prepared transaction and return its signature."""
        raise NotImplementedError

    async def signature_status(self, signature: str) -> SignatureStatus:
        """Look up the state of a transaction signature."""
        raise NotImplementedError

    async def block_height(self) -> int:
        """Current block height at confirmed commitment."""
        raise NotImplementedError

    async def has_expired(self, last_valid_block_height: Optional[int]) -> bool:
        """
        Whether a transaction signed with this lifetime can no longer be processed.

        A transaction recorded without a lifetime cannot be tracked, so it
        counts as expired as soon as its signature is unknown.
        """
        if last_valid_block_height is None:
            return True
        return await self.block_height() > last_valid_block_height

    async def resolve(
        self,
        signature: str,
        last_valid_block_height: Optional[int],
        timeout_seconds: float = 30,
        poll_interval: float = 1.0
    ) -> SignatureStatus:
        """
        Poll a broadcast transaction until its outcome is final.

        Returns:
            CONFIRMED, FAILED or EXPIRED once final, otherwise the in-flight
            status seen when the timeout passed
        """
        start_time = time.time()

        while True:
            # Height first: an unknown signature after expiry can never land
            expired = await self.has_expired(last_valid_block_height)
            status = await self.signature_status(signature)

            if status in (SignatureStatus.CONFIRMED, SignatureStatus.FAILED):
                return status
            if status == SignatureStatus.UNKNOWN and expired:
                return SignatureStatus.EXPIRED
            if time.time() - start_time >= timeout_seconds:
                return status
            await asyncio.sleep(poll_interval)

    async def wait_for_confirmation(
        self,
        signature: str,
        timeout_seconds: float = 30,
        poll_interval: float = 1.0
    ) -> SignatureStatus:
        """
        Poll a signature until it is confirmed, fails, or the timeout passes.

        Returns:
            CONFIRMED or FAILED, or the last status seen when the timeout passed
        """
        start_time = time.time()
        status = await self.signature_status(signature)

        while status not in (SignatureStatus.CONFIRMED, SignatureStatus.FAILED):
            if time.time() - start_time >= timeout_seconds:
                logger.warning(f"Confirmation timeout for {signature}")
                break
            await asyncio.sleep(poll_interval)
            status = await self.signature_status(signature)

        return status

    async def transfer(self, owner: str, amount: int) -> str:
        """Transfer reward tokens to an owner and wait for confirmation."""
        prepared = await self.build_transfer(owner, amount)
        signature = await self.send(prepared)
        status = await self.wait_for_confirmation(signature)
        if status != SignatureStatus.CONFIRMED:
            raise TransientRemoteError(f"Transfer {signature} not confirmed ({status.value})")
        return signature


class SolanaTaxTokenProgram(TaxTokenProgram):
    """
    Tax token program backed by a Solana RPC node.
    """

    def __init__(
        self,
        client: AsyncClient,
        payer: Keypair,
        tax_program_id: str,
        token_mint: str,
        reward_mint: str,
        treasury_account: Optional[str] = None
    ):
        """
        Initialize the program client.

        Args:
            client: Async Solana RPC client
            payer: Admin keypair; withdraw authority and treasury owner
            tax_program_id: Tax token Anchor program
            token_mint: Token-2022 tax token mint
            reward_mint: Classic SPL reward token mint
            treasury_account: Tax token account receiving withdrawals
        """
        self.client = client
        self.payer = payer
        self.tax_program_id = Pubkey.from_string(tax_program_id)
        self.token_mint = Pubkey.from_string(token_mint)
        self.reward_mint = Pubkey.from_string(reward_mint)

        owner = payer.pubkey()
        self.treasury_account = (
            Pubkey.from_string(treasury_account) if treasury_account
            else get_associated_token_address(owner, self.token_mint, TOKEN_2022_PROGRAM_ID)
        )
        self.reward_account = get_associated_token_address(owner, self.reward_mint, TOKEN_PROGRAM_ID)

        logger.info(
            f"SolanaTaxTokenProgram initialized for mint {token_mint}",
            extra={"treasury": str(self.treasury_account), "reward_account": str(self.reward_account)}
        )

    async def _sign(self, instructions: List[Instruction], description: str) -> PreparedTransaction:
        try:
            resp = await self.client.get_latest_blockhash()
        except SolanaRpcException as e:
            raise TransientRemoteError(f"Failed to get recent blockhash: {str(e)}") from e

        tx = Transaction.new_signed_with_payer(
            instructions, self.payer.pubkey(), [self.payer], resp.value.blockhash
        )
        return PreparedTransaction(
            signature=str(tx.signatures[0]),
            payload=bytes(tx),
            description=description,
            last_valid_block_height=resp.value.last_valid_block_height
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
            if "insufficient funds" in message.lower() or "InsufficientFunds" in message:
                raise InsufficientFunds(f"{prepared.description}: {message}") from e
            raise TransientRemoteError(f"{prepared.description} rejected: {message}") from e

        logger.debug(f"Sent {prepared.description}: {prepared.signature}")
        return prepared.signature

    async def signature_status(self, signature: str) -> SignatureStatus:
        try:
            resp = await self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except SolanaRpcException as e:
            raise TransientRemoteError(f"Signature status lookup failed: {str(e)}") from e

        status = resp.value[0]
        if status is None:
            return SignatureStatus.UNKNOWN
        if status.err is not None:
            logger.error(f"Transaction error for {signature}: {status.err}")
            return SignatureStatus.FAILED
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized
        ):
            return SignatureStatus.CONFIRMED
        return SignatureStatus.PENDING

    async def block_height(self) -> int:
        try:
            resp = await self.client.get_block_height(Confirmed)
        except SolanaRpcException as e:
            raise TransientRemoteError(f"Block height lookup failed: {str(e)}") from e
        return resp.value

    async def _token_balance(self, account: Pubkey) -> int:
        try:
            info = await self.client.get_account_info(account)
            if info.value is None:
                return 0
            resp = await self.client.get_token_account_balance(account)
        except SolanaRpcException as e:
            raise TransientRemoteError(f"Balance lookup for {account} failed: {str(e)}") from e
        return int(resp.value.amount)

    async def treasury_balance(self) -> int:
        return await self._token_balance(self.treasury_account)

    async def reward_balance(self) -> int:
        return await self._token_balance(self.reward_account)

    async def list_withheld_accounts(self, token_accounts: Sequence[str]) -> List[str]:
        withheld = []
        for start in range(0, len(token_accounts), MAX_ACCOUNTS_PER_QUERY):
            chunk = token_accounts[start:start + MAX_ACCOUNTS_PER_QUERY]
            try:
                resp = await self.client.get_multiple_accounts_json_parsed(
                    [Pubkey.from_string(address) for address in chunk]
                )
            except SolanaRpcException as e:
                raise TransientRemoteError(f"Withheld amount lookup failed: {str(e)}") from e

            for address, account in zip(chunk, resp.value):
                if account is None:
                    continue
                parsed = getattr(account.data, "parsed", None) or {}
                for extension in parsed.get("info", {}).get("extensions", []):
                    if extension.get("extension") != "transferFeeAmount":
                        continue
                    if int(extension.get("state", {}).get("withheldAmount", 0)) > 0:
                        withheld.append(address)

        logger.info(
            f"{len(withheld)} of {len(token_accounts)} token accounts carry withheld tax",
            extra={"withheld_accounts": len(withheld), "scanned": len(token_accounts)}
        )
        return withheld

    async def harvest_withheld(self, accounts: Sequence[str]) -> HarvestBatchResult:
        keys = [
            AccountMeta(pubkey=self.token_mint, is_signer=False, is_writable=True),
            AccountMeta(pubkey=TOKEN_2022_PROGRAM_ID, is_signer=False, is_writable=False),
        ] + [
            AccountMeta(pubkey=Pubkey.from_string(address), is_signer=False, is_writable=True)
            for address in accounts
        ]
        instruction = Instruction(self.tax_program_id, anchor_discriminator("harvest"), keys)

        prepared = await self._sign([instruction], f"harvest of {len(accounts)} accounts")
        try:
            await self.send(prepared)
            status = await self.wait_for_confirmation(prepared.signature)
        except TransientRemoteError as e:
            raise PartialBatchFailure(str(e), failed_accounts=list(accounts)) from e

        if status != SignatureStatus.CONFIRMED:
            raise PartialBatchFailure(
                f"Harvest {prepared.signature} ended {status.value}", failed_accounts=list(accounts)
            )
        return HarvestBatchResult(harvested=list(accounts), signature=prepared.signature)

    async def prepare_withdraw(self, destination: Optional[str] = None) -> PreparedTransaction:
        target = Pubkey.from_string(destination) if destination else self.treasury_account
        keys = [
            AccountMeta(pubkey=self.payer.pubkey(), is_signer=True, is_writable=True),
            AccountMeta(pubkey=self.token_mint, is_signer=False, is_writable=True),
            AccountMeta(pubkey=target, is_signer=False, is_writable=True),
            AccountMeta(pubkey=TOKEN_2022_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        instruction = Instruction(self.tax_program_id, anchor_discriminator("withdraw"), keys)

        return await self._sign([instruction], "withdraw of withheld tax")

    async def build_transfer(self, owner: str, amount: int) -> PreparedTransaction:
        owner_key = Pubkey.from_string(owner)
        recipient = get_associated_token_address(owner_key, self.reward_mint, TOKEN_PROGRAM_ID)

        # CreateIdempotent is a no-op when the holder account already exists
        instructions = [
            create_associated_token_account_instruction(self.payer.pubkey(), owner_key, self.reward_mint),
            create_token_transfer_instruction(self.reward_account, recipient, self.payer.pubkey(), amount),
        ]
        return await self._sign(instructions, f"reward transfer of {amount} to {owner}")
