"""
Configuration for the reward bot.

Values come from the environment (optionally a .env file) and are validated
into a Settings object by load_settings().
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from taxbot.solana.errors import ConfigError

# Load environment variables from .env file
load_dotenv()

# Network configuration
SOLANA_NETWORK = os.getenv("SOLANA_NETWORK", "mainnet").lower()
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL")
HELIUS_RPC = os.getenv("HELIUS_RPC")

# Wallet configuration
SOLANA_ADMIN_PRIVATE_KEY = os.getenv("SOLANA_ADMIN_PRIVATE_KEY")
PAYER_SECRET_KEY = os.getenv("PAYER_SECRET_KEY", "~/.config/solana/id.json")

# Program and token configuration
TAX_PROGRAM_ID = os.getenv("TAX_PROGRAM_ID")
TOKEN_MINT = os.getenv("TOKEN_MINT")
REWARD_TOKEN_MINT = os.getenv("REWARD_TOKEN_MINT")
TREASURY_ACCOUNT = os.getenv("TREASURY_ACCOUNT")

# Swap venue configuration
JUPITER_API_URL = os.getenv("JUPITER_API_URL", "https://quote-api.jup.ag/v6")
SWAP_DEXES = os.getenv("SWAP_DEXES", "Raydium CLMM")

# Numeric values stay strings here; Settings parses and validates them
# Cycle configuration
INTERVAL = os.getenv("INTERVAL", "3600")  # seconds
POLL_INTERVAL = os.getenv("POLL_INTERVAL", "10")  # seconds
MAX_CYCLE_DURATION = os.getenv("MAX_CYCLE_DURATION", "1800")  # seconds

# Swap and distribution configuration
SLIPPAGE_BPS = os.getenv("SLIPPAGE_BPS", "50")  # 0.5%
DUST_THRESHOLD = os.getenv("DUST_THRESHOLD", "1")  # base units
MAX_SWAP_ATTEMPTS = os.getenv("MAX_SWAP_ATTEMPTS", "3")
HARVEST_BATCH_SIZE = os.getenv("HARVEST_BATCH_SIZE", "20")
MAX_CONCURRENT_TRANSFERS = os.getenv("MAX_CONCURRENT_TRANSFERS", "5")
EXCLUDED_HOLDERS = os.getenv("EXCLUDED_HOLDERS", "")

# Retry configuration
MAX_RETRIES = os.getenv("MAX_RETRIES", "3")
RETRY_BASE_DELAY = os.getenv("RETRY_BASE_DELAY", "2")  # seconds
RETRY_BACKOFF_MULTIPLIER = os.getenv("RETRY_BACKOFF_MULTIPLIER", "2")
CALL_TIMEOUT = os.getenv("CALL_TIMEOUT", "30")  # seconds

# Persistence configuration
STATE_DIR = os.getenv("STATE_DIR", "data/cycles")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Public RPC endpoints by network name
RPC_ENDPOINTS = {
    "devnet": "https://api.devnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
}


def resolve_rpc_url(network: str, rpc_url: Optional[str] = None) -> str:
    """Return the RPC endpoint for a network name, or the network itself if it is a URL."""
    if rpc_url:
        return rpc_url
    return RPC_ENDPOINTS.get(network, network)


class Settings(BaseModel):
    """Validated runtime settings."""
    rpc_url: str
    helius_rpc: Optional[str] = None
    admin_private_key: Optional[str] = None
    payer_secret_key_path: str = "~/.config/solana/id.json"
    tax_program_id: str
    token_mint: str
    reward_token_mint: str
    treasury_account: Optional[str] = None
    jupiter_api_url: str = "https://quote-api.jup.ag/v6"
    swap_dexes: Optional[str] = "Raydium CLMM"

    interval: int = 3600
    poll_interval: int = 10
    max_cycle_duration: int = 1800

    slippage_bps: int = 50
    dust_threshold: int = 1
    max_swap_attempts: int = 3
    harvest_batch_size: int = 20
    max_concurrent_transfers: int = 5
    excluded_holders: List[str] = Field(default_factory=list)

    max_retries: int = 3
    retry_base_delay: float = 2.0
    retry_backoff_multiplier: float = 2.0
    call_timeout: float = 30.0

    state_dir: str = "data/cycles"
    log_level: str = "INFO"

    @field_validator("excluded_holders", mode="before")
    @classmethod
    def split_holders(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("slippage_bps")
    @classmethod
    def check_slippage(cls, value: int) -> int:
        if value < 0 or value > 10000:
            raise ValueError("slippage_bps must be between 0 and 10000")
        return value

    @field_validator("harvest_batch_size", "max_concurrent_transfers", "max_swap_attempts", "interval")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("dust_threshold", "max_retries")
    @classmethod
    def check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @model_validator(mode="after")
    def check_duration(self):
        if self.max_cycle_duration <= 0:
            raise ValueError("max_cycle_duration must be positive")
        return self


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Raises:
        ConfigError: If a required variable is missing or a value is invalid
    """
    missing = [
        name for name, value in (
            ("TAX_PROGRAM_ID", TAX_PROGRAM_ID),
            ("TOKEN_MINT", TOKEN_MINT),
            ("REWARD_TOKEN_MINT", REWARD_TOKEN_MINT),
        ) if not value
    ]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    try:
        return Settings(
            rpc_url=resolve_rpc_url(SOLANA_NETWORK, SOLANA_RPC_URL),
            helius_rpc=HELIUS_RPC,
            admin_private_key=SOLANA_ADMIN_PRIVATE_KEY,
            payer_secret_key_path=PAYER_SECRET_KEY,
            tax_program_id=TAX_PROGRAM_ID,
            token_mint=TOKEN_MINT,
            reward_token_mint=REWARD_TOKEN_MINT,
            treasury_account=TREASURY_ACCOUNT,
            jupiter_api_url=JUPITER_API_URL,
            swap_dexes=SWAP_DEXES or None,
            interval=INTERVAL,
            poll_interval=POLL_INTERVAL,
            max_cycle_duration=MAX_CYCLE_DURATION,
            slippage_bps=SLIPPAGE_BPS,
            dust_threshold=DUST_THRESHOLD,
            max_swap_attempts=MAX_SWAP_ATTEMPTS,
            harvest_batch_size=HARVEST_BATCH_SIZE,
            max_concurrent_transfers=MAX_CONCURRENT_TRANSFERS,
            excluded_holders=EXCLUDED_HOLDERS,
            max_retries=MAX_RETRIES,
            retry_base_delay=RETRY_BASE_DELAY,
            retry_backoff_multiplier=RETRY_BACKOFF_MULTIPLIER,
            call_timeout=CALL_TIMEOUT,
            state_dir=STATE_DIR,
            log_level=LOG_LEVEL,
        )
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {str(e)}") from e
