"""
Loading of the signing keypair.
"""

import json
import os
from typing import Optional

import base58
from loguru import logger
from solders.keypair import Keypair

from taxbot.solana.errors import KeyLoadError

SECRET_KEY_LENGTH = 64


def keypair_from_bytes(secret: bytes) -> Keypair:
    if len(secret) != SECRET_KEY_LENGTH:
        raise KeyLoadError(f"Secret key must be {SECRET_KEY_LENGTH} bytes, got {len(secret)}")
    try:
        return Keypair.from_bytes(secret)
    except ValueError as e:
        raise KeyLoadError(f"Invalid secret key: {str(e)}") from e


def keypair_from_base58(secret: str) -> Keypair:
    try:
        raw = base58.b58decode(secret.strip())
    except ValueError as e:
        raise KeyLoadError("Invalid private key format. Must be base58 encoded.") from e
    return keypair_from_bytes(raw)


def keypair_from_file(path: str) -> Keypair:
    """
    Load a keypair from a JSON array of 64 byte values (solana-keygen format).

    Args:
        path: Key file path, ~ is expanded
    """
    expanded = os.path.expanduser(path)
    try:
        with open(expanded, "r") as f:
            values = json.load(f)
    except FileNotFoundError as e:
        raise KeyLoadError(f"Key file not found: {expanded}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise KeyLoadError(f"Cannot read key file {expanded}: {str(e)}") from e

    if not isinstance(values, list) or not all(isinstance(v, int) and 0 <= v < 256 for v in values):
        raise KeyLoadError(f"Key file {expanded} must contain a JSON array of byte values")

    return keypair_from_bytes(bytes(values))


def load_keypair(secret: Optional[str] = None, path: Optional[str] = None) -> Keypair:
    """
    Load the admin keypair from a base58 secret, or failing that a key file.

    Args:
        secret: Base58 encoded 64-byte secret key
        path: Path to a JSON key file

    Returns:
        Keypair

    Raises:
        KeyLoadError: If neither source yields a valid key
    """
    if secret:
        keypair = keypair_from_base58(secret)
        source = "environment"
    elif path:
        keypair = keypair_from_file(path)
        source = path
    else:
        raise KeyLoadError("No private key configured: set SOLANA_ADMIN_PRIVATE_KEY or PAYER_SECRET_KEY")

    logger.info(f"Loaded admin keypair {keypair.pubkey()} from {source}")
    return keypair
