import json
import logging
from pathlib import Path
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from ..errors import CredentialError, SigningError

logger = logging.getLogger(__name__)


def load_credential(wallet_file: str | Path, password: str | None = None) -> LocalAccount:
    """Load the signing credential from disk.

    The file holds either an encrypted JSON keystore or a hex private key
    (64 hex characters, optionally 0x-prefixed).

    Args:
        wallet_file: Path to the credential file
        password: Keystore password (required for keystore files)

    Returns:
        LocalAccount used to sign outbound messages

    Raises:
        CredentialError: If the file is missing or cannot be decoded
    """
    path = Path(wallet_file)
    try:
        raw = path.read_text().strip()
    except OSError as e:
        raise CredentialError(f"Cannot read wallet file {path}: {e}") from e

    if not raw:
        raise CredentialError(f"Wallet file {path} is empty")

    if raw.startswith("{"):
        return _load_keystore(path, raw, password)

    key = raw.removeprefix("0x")
    if len(key) != 64:
        raise CredentialError(
            f"Invalid private key length in {path}. Expected 64 hex characters, got {len(key)}"
        )
    try:
        account: LocalAccount = Account.from_key("0x" + key)
    except Exception as e:
        raise CredentialError(f"Invalid private key in {path}: {e}") from e

    logger.info(f"Loaded signing key for {account.address}")
    return account


def _load_keystore(path: Path, raw: str, password: str | None) -> LocalAccount:
    if password is None:
        raise CredentialError(f"Wallet file {path} is a keystore; WALLET_PASSWORD is required")

    try:
        keystore: dict[str, Any] = json.loads(raw)
        private_key = Account.decrypt(keystore, password)
    except (ValueError, KeyError, TypeError) as e:
        raise CredentialError(f"Cannot decrypt keystore {path}: {e}") from e

    account: LocalAccount = Account.from_key(private_key)
    logger.info(f"Loaded keystore for {account.address}")
    return account


def canonical_message(process: str, action: str, data: str) -> str:
    """Canonical text signed for an envelope: compact JSON with sorted keys."""
    return json.dumps(
        {
            "data": data,
            "process": process,
            "tags": [{"name": "Action", "value": action}],
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def sign_message(account: LocalAccount, text: str) -> str:
    """Sign text with an EIP-191 personal-sign signature.

    Returns:
        0x-prefixed 65-byte signature

    Raises:
        SigningError: If the credential cannot produce a signature
    """
    try:
        signed = account.sign_message(encode_defunct(text=text))
    except Exception as e:
        raise SigningError(f"Failed to sign message: {e}") from e
    return Web3.to_hex(signed.signature)

