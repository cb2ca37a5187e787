"""
Wallet identity used to authenticate DPSN broker sessions and publishes.

This module wraps an Ethereum private key. The key never leaves the
identity: callers get the derived address and personal-sign signatures.
"""

import logging

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import to_hex

from .exceptions import InvalidCredentialError
from .message_types import SESSION_CHALLENGE, STATUS


class WalletIdentity:
    """
    Signing identity derived from an Ethereum private key.

    The identity holds no mutable state besides the key, so it is safe to
    share between concurrent publishes.
    """

    def __init__(self, private_key: str):
        """
        Initialize the wallet identity.

        Args:
            private_key: Hex encoded secp256k1 private key, with or without 0x

        Raises:
            InvalidCredentialError: If the key is not a valid private key
        """
        self.logger = logging.getLogger(__name__)
        try:
            self._account: LocalAccount = Account.from_key(private_key)
        except Exception as e:
            raise InvalidCredentialError(
                f"Invalid private key: {e}", status=STATUS.DISCONNECTED
            ) from e
        self._address = self._account.address

    @property
    def address(self) -> str:
        """Checksummed address derived from the key."""
        return self._address

    @property
    def account(self) -> LocalAccount:
        return self._account

    def sign(self, payload: bytes | str) -> str:
        """
        Sign a payload using the personal-message scheme (EIP-191).

        Strings are signed as their UTF-8 text, bytes as raw bytes.

        Returns:
            0x-prefixed hex signature
        """
        if isinstance(payload, str):
            message = encode_defunct(text=payload)
        else:
            message = encode_defunct(primitive=bytes(payload))
        signed = self._account.sign_message(message)
        return to_hex(signed.signature)

    def session_password(self) -> str:
        """Signature over the fixed session challenge, used as broker password."""
        return self.sign(SESSION_CHALLENGE)

    def sign_transaction(self, transaction: dict) -> bytes:
        """Sign a transaction dict and return the raw signed transaction."""
        return self._account.sign_transaction(transaction).raw_transaction

    def __repr__(self) -> str:
        return f"WalletIdentity(address={self._address!r})"
