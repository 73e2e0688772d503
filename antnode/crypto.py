"""secp256k1 key material and the locally-held signer.

Keys are plain 32-byte private scalars. ``cryptography`` generates them and
derives the compressed public point; ``eth_account``/``eth_keys`` provide the
ethereum address, EIP-191 personal-sign signatures and public key recovery.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError

from antnode.errors import CryptoError, SigningError

PRIVATE_KEY_SIZE = 32
SIGNATURE_SIZE = 65

_ETHEREUM_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"


def generate_secp256k1_key() -> bytes:
    private_key = ec.generate_private_key(ec.SECP256K1())
    return private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")


def encode_secp256k1_public_key(private_key: bytes) -> bytes:
    """Return the 33-byte compressed public point for ``private_key``."""
    try:
        derived = ec.derive_private_key(int.from_bytes(private_key, "big"), ec.SECP256K1())
    except ValueError as exc:
        raise CryptoError("invalid secp256k1 private key") from exc
    return derived.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


def ethereum_address(private_key: bytes) -> bytes:
    checksum_address: str = Account.from_key(private_key).address
    return bytes.fromhex(checksum_address[2:])


def ethereum_message(data: bytes) -> bytes:
    """Prefix ``data`` the way ``personal_sign`` and clef's text/plain do."""
    return _ETHEREUM_MESSAGE_PREFIX + str(len(data)).encode("ascii") + data


def recover_public_key(signature: bytes, data: bytes) -> bytes:
    """Recover the compressed public key that produced ``signature`` over ``data``.

    ``signature`` is ``r || s || v`` with ``v`` either 0/1 or 27/28.
    """
    if len(signature) != SIGNATURE_SIZE:
        raise CryptoError(f"invalid signature length {len(signature)}")

    recovery_id = signature[64]
    if recovery_id >= 27:
        recovery_id -= 27

    try:
        normalized = keys.Signature(signature_bytes=signature[:64] + bytes([recovery_id]))
        public_key = normalized.recover_public_key_from_msg(ethereum_message(data))
    except (BadSignature, EthKeysValidationError) as exc:
        raise CryptoError("unable to recover public key from signature") from exc
    return public_key.to_compressed_bytes()


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """A named secp256k1 keypair held by the keystore."""

    name: str
    private_key: bytes = field(repr=False)

    @property
    def public_key(self) -> bytes:
        return encode_secp256k1_public_key(self.private_key)

    @property
    def ethereum_address(self) -> bytes:
        return ethereum_address(self.private_key)


class DefaultSigner:
    """Signs with a private key held in process memory."""

    def __init__(self, key: KeyMaterial) -> None:
        self._key = key

    def public_key(self) -> bytes:
        return self._key.public_key

    def ethereum_address(self) -> bytes:
        return self._key.ethereum_address

    def sign(self, payload: bytes) -> bytes:
        try:
            signed = Account.sign_message(encode_defunct(primitive=payload), private_key=self._key.private_key)
        except (TypeError, ValueError) as exc:
            raise SigningError(f"sign with {self._key.name} key: {exc}") from exc
        return bytes(signed.signature)


__all__ = [
    "DefaultSigner",
    "KeyMaterial",
    "encode_secp256k1_public_key",
    "ethereum_address",
    "ethereum_message",
    "generate_secp256k1_key",
    "recover_public_key",
]
