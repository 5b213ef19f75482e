"""Server RSA keypair for the exchange rate API key.

The browser encrypts the provider key with the public key from
``GET /api/exchange-rate/public-key`` (RSA-OAEP, SHA-256 for both the
hash and MGF1). Only the ciphertext is stored in tenant settings; the
private key never leaves this process and its database.
"""
import asyncio
import base64
import binascii
import logging
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from core.database import Database
from core.errors import DecryptionError

logger = logging.getLogger(__name__)

KEYPAIR_NAME = "exchange_rate"
KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, 'big')
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _generate_pem_pair() -> Tuple[str, str]:
    """Generate an RSA keypair as (public_pem, private_pem). Blocking."""
    private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('ascii')
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode('ascii')
    return public_pem, private_pem


def _load_pem_pair(public_pem: str, private_pem: str) -> Tuple[RSAPublicKey, RSAPrivateKey]:
    private_key = serialization.load_pem_private_key(private_pem.encode('ascii'), password=None)
    public_key = serialization.load_pem_public_key(public_pem.encode('ascii'))
    if not isinstance(private_key, RSAPrivateKey) or not isinstance(public_key, RSAPublicKey):
        raise ValueError("stored keypair is not RSA")
    if private_key.public_key().public_numbers() != public_key.public_numbers():
        raise ValueError("stored public key does not match private key")
    return public_key, private_key


class KeyVault:
    """Lazily created, persisted RSA keypair."""

    def __init__(self, db: Database, name: str = KEYPAIR_NAME):
        self.db = db
        self.name = name
        self._lock = asyncio.Lock()
        self._keys: Optional[Tuple[RSAPublicKey, RSAPrivateKey]] = None

    async def get_keypair(self) -> Tuple[RSAPublicKey, RSAPrivateKey]:
        """
        Get the keypair, loading or generating it on first use.

        Returns:
            Tuple of (public key, private key)
        """
        if self._keys is not None:
            return self._keys

        async with self._lock:
            if self._keys is not None:
                return self._keys

            stored = await self.db.get_keypair(self.name)
            if stored is not None:
                try:
                    self._keys = _load_pem_pair(*stored)
                    return self._keys
                except ValueError as e:
                    logger.error(f"Stored keypair {self.name!r} is unusable, regenerating: {e}")

            public_pem, private_pem = await asyncio.to_thread(_generate_pem_pair)
            await self.db.save_keypair(self.name, public_pem, private_pem)
            logger.info(f"Generated RSA keypair {self.name!r}")

            self._keys = _load_pem_pair(public_pem, private_pem)
            return self._keys

    async def public_jwk(self) -> Dict[str, str]:
        """Public key as a JWK for WebCrypto ``importKey``."""
        public_key, _ = await self.get_keypair()
        numbers = public_key.public_numbers()
        return {
            'kty': 'RSA',
            'n': _b64url_uint(numbers.n),
            'e': _b64url_uint(numbers.e),
        }

    async def decrypt(self, encrypted_b64: Optional[str]) -> str:
        """
        Decrypt a base64 RSA-OAEP ciphertext.

        Raises:
            DecryptionError: ``missing_encrypted_key`` or ``decryption_failed``
        """
        if not encrypted_b64:
            raise DecryptionError("missing_encrypted_key")

        _, private_key = await self.get_keypair()
        try:
            ciphertext = base64.b64decode(encrypted_b64, validate=True)
            plaintext = private_key.decrypt(ciphertext, _oaep())
            return plaintext.decode('utf-8')
        except (binascii.Error, ValueError) as e:
            logger.debug(f"Decryption failed: {e}")
            raise DecryptionError("decryption_failed")

    async def encrypt(self, plaintext: str) -> str:
        """Encrypt with the public key, as the browser does."""
        public_key, _ = await self.get_keypair()
        ciphertext = public_key.encrypt(plaintext.encode('utf-8'), _oaep())
        return base64.b64encode(ciphertext).decode('ascii')
