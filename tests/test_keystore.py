"""Tests for the exchange rate key vault."""
import base64

import pytest

from core.database import Database
from core.errors import DecryptionError
from services.keystore import KEYPAIR_NAME, KeyVault


@pytest.fixture
def vault(db):
    return KeyVault(db)


async def test_public_jwk_shape(vault):
    jwk = await vault.public_jwk()

    assert jwk['kty'] == 'RSA'
    assert jwk['e'] == 'AQAB'
    assert '=' not in jwk['n']
    # 2048-bit modulus is 256 bytes
    padded = jwk['n'] + '=' * (-len(jwk['n']) % 4)
    assert len(base64.urlsafe_b64decode(padded)) == 256


async def test_encrypt_decrypt_round_trip(vault):
    ciphertext = await vault.encrypt('my-api-key-123')
    assert await vault.decrypt(ciphertext) == 'my-api-key-123'


async def test_keypair_is_persisted(db, vault):
    jwk = await vault.public_jwk()
    ciphertext = await vault.encrypt('secret')

    reloaded = KeyVault(db)
    assert await reloaded.public_jwk() == jwk
    assert await reloaded.decrypt(ciphertext) == 'secret'


async def test_missing_ciphertext(vault):
    for value in ('', None):
        with pytest.raises(DecryptionError) as exc_info:
            await vault.decrypt(value)
        assert str(exc_info.value) == 'missing_encrypted_key'


async def test_garbage_ciphertext(vault):
    for value in ('not base64 at all!', base64.b64encode(b'short').decode()):
        with pytest.raises(DecryptionError) as exc_info:
            await vault.decrypt(value)
        assert str(exc_info.value) == 'decryption_failed'


async def test_wrong_key(vault, tmp_path):
    other_db = Database(str(tmp_path / "other.db"))
    await other_db.connect()
    try:
        ciphertext = await KeyVault(other_db).encrypt('secret')
    finally:
        await other_db.disconnect()

    with pytest.raises(DecryptionError) as exc_info:
        await vault.decrypt(ciphertext)
    assert str(exc_info.value) == 'decryption_failed'


async def test_corrupt_keypair_is_replaced(db):
    await db.save_keypair(KEYPAIR_NAME, 'not a pem', 'also not a pem')

    vault = KeyVault(db)
    ciphertext = await vault.encrypt('secret')

    assert await vault.decrypt(ciphertext) == 'secret'
    public_pem, _ = await db.get_keypair(KEYPAIR_NAME)
    assert public_pem.startswith('-----BEGIN PUBLIC KEY-----')
