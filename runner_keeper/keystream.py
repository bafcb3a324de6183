"""
Keystream Module

Derives a keystream from a password and salt and masks payloads with it.
This is obfuscation against casual disclosure, not a strong cipher.
"""

import hashlib
import secrets


SALT_BYTES = 16
SEED_ITERATIONS = 100_000
BLOCK_SIZE = hashlib.sha256().digest_size


def new_salt() -> str:
    """Generate a fresh random salt, hex encoded"""
    return secrets.token_hex(SALT_BYTES)


def derive_keystream(password: str, salt: str, length: int) -> bytes:
    """
    Derive a deterministic keystream of the requested length

    The password and salt are stretched into a seed with PBKDF2, then the
    seed is extended in SHA-256 counter mode.

    Args:
        password: Secret password
        salt: Public salt stored next to the ciphertext
        length: Number of keystream bytes required

    Returns:
        Keystream bytes
    """
    if length < 0:
        raise ValueError("keystream length must not be negative")

    seed = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'),
                               salt.encode('utf-8'), SEED_ITERATIONS)
    blocks = []
    counter = 0
    while counter * BLOCK_SIZE < length:
        blocks.append(hashlib.sha256(seed + counter.to_bytes(8, 'big')).digest())
        counter += 1
    return b''.join(blocks)[:length]


def xor_bytes(payload: bytes, keystream: bytes) -> bytes:
    """
    XOR a payload against a keystream

    Encoding and decoding are the same operation.

    Raises:
        ValueError: If the keystream is shorter than the payload
    """
    if len(keystream) < len(payload):
        raise ValueError(
            f"keystream too short: {len(keystream)} bytes for a {len(payload)} byte payload")
    return bytes(p ^ k for p, k in zip(payload, keystream))


encode = xor_bytes
decode = xor_bytes
