"""
Centralized cryptographic operations for hub key files.

Key files are stored AES-256-CBC encrypted (PKCS7 padded) and base64 armored,
the same format `openssl enc -aes-256-cbc -base64 -K <key> -iv <iv>` produces.
"""

import base64
import binascii
from pathlib import Path

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import CryptoError

KEY_SIZE = 32
IV_SIZE = 16


def _decode_hex(value: str, expected: int, label: str) -> bytes:
    try:
        raw = bytes.fromhex(value.strip())
    except (ValueError, AttributeError) as e:
        raise CryptoError(f"The {label} must be hex encoded: {e}") from e
    if len(raw) != expected:
        raise CryptoError(
            f"The {label} must be {expected} bytes ({expected * 2} hex characters), got {len(raw)}."
        )
    return raw


def _cipher(key_hex: str, iv_hex: str) -> Cipher:
    key = _decode_hex(key_hex, KEY_SIZE, "encryption key")
    iv = _decode_hex(iv_hex, IV_SIZE, "initialization vector")
    return Cipher(algorithms.AES(key), modes.CBC(iv))


def encrypt_bytes(data: bytes, key_hex: str, iv_hex: str) -> bytes:
    """Encrypts and base64 encodes `data`."""
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = _cipher(key_hex, iv_hex).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(ciphertext)


def _unarmor(data: bytes) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error:
        pass
    # openssl wraps base64 output at 64 columns.
    joined = b"".join(data.split())
    try:
        return base64.b64decode(joined, validate=True)
    except binascii.Error:
        return data


def decrypt_bytes(data: bytes, key_hex: str, iv_hex: str) -> bytes:
    """Decrypts base64 armored, wrapped base64, or raw ciphertext."""
    ciphertext = _unarmor(data)
    decryptor = _cipher(key_hex, iv_hex).decryptor()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptoError(
            "Decryption failed. Check the encryption key and initialization vector."
        ) from e


def _read_source(source: Path) -> bytes:
    if not source.is_file():
        raise CryptoError(f"File {source} not found")
    return source.read_bytes()


def encrypt_file(source: Path, target: Path, key_hex: str, iv_hex: str) -> Path:
    data = _read_source(source)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encrypt_bytes(data, key_hex, iv_hex))
    return target


def decrypt_file(source: Path, target: Path, key_hex: str, iv_hex: str) -> Path:
    data = _read_source(source)
    plaintext = decrypt_bytes(data, key_hex, iv_hex)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(plaintext)
    target.chmod(0o600)
    return target
