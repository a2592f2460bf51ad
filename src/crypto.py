"""
Secret storage for the wallet mnemonic

Мнемоника может храниться в .env зашифрованной мастер-паролем
(WALLET_MNEMONIC_ENCRYPTED=true, пароль в WALLET_PASSWORD).

Формат:
    base64( version (1) + salt (16) + nonce (12) + ciphertext + tag (16) )

Ключ: PBKDF2-SHA256, 600 000 итераций. Шифр: AES-256-GCM.
Version byte передаётся как associated data, подмена версии ломает tag.
"""

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

VERSION = b'\x02'
SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16
ITERATIONS = 600_000

HEADER_SIZE = 1 + SALT_SIZE + NONCE_SIZE


class CryptoError(Exception):
    """Базовое исключение для ошибок шифрования."""
    pass


class DecryptionError(CryptoError):
    """Неверный пароль или повреждённые данные."""
    pass


def _derive_key(password: str, salt: bytes, iterations: int = ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode('utf-8'))


def encrypt_secret(secret: str, password: str, iterations: int = ITERATIONS) -> str:
    """
    Зашифровать секрет (мнемонику) мастер-паролем.

    Args:
        secret: Открытый текст
        password: Мастер-пароль (не пустой)
        iterations: Итерации PBKDF2 (уменьшаются только в тестах)

    Returns:
        Base64 строка для WALLET_MNEMONIC
    """
    if not password:
        raise CryptoError("Password must not be empty")

    salt = secrets.token_bytes(SALT_SIZE)
    nonce = secrets.token_bytes(NONCE_SIZE)
    key = _derive_key(password, salt, iterations)

    ciphertext = AESGCM(key).encrypt(nonce, secret.encode('utf-8'), VERSION)
    return base64.b64encode(VERSION + salt + nonce + ciphertext).decode('ascii')


def decrypt_secret(encrypted_data: str, password: str, iterations: int = ITERATIONS) -> str:
    """
    Расшифровать секрет.

    Raises:
        DecryptionError: Неверный пароль, чужая версия формата или повреждённые данные
    """
    try:
        data = base64.b64decode(encrypted_data.strip().encode('ascii'), validate=True)
    except (ValueError, binascii.Error) as e:
        raise DecryptionError(f"Corrupted data: {e}")

    if len(data) < HEADER_SIZE + TAG_SIZE:
        raise DecryptionError("Corrupted data: too short")

    version = data[0:1]
    if version != VERSION:
        raise DecryptionError(f"Unsupported format version: {version.hex()}")

    salt = data[1:1 + SALT_SIZE]
    nonce = data[1 + SALT_SIZE:HEADER_SIZE]
    ciphertext = data[HEADER_SIZE:]

    key = _derive_key(password, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, version)
    except InvalidTag:
        raise DecryptionError("Wrong password")

    return plaintext.decode('utf-8')


def verify_password(encrypted_data: str, password: str, iterations: int = ITERATIONS) -> bool:
    """Проверить пароль без возврата секрета наружу."""
    try:
        decrypt_secret(encrypted_data, password, iterations)
        return True
    except DecryptionError:
        return False


def is_encrypted_format(data: str) -> bool:
    """
    Похожа ли строка на результат encrypt_secret.

    Мнемоника из слов через пробел base64 не проходит, поэтому ложных
    срабатываний на открытом тексте нет.
    """
    try:
        decoded = base64.b64decode(data.strip().encode('ascii'), validate=True)
    except (ValueError, binascii.Error):
        return False
    return len(decoded) >= HEADER_SIZE + TAG_SIZE and decoded[0:1] == VERSION
