"""
auth/tokens.py -- Credential lifecycle: password hashing, client secret
encryption, JWT mint/verify, long-lived token hashing.

Security design decisions:
  Passwords: bcrypt with a fixed cost factor of 10. The _DUMMY_HASH constant
       enables timing equalization at login so response time does not reveal
       whether a username exists.

  Long-lived client tokens: stored only as a bcrypt hash so that deleting the
       hash invalidates the token independently of its (absent) expiry. A JWT
       is longer than bcrypt's 72-byte input limit, so the token is reduced
       with SHA-256 first and the hex digest is what bcrypt sees.

  Client secrets: must be recoverable (operators can read them back), so they
       are encrypted, not hashed. Key = scrypt(master secret, fixed salt) ->
       32 bytes; cipher = AES-256-CTR with a fresh random 16-byte IV per
       secret. Storage format: <iv hex>|.|<ciphertext hex>.

  JWT: python-jose with HS256. Claims: sub (identifying name), subject_id,
       subject_type, iat, and exp for short-lived tokens. Long-lived tokens
       carry a random jti instead of exp.

Every function takes its secret explicitly. Nothing here reads settings, so
the engine can be embedded with secrets from any source.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import SecretDecryptionError, TokenError
from auth.models import Principal, SubjectType

logger = logging.getLogger("gatehouse.tokens")

BCRYPT_ROUNDS = 10
SECRET_SEPARATOR = "|.|"

_ALGORITHM = "HS256"
_KDF_SALT = b"salt"
_IV_BYTES = 16
_ALPHANUMERIC = string.ascii_letters + string.digits

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt refuses inputs longer than 72 bytes; the API layer caps password
    length below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash. Never raises."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def hash_long_lived_token(token: str) -> str:
    return hash_password(hashlib.sha256(token.encode("utf-8")).hexdigest())


def verify_long_lived_token(token: str, hashed: str) -> bool:
    return verify_password(hashlib.sha256(token.encode("utf-8")).hexdigest(), hashed)


# ---------------------------------------------------------------------------
# Client secret encryption
# ---------------------------------------------------------------------------


@lru_cache(maxsize=8)
def _derive_key(master_secret: str) -> bytes:
    """scrypt(master_secret, fixed salt) -> 32-byte AES key.

    Memoized: the derivation is deliberately slow and a pure function of the
    master secret.
    """
    kdf = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(master_secret.encode("utf-8"))


def encrypt_secret(plain: str, master_secret: str) -> str:
    """Encrypt a client secret. Returns '<iv hex>|.|<ciphertext hex>'."""
    iv = secrets.token_bytes(_IV_BYTES)
    encryptor = Cipher(algorithms.AES(_derive_key(master_secret)), modes.CTR(iv)).encryptor()
    ciphertext = encryptor.update(plain.encode("utf-8")) + encryptor.finalize()
    return f"{iv.hex()}{SECRET_SEPARATOR}{ciphertext.hex()}"


def decrypt_secret(stored: str, master_secret: str) -> str:
    """Reverse encrypt_secret.

    A value that is not in the storage format, or that does not decode as
    UTF-8 under this master secret, raises SecretDecryptionError: it means the
    row was corrupted or CRYPTO_SECRET changed, not that the caller erred.
    """
    parts = stored.split(SECRET_SEPARATOR)
    if len(parts) != 2:
        raise SecretDecryptionError("Stored client secret is malformed")
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
        decryptor = Cipher(algorithms.AES(_derive_key(master_secret)), modes.CTR(iv)).decryptor()
        return (decryptor.update(ciphertext) + decryptor.finalize()).decode("utf-8")
    except ValueError as exc:
        # bytes.fromhex, a wrong IV length and UnicodeDecodeError are all ValueErrors
        raise SecretDecryptionError(original_error=exc) from exc


# ---------------------------------------------------------------------------
# Random credentials
# ---------------------------------------------------------------------------


def generate_secret(length: int = 32) -> str:
    """Random alphanumeric string for generated passwords and client secrets."""
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def generate_client_id(suffix: str = "") -> str:
    """Public client identifier: 24 random hex chars followed by the configured suffix."""
    return f"{secrets.token_hex(12)}{suffix}"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def mint_token(principal: Principal, secret: str, expire_seconds: int | None = None) -> str:
    """Encode a signed JWT for the given subject.

    expire_seconds=None mints a long-lived token: no exp claim, a random jti
    so every issued token is distinct. Callers store hash_long_lived_token()
    of it and hand the plaintext out exactly once.
    """
    now = datetime.now(timezone.utc)
    payload: dict = {
        "sub": principal.name,
        "subject_id": principal.subject_id,
        "subject_type": principal.subject_type.value,
        "iat": now,
    }
    if expire_seconds is None:
        payload["jti"] = secrets.token_hex(8)
    else:
        payload["exp"] = now + timedelta(seconds=expire_seconds)
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def verify_token(token: str, secret: str) -> Principal:
    """Verify signature and expiry; return the embedded Principal.

    Raises TokenError on any failure. The caller decides whether that means
    "anonymous" (public routes) or 401 (guarded routes).
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenError("Token has expired", original_error=exc) from exc
    except JWTError as exc:
        raise TokenError(original_error=exc) from exc

    try:
        return Principal(
            subject_id=int(payload["subject_id"]),
            subject_type=SubjectType(payload["subject_type"]),
            name=str(payload["sub"]),
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise TokenError("Token is missing required claims", original_error=exc) from exc
