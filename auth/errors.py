"""
auth/errors.py -- Error taxonomy for the authorization engine.

Every rejection the engine produces is an AuthError subclass carrying a stable
numeric code, an HTTP status and a human-readable message. Low-level failures
(SQLAlchemy, cryptography) ride along as original_error so operators can see
them in the logs; the API layer never renders original_error to clients.

Code layout: the first three digits mirror the HTTP status, the last three
identify the case. 200000 is the success code used by response envelopes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

SUCCESS_CODE = 200000


class AuthError(Exception):
    """Base class. Subclasses set status_code and default_code."""

    status_code: int = 500
    default_code: int = 500000
    default_message: str = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        code: int | None = None,
        *,
        original_error: BaseException | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Client-visible payload. Deliberately excludes original_error."""
        return {"code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class ConfigurationError(AuthError):
    """A guard or bootstrap misconfiguration: unregistered route, malformed
    permission expression, unreadable schema, undecryptable stored secret."""

    status_code = 403
    default_code = 403200
    default_message = "Bad guard input"


class SchemaAuditError(ConfigurationError):
    status_code = 500
    default_code = 500100
    default_message = "Schema audit failed"


class SecretDecryptionError(ConfigurationError):
    """A stored client secret is malformed or was encrypted under another CRYPTO_SECRET."""

    status_code = 500
    default_code = 500200
    default_message = "Stored client secret cannot be decrypted"


class AuthenticationError(AuthError):
    status_code = 401
    default_code = 401000
    default_message = "Authentication required"


class TokenError(AuthenticationError):
    default_code = 401001
    default_message = "Incorrect token"


class LockedError(AuthenticationError):
    default_code = 401300
    default_message = "Subject is temporarily locked after too many failed attempts"


class AuthorizationError(AuthError):
    status_code = 403
    default_code = 403100
    default_message = "Subject not authorized"


class NotFoundError(AuthError):
    status_code = 404
    default_code = 404000
    default_message = "Not found"


class ConflictError(AuthError):
    status_code = 409
    default_code = 409000
    default_message = "Already exists"


class InvalidRequestError(AuthError):
    status_code = 400
    default_code = 400001
    default_message = "Invalid request"


class StoreError(AuthError):
    status_code = 500
    default_code = 500000
    default_message = "Data store failure"
