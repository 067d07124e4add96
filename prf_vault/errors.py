"""Error taxonomy shared by the ceremony and vault layers."""

from __future__ import annotations


class VaultError(RuntimeError):
    """Base class for structured vault failures.

    ``code`` is the stable identifier returned to callers, ``retryable`` tells
    them whether repeating the same request can change the outcome.
    """

    code = "vault_error"
    status = 400
    retryable = True

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)


class NotFound(VaultError):
    code = "not_found"
    status = 404


class ChallengeMissing(NotFound):
    """No pending challenge for this ceremony"""

    code = "challenge_missing"
    status = 400


class UserMissing(NotFound):
    """Unknown user"""

    code = "user_missing"


class NoCredentials(NotFound):
    """No passkeys registered for user"""

    code = "no_credentials"


class CredentialMissing(NotFound):
    """Unknown credential"""

    code = "credential_missing"


class SaltMissing(NotFound):
    """No PRF salt stored for user"""

    code = "salt_missing"


class NoBlob(NotFound):
    """Nothing has been encrypted for this user yet"""

    code = "no_blob"


class InconsistentState(VaultError):
    code = "inconsistent_state"
    status = 409
    retryable = False


class BlobNotFound(InconsistentState):
    """Blob record exists but the stored object is missing"""

    code = "blob_not_found"


class CounterRegression(VaultError):
    """Signature counter did not advance; the authenticator may be cloned"""

    code = "counter_regression"
    status = 409
    retryable = False


class DecryptionFailed(VaultError):
    """Blob could not be decrypted with the derived key (PRF salt drift?)"""

    code = "decryption_failed"
    status = 422
    retryable = False


class InvalidKeyMaterial(VaultError):
    """PRF output and salt must both be 32 bytes"""

    code = "invalid_key_material"
    status = 422
    retryable = False


class PrfUnavailable(VaultError):
    """No PRF output supplied and no session key cached"""

    code = "prf_unavailable"
    status = 400
