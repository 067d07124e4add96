"""PRF-bound passkey vault: WebAuthn ceremonies plus an encrypted per-user blob."""

from .app import create_app
from .ceremonies import AuthenticationResult, CeremonyOrchestrator, RegistrationResult
from .config import VaultSettings
from .keys import DerivedKey, KeyLifetime, derive_key
from .vault import BlobVault

__all__ = [
    "create_app",
    "AuthenticationResult",
    "BlobVault",
    "CeremonyOrchestrator",
    "DerivedKey",
    "KeyLifetime",
    "RegistrationResult",
    "VaultSettings",
    "derive_key",
]
