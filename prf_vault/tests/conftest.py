from __future__ import annotations

from pathlib import Path
import sys
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prf_vault.blobs import MemoryBlobStore
from prf_vault.ceremonies import CeremonyOrchestrator
from prf_vault.challenges import ChallengeCache
from prf_vault.config import VaultSettings
from prf_vault.database import Database
from prf_vault.vault import BlobVault
from prf_vault.verifier import (
    AuthenticationVerification,
    PyWebAuthnVerifier,
    RegistrationVerification,
)
from softauthn import SoftAuthenticator

ORIGIN = "http://localhost:5173"


class FakeVerifier:
    """Accepts any response whose ``challenge`` field matches the expected bytes.

    Registration responses carry ``id``/``publicKey``/``signCount``;
    authentication responses carry ``signCount``.
    """

    def __init__(self) -> None:
        self.calls: List[dict] = []

    def verify_registration(self, credential, expected_challenge, expected_origin, expected_rp_id):
        self.calls.append({"kind": "register", "challenge": expected_challenge, "origin": expected_origin})
        if credential.get("challenge") != expected_challenge:
            return RegistrationVerification(verified=False, reason="challenge mismatch")
        return RegistrationVerification(
            verified=True,
            credential_id=credential["id"],
            public_key=credential.get("publicKey", b"cose-key"),
            sign_count=credential.get("signCount", 0),
            multi_device=credential.get("multiDevice", False),
            backed_up=credential.get("backedUp", False),
        )

    def verify_authentication(
        self,
        credential,
        expected_challenge,
        expected_origin,
        expected_rp_id,
        public_key,
        sign_count,
    ):
        self.calls.append(
            {"kind": "authenticate", "challenge": expected_challenge, "stored_count": sign_count}
        )
        if credential.get("challenge") != expected_challenge:
            return AuthenticationVerification(verified=False, reason="challenge mismatch")
        return AuthenticationVerification(verified=True, new_sign_count=credential["signCount"])


@pytest.fixture
def settings(tmp_path: Path) -> VaultSettings:
    return VaultSettings(
        database_url=f"sqlite:///{tmp_path / 'vault.db'}",
        blob_dir=str(tmp_path / "blobs"),
        rp_id="localhost",
        origin=ORIGIN,
    )


@pytest.fixture
def db(settings: VaultSettings) -> Database:
    database = Database(settings)
    database.create_all()
    return database


@pytest.fixture
def challenges() -> ChallengeCache:
    return ChallengeCache()


@pytest.fixture
def orchestrator(settings, db, challenges) -> CeremonyOrchestrator:
    return CeremonyOrchestrator(settings, db, challenges, PyWebAuthnVerifier())


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def fake_orchestrator(settings, db, challenges, fake_verifier) -> CeremonyOrchestrator:
    return CeremonyOrchestrator(settings, db, challenges, fake_verifier)


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def vault(db, blob_store) -> BlobVault:
    return BlobVault(db, blob_store)


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator(origin=ORIGIN)


def register(
    orchestrator: CeremonyOrchestrator,
    authenticator: SoftAuthenticator,
    username: str,
    display_name: Optional[str] = None,
):
    options = orchestrator.begin_registration(username, display_name)
    credential = authenticator.make_credential(options)
    return orchestrator.complete_registration(username, credential)


def authenticate(orchestrator: CeremonyOrchestrator, authenticator: SoftAuthenticator, username: str, **kwargs):
    options = orchestrator.begin_authentication(username)
    assertion = authenticator.get_assertion(options, **kwargs)
    return orchestrator.complete_authentication(username, assertion)
