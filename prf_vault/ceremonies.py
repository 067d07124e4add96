"""Registration and authentication ceremonies with the PRF extension."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .challenges import ChallengeStore
from .config import VaultSettings
from .credentials import (
    ensure_prf_salt,
    ensure_user,
    get_credential,
    list_credentials,
    require_user,
    store_credential,
    update_sign_count,
)
from .database import Database
from .errors import ChallengeMissing, CounterRegression, CredentialMissing, NoCredentials
from .keys import PRF_OUTPUT_SIZE
from .models import Credential
from .verifier import WebAuthnVerifier

LOGGER = logging.getLogger(__name__)

REGISTER = "register"
AUTHENTICATE = "authenticate"

_KNOWN_TRANSPORTS = {transport.value for transport in AuthenticatorTransport}


@dataclass(frozen=True)
class RegistrationResult:
    verified: bool
    credential_id: Optional[str] = None
    prf_enabled: Optional[bool] = None


@dataclass(frozen=True)
class AuthenticationResult:
    verified: bool
    credential_id: Optional[str] = None
    sign_count: Optional[int] = None
    prf_output: Optional[bytes] = None

    @property
    def prf_available(self) -> bool:
        return self.prf_output is not None


def _descriptors(credentials: List[Credential]) -> List[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(cred.id),
            transports=[
                AuthenticatorTransport(t) for t in cred.transport_list if t in _KNOWN_TRANSPORTS
            ]
            or None,
        )
        for cred in credentials
    ]


def _extension_results(credential: Dict[str, Any]) -> Dict[str, Any]:
    results = credential.get("clientExtensionResults") or {}
    prf = results.get("prf") if isinstance(results, dict) else None
    return prf if isinstance(prf, dict) else {}


def extract_prf_output(credential: Dict[str, Any]) -> Optional[bytes]:
    """Return ``prf.results.first`` from an assertion, if the client sent one.

    Extension output is not covered by the assertion signature, so anything
    other than a well-formed 32-byte result is treated as no PRF output.
    """
    results = _extension_results(credential).get("results")
    if results is None:
        return None
    if not isinstance(results, dict):
        LOGGER.warning("Ignoring PRF results of type %s", type(results).__name__)
        return None
    first = results.get("first")
    if first is None or first == "" or first == []:
        return None
    try:
        if isinstance(first, str):
            output = base64url_to_bytes(first)
        elif isinstance(first, list):
            output = bytes(first)
        else:
            raise TypeError(f"unsupported PRF result type {type(first).__name__}")
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Ignoring malformed PRF result in client extension output: %s", exc)
        return None
    if len(output) != PRF_OUTPUT_SIZE:
        LOGGER.warning("Ignoring %d-byte PRF result; expected %d", len(output), PRF_OUTPUT_SIZE)
        return None
    return output


def check_sign_count(stored: int, reported: int) -> None:
    """Counters must strictly advance unless the authenticator never counts."""
    if stored == 0 and reported == 0:
        return
    if reported <= stored:
        raise CounterRegression(
            f"Signature counter went from {stored} to {reported}; credential may be cloned"
        )


class CeremonyOrchestrator:
    def __init__(
        self,
        settings: VaultSettings,
        db: Database,
        challenges: ChallengeStore,
        verifier: WebAuthnVerifier,
    ) -> None:
        self.settings = settings
        self.db = db
        self.challenges = challenges
        self.verifier = verifier

    @property
    def _user_verification(self) -> UserVerificationRequirement:
        if self.settings.require_user_verification:
            return UserVerificationRequirement.REQUIRED
        return UserVerificationRequirement.PREFERRED

    # Registration ------------------------------------------------------
    def begin_registration(self, username: str, display_name: Optional[str] = None) -> Dict[str, Any]:
        with self.db.session() as session:
            user = ensure_user(session, username, display_name)
            exclude = _descriptors(list_credentials(session, user))
            user_handle = user.user_handle
            user_display = user.display_name
        challenge = self.challenges.issue(REGISTER, username)
        options = generate_registration_options(
            rp_id=self.settings.rp_id,
            rp_name=self.settings.rp_name,
            user_name=username,
            user_id=base64url_to_bytes(user_handle),
            user_display_name=user_display,
            challenge=challenge,
            timeout=self.settings.ceremony_timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=self._user_verification,
            ),
            exclude_credentials=exclude,
        )
        payload = json.loads(options_to_json(options))
        # Registration only switches PRF on; outputs come with authentication.
        payload["extensions"] = {"prf": {}}
        return payload

    def complete_registration(self, username: str, credential: Dict[str, Any]) -> RegistrationResult:
        challenge = self.challenges.consume(REGISTER, username)
        if challenge is None:
            raise ChallengeMissing(f"No pending registration for {username!r}")
        with self.db.session() as session:
            user = require_user(session, username)
            verification = self.verifier.verify_registration(
                credential,
                expected_challenge=challenge,
                expected_origin=self.settings.origin,
                expected_rp_id=self.settings.rp_id,
            )
            if not verification.verified:
                return RegistrationResult(verified=False)
            if get_credential(session, verification.credential_id) is not None:
                LOGGER.warning("Credential %s is already registered", verification.credential_id)
                return RegistrationResult(verified=False, credential_id=verification.credential_id)
            response = credential.get("response") or {}
            store_credential(
                session,
                user,
                credential_id=verification.credential_id,
                public_key=verification.public_key,
                sign_count=verification.sign_count,
                user_handle=response.get("userHandle"),
                backup_eligible=verification.multi_device,
                backed_up=verification.backed_up,
                transports=[t for t in response.get("transports") or [] if isinstance(t, str)],
            )
            ensure_prf_salt(session, user)
        prf_enabled = _extension_results(credential).get("enabled")
        return RegistrationResult(
            verified=True,
            credential_id=verification.credential_id,
            prf_enabled=bool(prf_enabled) if prf_enabled is not None else None,
        )

    # Authentication ----------------------------------------------------
    def begin_authentication(self, username: str) -> Dict[str, Any]:
        with self.db.session() as session:
            user = require_user(session, username)
            credentials = list_credentials(session, user)
            if not credentials:
                raise NoCredentials(f"No passkeys registered for {username!r}")
            allow = _descriptors(credentials)
            salt = ensure_prf_salt(session, user)
        challenge = self.challenges.issue(AUTHENTICATE, username)
        options = generate_authentication_options(
            rp_id=self.settings.rp_id,
            challenge=challenge,
            timeout=self.settings.ceremony_timeout_ms,
            allow_credentials=allow,
            user_verification=self._user_verification,
        )
        payload = json.loads(options_to_json(options))
        payload["extensions"] = {"prf": {"eval": {"first": bytes_to_base64url(salt)}}}
        return payload

    def complete_authentication(self, username: str, credential: Dict[str, Any]) -> AuthenticationResult:
        challenge = self.challenges.consume(AUTHENTICATE, username)
        if challenge is None:
            raise ChallengeMissing(f"No pending authentication for {username!r}")
        credential_id = credential.get("id")
        with self.db.session() as session:
            user = require_user(session, username)
            stored = get_credential(session, credential_id) if isinstance(credential_id, str) else None
            if stored is None or stored.user_id != user.id:
                raise CredentialMissing(f"Unknown credential for {username!r}")
            verification = self.verifier.verify_authentication(
                credential,
                expected_challenge=challenge,
                expected_origin=self.settings.origin,
                expected_rp_id=self.settings.rp_id,
                public_key=stored.public_key,
                sign_count=stored.sign_count,
            )
            if not verification.verified:
                return AuthenticationResult(verified=False, credential_id=credential_id)
            try:
                check_sign_count(stored.sign_count, verification.new_sign_count)
            except CounterRegression:
                LOGGER.error("Counter regression on credential %s for user id=%s", stored.id, user.id)
                raise
            update_sign_count(session, stored, verification.new_sign_count)
            sign_count = stored.sign_count
        return AuthenticationResult(
            verified=True,
            credential_id=credential_id,
            sign_count=sign_count,
            prf_output=extract_prf_output(credential),
        )
