"""WebAuthn response verification delegated to py_webauthn."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from webauthn import verify_authentication_response, verify_registration_response
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import CredentialDeviceType

from .errors import CounterRegression

LOGGER = logging.getLogger(__name__)

_REGISTRATION_ERRORS = (
    InvalidRegistrationResponse,
    InvalidJSONStructure,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
)
_AUTHENTICATION_ERRORS = (
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
)


@dataclass(frozen=True)
class RegistrationVerification:
    verified: bool
    credential_id: Optional[str] = None
    public_key: Optional[bytes] = None
    sign_count: int = 0
    multi_device: bool = False
    backed_up: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class AuthenticationVerification:
    verified: bool
    new_sign_count: int = 0
    reason: Optional[str] = None


class WebAuthnVerifier(Protocol):
    def verify_registration(
        self,
        credential: dict,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        ...

    def verify_authentication(
        self,
        credential: dict,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        public_key: bytes,
        sign_count: int,
    ) -> AuthenticationVerification:
        ...


class PyWebAuthnVerifier:
    """Verifier backed by the ``webauthn`` package.

    Library rejections come back as ``verified=False``; a rejected signature
    counter is raised as ``CounterRegression`` because retrying cannot fix it.
    """

    def __init__(self, require_user_verification: bool = False) -> None:
        self.require_user_verification = require_user_verification

    def verify_registration(
        self,
        credential: dict,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        try:
            result = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                require_user_verification=self.require_user_verification,
            )
        except _REGISTRATION_ERRORS as exc:
            LOGGER.warning("Registration response rejected: %s", exc)
            return RegistrationVerification(verified=False, reason=str(exc))
        return RegistrationVerification(
            verified=True,
            credential_id=bytes_to_base64url(result.credential_id),
            public_key=result.credential_public_key,
            sign_count=result.sign_count,
            multi_device=result.credential_device_type == CredentialDeviceType.MULTI_DEVICE,
            backed_up=result.credential_backed_up,
        )

    def verify_authentication(
        self,
        credential: dict,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        public_key: bytes,
        sign_count: int,
    ) -> AuthenticationVerification:
        try:
            result = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                credential_public_key=public_key,
                credential_current_sign_count=sign_count,
                require_user_verification=self.require_user_verification,
            )
        except _AUTHENTICATION_ERRORS as exc:
            if "sign count" in str(exc).lower():
                LOGGER.error("Signature counter rejected by verifier: %s", exc)
                raise CounterRegression(str(exc)) from exc
            LOGGER.warning("Authentication response rejected: %s", exc)
            return AuthenticationVerification(verified=False, reason=str(exc))
        return AuthenticationVerification(verified=True, new_sign_count=result.new_sign_count)
