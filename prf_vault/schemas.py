"""Pydantic schemas for request/response payloads."""

from __future__ import annotations

import binascii
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from webauthn.helpers import base64url_to_bytes


def _decode_b64url(value: Optional[str]) -> Optional[bytes]:
    if value is None:
        return None
    try:
        return base64url_to_bytes(value)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("must be base64url encoded") from exc


class RegisterOptionsRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=128)


class CeremonyVerifyRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    credential: dict


class AuthenticateOptionsRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)


class BlobRequest(BaseModel):
    """Blob operations carry the PRF output, never a derived key.

    With session-scoped keys the client may instead send the ``session_token``
    returned by a successful authentication.
    """

    username: str = Field(min_length=1, max_length=128)
    prf_output: Optional[str] = None
    session_token: Optional[str] = Field(default=None, min_length=1, max_length=128)

    @field_validator("prf_output")
    @classmethod
    def check_prf_output(cls, value: Optional[str]) -> Optional[str]:
        _decode_b64url(value)
        return value

    def prf_bytes(self) -> Optional[bytes]:
        return _decode_b64url(self.prf_output)


class BlobStoreRequest(BlobRequest):
    plaintext: str

    @field_validator("plaintext")
    @classmethod
    def check_plaintext(cls, value: str) -> str:
        _decode_b64url(value)
        return value

    def plaintext_bytes(self) -> bytes:
        return _decode_b64url(self.plaintext)


class BlobExistsRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)


class VaultResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[dict] = None
