"""Flask application exposing the ceremony and blob endpoints."""

from __future__ import annotations

import json
import logging
import secrets
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError
from webauthn.helpers import bytes_to_base64url

from .blobs import BlobStore, FileBlobStore
from .ceremonies import CeremonyOrchestrator
from .challenges import ChallengeCache, ChallengeStore, DatabaseChallengeStore
from .config import VaultSettings
from .database import Database
from .errors import PrfUnavailable, VaultError
from .keys import DerivedKey, KeyLifetime, SessionKeyCache
from .schemas import (
    AuthenticateOptionsRequest,
    BlobExistsRequest,
    BlobRequest,
    BlobStoreRequest,
    CeremonyVerifyRequest,
    RegisterOptionsRequest,
    VaultResponse,
)
from .vault import BlobVault
from .verifier import PyWebAuthnVerifier, WebAuthnVerifier

LOGGER = logging.getLogger(__name__)

STAGE_LABELS = {
    "register": "Register",
    "authn": "Authenticate",
    "blob": "Blob",
}

EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.rejected"): "Registration Rejected",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.rejected"): "Authentication Rejected",
    ("authn", "verify.success"): "Authentication Completed",
    ("authn", "verify.no_prf"): "Authenticator Returned No PRF Output",
    ("blob", "store.start"): "Encrypting Blob",
    ("blob", "store.success"): "Blob Stored",
    ("blob", "exists"): "Checked Blob",
    ("blob", "retrieve.start"): "Retrieving Blob",
    ("blob", "retrieve.success"): "Blob Decrypted",
}


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": req}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def _log(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True)
    message = f"[PRF Vault: {stage_label}]: {event_label}\n{payload}"
    LOGGER.log(level, message)


def _build_challenge_store(settings: VaultSettings, db: Database) -> ChallengeStore:
    if settings.challenge_backend == "database":
        return DatabaseChallengeStore(db, ttl=settings.challenge_ttl_seconds)
    return ChallengeCache(ttl=settings.challenge_ttl_seconds)


def _ok(data: dict):
    return jsonify(VaultResponse(success=True, data=data).model_dump())


def create_app(
    settings: VaultSettings | None = None,
    verifier: Optional[WebAuthnVerifier] = None,
    blob_store: Optional[BlobStore] = None,
) -> Flask:
    settings = settings or VaultSettings()
    db = Database(settings)
    db.create_all()
    orchestrator = CeremonyOrchestrator(
        settings,
        db,
        _build_challenge_store(settings, db),
        verifier or PyWebAuthnVerifier(settings.require_user_verification),
    )
    vault = BlobVault(db, blob_store if blob_store is not None else FileBlobStore(settings.blob_dir))
    lifetime = KeyLifetime(settings.key_lifetime)
    session_keys = SessionKeyCache(ttl=settings.session_key_ttl_seconds)

    app = Flask(__name__)
    CORS(app)
    app.extensions["prf_vault"] = {
        "settings": settings,
        "db": db,
        "orchestrator": orchestrator,
        "vault": vault,
        "session_keys": session_keys,
    }

    def resolve_key(payload: BlobRequest) -> DerivedKey:
        # Keys derived from a caller-supplied PRF output are used once and
        # never cached; only /authenticate/verify opens a session.
        prf_output = payload.prf_bytes()
        if prf_output is not None:
            return vault.user_key(payload.username, prf_output)
        if lifetime is not KeyLifetime.SESSION:
            raise PrfUnavailable()
        if payload.session_token is None:
            raise PrfUnavailable("Send the PRF output or a session token from /authenticate/verify")
        cached = session_keys.get(payload.session_token, payload.username)
        if cached is None:
            raise PrfUnavailable("Session expired or unknown; authenticate again")
        return cached

    @app.post("/register/options")
    def register_options():
        payload = RegisterOptionsRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("register", "options.start", req_id, user=payload.username, display=payload.display_name)
        options = orchestrator.begin_registration(payload.username, payload.display_name)
        _log(
            "register",
            "options.success",
            req_id,
            user=payload.username,
            user_handle=options["user"]["id"],
            excluded=len(options.get("excludeCredentials", [])),
        )
        return _ok(options)

    @app.post("/register/verify")
    def register_verify():
        payload = CeremonyVerifyRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("register", "verify.start", req_id, user=payload.username)
        result = orchestrator.complete_registration(payload.username, payload.credential)
        if not result.verified:
            _log("register", "verify.rejected", req_id, user=payload.username, level=logging.WARNING)
            return jsonify(
                VaultResponse(
                    success=False,
                    message="Registration could not be verified",
                    data={"verified": False},
                ).model_dump()
            )
        _log(
            "register",
            "verify.success",
            req_id,
            user=payload.username,
            credential_id=result.credential_id,
            prf_enabled=result.prf_enabled,
        )
        return _ok(
            {
                "verified": True,
                "credential_id": result.credential_id,
                "prf_enabled": result.prf_enabled,
            }
        )

    @app.post("/authenticate/options")
    def authenticate_options():
        payload = AuthenticateOptionsRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("authn", "options.start", req_id, user=payload.username)
        options = orchestrator.begin_authentication(payload.username)
        _log(
            "authn",
            "options.success",
            req_id,
            user=payload.username,
            credential_count=len(options.get("allowCredentials", [])),
        )
        return _ok(options)

    @app.post("/authenticate/verify")
    def authenticate_verify():
        payload = CeremonyVerifyRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("authn", "verify.start", req_id, user=payload.username)
        result = orchestrator.complete_authentication(payload.username, payload.credential)
        if not result.verified:
            _log("authn", "verify.rejected", req_id, user=payload.username, level=logging.WARNING)
            return jsonify(
                VaultResponse(
                    success=False,
                    message="Authentication could not be verified",
                    data={"verified": False},
                ).model_dump()
            )
        session_token = None
        if result.prf_output is None:
            _log("authn", "verify.no_prf", req_id, user=payload.username, level=logging.WARNING)
        elif lifetime is KeyLifetime.SESSION:
            session_token = session_keys.issue(
                payload.username, vault.user_key(payload.username, result.prf_output)
            )
        _log(
            "authn",
            "verify.success",
            req_id,
            user=payload.username,
            credential_id=result.credential_id,
            sign_count=result.sign_count,
            session_opened=session_token is not None,
        )
        data = {
            "verified": True,
            "credential_id": result.credential_id,
            "sign_count": result.sign_count,
            "prf_available": result.prf_available,
            "key_lifetime": lifetime.value,
        }
        if session_token is not None:
            data["session_token"] = session_token
        return _ok(data)

    @app.post("/blob/store")
    def blob_store_route():
        payload = BlobStoreRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("blob", "store.start", req_id, user=payload.username)
        pointer = vault.encrypt_and_store(payload.username, resolve_key(payload), payload.plaintext_bytes())
        _log("blob", "store.success", req_id, user=payload.username, pointer=pointer)
        return _ok({"pointer": pointer})

    @app.post("/blob/exists")
    def blob_exists():
        payload = BlobExistsRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        exists = vault.check_exists(payload.username)
        _log("blob", "exists", req_id, user=payload.username, exists=exists)
        return _ok({"exists": exists})

    @app.post("/blob/retrieve")
    def blob_retrieve():
        payload = BlobRequest.model_validate(request.get_json(silent=True) or {})
        req_id = secrets.token_hex(4)
        _log("blob", "retrieve.start", req_id, user=payload.username)
        plaintext = vault.retrieve_and_decrypt(payload.username, resolve_key(payload))
        _log("blob", "retrieve.success", req_id, user=payload.username, size=len(plaintext))
        return _ok({"plaintext": bytes_to_base64url(plaintext)})

    @app.errorhandler(VaultError)
    def handle_vault_error(error: VaultError):
        level = logging.ERROR if not error.retryable else logging.INFO
        LOGGER.log(level, "Request failed [%s]: %s", error.code, error)
        body = VaultResponse(success=False, message=str(error), error=error.code)
        return jsonify(body.model_dump()), error.status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        body = VaultResponse(
            success=False,
            message="Invalid request payload",
            error="invalid_request",
            data={"errors": json.loads(error.json())},
        )
        return jsonify(body.model_dump()), 400

    @app.errorhandler(400)
    def handle_bad_request(error):
        message = getattr(error, "description", "Bad Request")
        return (
            jsonify(VaultResponse(success=False, message=message, error="bad_request").model_dump()),
            400,
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
