"""Row-level operations on users, passkeys and the per-user blob record."""

from __future__ import annotations

import logging
import secrets
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from webauthn.helpers import bytes_to_base64url

from .errors import UserMissing
from .models import Credential, User, utcnow

LOGGER = logging.getLogger(__name__)

PRF_SALT_SIZE = 32
USER_HANDLE_SIZE = 32


def _generate_user_handle() -> str:
    return bytes_to_base64url(secrets.token_bytes(USER_HANDLE_SIZE))


def ensure_user(session: Session, username: str, display_name: Optional[str] = None) -> User:
    user = get_user(session, username)
    if user:
        if display_name and user.display_name != display_name:
            user.display_name = display_name
        return user
    handle = _generate_user_handle()
    while session.scalar(select(User).where(User.user_handle == handle)):
        handle = _generate_user_handle()
    user = User(username=username, display_name=display_name or username, user_handle=handle)
    session.add(user)
    session.flush()
    LOGGER.debug("Created user %s (id=%s)", username, user.id)
    return user


def get_user(session: Session, username: str) -> User | None:
    return session.scalar(select(User).where(User.username == username))


def require_user(session: Session, username: str) -> User:
    user = get_user(session, username)
    if user is None:
        raise UserMissing(f"Unknown user {username!r}")
    return user


def list_credentials(session: Session, user: User) -> List[Credential]:
    return list(session.scalars(select(Credential).where(Credential.user_id == user.id)))


def get_credential(session: Session, credential_id: str) -> Credential | None:
    return session.get(Credential, credential_id)


def store_credential(
    session: Session,
    user: User,
    credential_id: str,
    public_key: bytes,
    sign_count: int,
    user_handle: Optional[str] = None,
    backup_eligible: bool = False,
    backed_up: bool = False,
    transports: Optional[Iterable[str]] = None,
) -> Credential:
    transport_values = list(transports or [])
    credential = Credential(
        id=credential_id,
        user_id=user.id,
        user_handle=user_handle or user.user_handle,
        public_key=public_key,
        sign_count=sign_count,
        backup_eligible=backup_eligible,
        backed_up=backed_up,
        transports=",".join(transport_values) if transport_values else None,
    )
    session.add(credential)
    session.flush()
    return credential


def update_sign_count(session: Session, credential: Credential, sign_count: int) -> None:
    credential.sign_count = sign_count
    credential.last_used = utcnow()
    session.flush()


def ensure_prf_salt(session: Session, user: User) -> bytes:
    """Return the user's PRF salt, generating it the first time.

    The write only applies while the column is still NULL, so two racing
    callers end up agreeing on whichever salt landed first.
    """
    if user.prf_salt is not None:
        return user.prf_salt
    candidate = secrets.token_bytes(PRF_SALT_SIZE)
    session.execute(
        update(User)
        .where(User.id == user.id, User.prf_salt.is_(None))
        .values(prf_salt=candidate)
        .execution_options(synchronize_session=False)
    )
    session.refresh(user, attribute_names=["prf_salt"])
    LOGGER.info("Generated PRF salt for user id=%s", user.id)
    return user.prf_salt


def save_blob_reference(session: Session, user: User, blob_key: str, nonce: bytes) -> None:
    # Pointer and nonce travel in one statement so readers never see a mixed pair.
    session.execute(
        update(User)
        .where(User.id == user.id)
        .values(blob_key=blob_key, blob_nonce=nonce)
        .execution_options(synchronize_session=False)
    )
    session.refresh(user, attribute_names=["blob_key", "blob_nonce"])


def get_blob_reference(session: Session, user: User) -> Optional[Tuple[str, bytes]]:
    row = session.execute(
        select(User.blob_key, User.blob_nonce).where(User.id == user.id)
    ).first()
    if row is None or row.blob_key is None or row.blob_nonce is None:
        return None
    return row.blob_key, row.blob_nonce
