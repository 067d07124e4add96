"""Database models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(128))
    user_handle: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # Fixed once written: every stored blob is bound to keys derived with it.
    prf_salt: Mapped[Optional[bytes]] = mapped_column(LargeBinary(32), nullable=True)
    blob_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    blob_nonce: Mapped[Optional[bytes]] = mapped_column(LargeBinary(12), nullable=True)

    credentials: Mapped[List["Credential"]] = relationship(back_populates="user")


class Credential(Base):
    __tablename__ = "credential"

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    user_handle: Mapped[str] = mapped_column(String(128))
    public_key: Mapped[bytes] = mapped_column(LargeBinary)
    sign_count: Mapped[int] = mapped_column(Integer, default=0)
    backup_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    backed_up: Mapped[bool] = mapped_column(Boolean, default=False)
    transports: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_used: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped[User] = relationship(back_populates="credentials")

    @property
    def transport_list(self) -> List[str]:
        if not self.transports:
            return []
        return self.transports.split(",")


class Challenge(Base):
    """Pending ceremony challenge, used by the database challenge backend."""

    __tablename__ = "challenge"

    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary(64))
    issued_at: Mapped[float] = mapped_column()
