"""Revoked bearer tokens - survives process restarts."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from ltcms.core.database import Base


class TokenBlacklist(Base):
    """A revoked bearer token identified by the SHA-256 of its compact form.

    Entries are created on logout and swept once ``expires_at`` has passed,
    since the token would be rejected as expired from then on anyway.
    """

    __tablename__ = "token_blacklist"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
