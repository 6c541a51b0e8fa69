"""Failed login counters keyed by a hashed username."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ltcms.core.database import Base


class LoginAttempt(Base):
    """Consecutive failed logins for one username.

    The key is an HMAC of the normalized username so the table does not list
    which accounts were targeted. Rows are removed on a successful login.
    """

    __tablename__ = "login_attempts"

    username_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
