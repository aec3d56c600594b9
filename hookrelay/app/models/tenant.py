from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.app.db import Base


class TenantRecord(Base):
    """One subscriber identity, keyed by its secret."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True, default=None)
    max_connections: Mapped[int | None] = mapped_column(
        Integer, nullable=True, default=None
    )  # None -> settings.max_connections_per_secret
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    last_used_at: Mapped[str | None] = mapped_column(String, nullable=True, default=None)

    # Set by an administrator block, cleared on unblock/enable
    disabled_reason: Mapped[str | None] = mapped_column(String, nullable=True, default=None)
    disabled_at: Mapped[str | None] = mapped_column(String, nullable=True, default=None)
