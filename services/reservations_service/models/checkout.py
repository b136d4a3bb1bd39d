"""Checkout session and magic-link token models."""

import uuid
from datetime import datetime
from typing import Any, Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.reservations_service.models.enums import (
    CheckoutSessionStatus,
    enum_values,
)
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship


class CheckoutSession(Base):
    """Short-lived cart snapshot; the unit of an in-progress purchase.

    ``cart_snapshot`` is an ordered list of
    ``{"trip_id", "qty", "departure_point_id"?, "unit_price_cents"?}``.
    Rows are never deleted, only moved out of PENDING.
    """

    __tablename__ = "checkout_sessions"
    __table_args__ = (
        CheckConstraint("points_reserved >= 0", name="ck_checkout_points_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_email: Mapped[str] = mapped_column(String(320), index=True, nullable=False)
    cart_snapshot: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, default=list, nullable=False
    )
    # Set only by magic-link redemption or order finalization.
    bound_customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    points_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[CheckoutSessionStatus] = mapped_column(
        SAEnum(
            CheckoutSessionStatus,
            name="checkout_session_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=CheckoutSessionStatus.PENDING,
        index=True,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    tokens: Mapped[list["MagicLinkToken"]] = relationship(back_populates="session")

    @property
    def is_verified(self) -> bool:
        return self.bound_customer_id is not None

    def __repr__(self):
        return f"<CheckoutSession {self.id} {self.status.value}>"


class MagicLinkToken(Base):
    """One-time, time-boxed token binding a session to a known customer."""

    __tablename__ = "magic_link_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    session: Mapped["CheckoutSession"] = relationship(back_populates="tokens")
