"""Trip inventory models: seat counters and departure point pricing."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.reservations_service.models.enums import TripAvailability, enum_values
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship


class Trip(Base):
    """A bookable travel package with a fixed seat capacity.

    ``seats_left`` and ``availability`` are written only by
    services.inventory (claim/release); nothing else may touch them.
    """

    __tablename__ = "trips"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_trips_capacity_non_negative"),
        CheckConstraint(
            "seats_left >= 0 AND seats_left <= capacity",
            name="ck_trips_seats_left_within_capacity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="PLN", nullable=False)

    capacity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    seats_left: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    availability: Mapped[TripAvailability] = mapped_column(
        SAEnum(
            TripAvailability,
            name="trip_availability_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=TripAvailability.OPEN,
        nullable=False,
    )
    # Closed by an operator; releasing seats must not reopen it.
    manually_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    departure_points: Mapped[list["DeparturePoint"]] = relationship(
        back_populates="trip", lazy="selectin", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Trip {self.slug} {self.seats_left}/{self.capacity}>"


class DeparturePoint(Base):
    """Optional per-city price variant of a trip."""

    __tablename__ = "trip_departure_points"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    trip_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("trips.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    city: Mapped[str] = mapped_column(String(128), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    trip: Mapped["Trip"] = relationship(back_populates="departure_points")
