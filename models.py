"""ORM model definitions describing the venue, seat and reservation schema."""

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def new_id():
    return str(uuid.uuid4())


class UserRole(str, enum.Enum):
    USER = 'user'
    ADMIN = 'admin'


class VenueCategory(str, enum.Enum):
    TECH = 'tech'
    CAFE = 'cafe'
    RESTAURANT = 'restaurant'


class SeatType(str, enum.Enum):
    STANDARD = 'standard'
    PREMIUM = 'premium'
    ACCESSIBLE = 'accessible'


class SeatStatus(str, enum.Enum):
    """Admin-controlled seat states; live occupancy comes from reservations."""
    AVAILABLE = 'available'
    OCCUPIED = 'occupied'
    DISABLED = 'disabled'


class ReservationStatus(str, enum.Enum):
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class User(Base):
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255))
    role = Column(_enum(UserRole, 'user_role_enum'), default=UserRole.USER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    reservations = relationship('Reservation', back_populates='user')

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "createdAt": isoformat(self.created_at),
        }


class Venue(Base):
    __tablename__ = 'venues'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False)
    description = Column(Text)
    capacity = Column(Integer, default=0, nullable=False)
    open_time = Column(String(5), default='09:00', nullable=False)
    close_time = Column(String(5), default='22:00', nullable=False)
    image_url = Column(String(512))
    category = Column(_enum(VenueCategory, 'venue_category_enum'), default=VenueCategory.TECH, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    seats = relationship('Seat', back_populates='venue')
    reservations = relationship('Reservation', back_populates='venue')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "description": self.description,
            "capacity": self.capacity,
            "openTime": self.open_time,
            "closeTime": self.close_time,
            "imageUrl": self.image_url,
            "category": self.category.value,
            "createdAt": isoformat(self.created_at),
        }


class Seat(Base):
    __tablename__ = 'seats'

    id = Column(String(36), primary_key=True, default=new_id)
    venue_id = Column(String(36), ForeignKey('venues.id'), nullable=False)
    row = Column(String(32), nullable=False)
    col = Column(String(32), nullable=False)
    type = Column(_enum(SeatType, 'seat_type_enum'), default=SeatType.STANDARD, nullable=False)
    status = Column(_enum(SeatStatus, 'seat_status_enum'), default=SeatStatus.AVAILABLE, nullable=False)
    # Denormalized pointer to the reservation currently holding the seat
    active_reservation_id = Column(String(36))
    reserved_until = Column(DateTime(timezone=True))
    x = Column(Float)
    y = Column(Float)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    venue = relationship('Venue', back_populates='seats')

    __table_args__ = (
        UniqueConstraint('venue_id', 'row', 'col', name='uq_seats_venue_row_col'),
        Index('idx_seats_venue_status', 'venue_id', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "venueId": self.venue_id,
            "row": self.row,
            "col": self.col,
            "type": self.type.value,
            "status": self.status.value,
            "x": self.x,
            "y": self.y,
        }


class Reservation(Base):
    __tablename__ = 'reservations'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False)
    venue_id = Column(String(36), ForeignKey('venues.id'), nullable=False)
    seat_id = Column(String(36), ForeignKey('seats.id'), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(_enum(ReservationStatus, 'reservation_status_enum'),
                    default=ReservationStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship('User', back_populates='reservations')
    venue = relationship('Venue', back_populates='reservations')
    seat = relationship('Seat')

    __table_args__ = (
        Index('idx_reservations_user_status', 'user_id', 'status'),
        Index('idx_reservations_venue_status_end', 'venue_id', 'status', 'end_time'),
        # At most one active reservation per seat
        Index(
            'uq_reservations_active_seat', 'seat_id', unique=True,
            postgresql_where=status == ReservationStatus.ACTIVE,
            sqlite_where=status == ReservationStatus.ACTIVE,
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "venueId": self.venue_id,
            "seatId": self.seat_id,
            "startTime": isoformat(self.start_time),
            "endTime": isoformat(self.end_time),
            "durationMinutes": self.duration_minutes,
            "status": self.status.value,
            "createdAt": isoformat(self.created_at),
        }
