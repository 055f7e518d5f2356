"""Database coordination layer encapsulating venue, seat and reservation state transitions."""

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import IntegrityError
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging

from access import Identity, can_manage_reservation, hash_password, verify_password
from errors import SeatDeskError, Conflict, NotFound, Unauthorized, ValidationError
from models import (
    Base, User, Venue, Seat, Reservation,
    UserRole, VenueCategory, SeatType, SeatStatus, ReservationStatus, isoformat,
)

logger = logging.getLogger(__name__)

ALLOWED_DURATIONS = (15, 30, 45)
ACTIVE_SEAT_INDEX = "uq_reservations_active_seat"

VENUE_FIELDS = {
    'name': 'name',
    'location': 'location',
    'description': 'description',
    'capacity': 'capacity',
    'openTime': 'open_time',
    'closeTime': 'close_time',
    'imageUrl': 'image_url',
    'category': 'category',
}

SEAT_FIELDS = {
    'row': 'row',
    'col': 'col',
    'type': 'type',
    'status': 'status',
    'x': 'x',
    'y': 'y',
}


VENUE_ENUMS = {'category': VenueCategory}
SEAT_ENUMS = {'type': SeatType, 'status': SeatStatus}


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _is_active_seat_conflict(error: IntegrityError) -> bool:
    """True when the violation is the one-active-reservation-per-seat index."""
    # PostgreSQL names the index; SQLite only names the column
    message = str(error.orig)
    return ACTIVE_SEAT_INDEX in message or "reservations.seat_id" in message


def _enable_sqlite_immediate_transactions(engine):
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two claimers both
    read a free seat before either writes. BEGIN IMMEDIATE serializes them and
    the connection timeout makes later writers wait instead of failing.
    Foreign keys are switched on so SQLite enforces them like PostgreSQL.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str):
        if database_url.startswith('sqlite'):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False
            )
            _enable_sqlite_immediate_transactions(self.engine)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            if isinstance(e, IntegrityError):
                logger.debug(f"Integrity violation: {e.orig}")
            elif not isinstance(e, SeatDeskError):
                logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()
            self.session_factory.remove()

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()

    # Users

    def create_user(self, email: str, password: str, name: Optional[str] = None,
                    role: UserRole = UserRole.USER) -> User:
        try:
            with self.get_session() as session:
                if session.query(User).filter_by(email=email).first():
                    raise Conflict("Email already registered")
                user = User(
                    email=email,
                    password_hash=hash_password(password),
                    name=name,
                    role=role,
                )
                session.add(user)
                session.flush()
                logger.info(f"Registered user {user.id} ({user.role.value})")
                return user
        except IntegrityError:
            raise Conflict("Email already registered")

    def get_user(self, user_id: str) -> Optional[User]:
        with self.get_session() as session:
            return session.get(User, user_id)

    def authenticate(self, email: str, password: str) -> User:
        with self.get_session() as session:
            user = session.query(User).filter_by(email=email).first()
            if not user or not verify_password(password, user.password_hash):
                logger.warning("Failed login attempt")
                raise Unauthorized("Invalid email or password")
            return user

    # Venues

    def create_venue(self, **fields) -> Venue:
        with self.get_session() as session:
            venue = Venue(**self._columns(fields, VENUE_FIELDS, VENUE_ENUMS))
            session.add(venue)
            session.flush()
            logger.info(f"Created venue {venue.id} ({venue.name})")
            return venue

    def get_venue(self, venue_id: str) -> Venue:
        with self.get_session() as session:
            venue = session.get(Venue, venue_id)
            if not venue:
                raise NotFound("Venue not found")
            return venue

    def update_venue(self, venue_id: str, **fields) -> Venue:
        with self.get_session() as session:
            venue = session.get(Venue, venue_id)
            if not venue:
                raise NotFound("Venue not found")
            for column, value in self._columns(fields, VENUE_FIELDS, VENUE_ENUMS).items():
                setattr(venue, column, value)
            logger.info(f"Updated venue {venue_id}: {sorted(fields)}")
            return venue

    def get_venues_with_occupancy(self, now: Optional[datetime] = None) -> List[Dict]:
        """List venues newest first, each with its count of live reservations."""
        now = _now(now)
        with self.get_session() as session:
            occupied = dict(
                session.query(Reservation.venue_id, func.count(Reservation.id))
                .filter(
                    Reservation.status == ReservationStatus.ACTIVE,
                    Reservation.end_time > now
                )
                .group_by(Reservation.venue_id)
                .all()
            )
            venues = session.query(Venue).order_by(Venue.created_at.desc()).all()
            return [
                {**venue.to_dict(), "occupiedSeats": occupied.get(venue.id, 0)}
                for venue in venues
            ]

    # Seats

    def create_seat(self, venue_id: str, **fields) -> Seat:
        try:
            with self.get_session() as session:
                if not session.get(Venue, venue_id):
                    raise NotFound("Venue not found")
                seat = Seat(venue_id=venue_id, **self._columns(fields, SEAT_FIELDS, SEAT_ENUMS))
                session.add(seat)
                session.flush()
                logger.info(f"Created seat {seat.row}{seat.col} in venue {venue_id}")
                return seat
        except IntegrityError:
            raise Conflict("A seat with this row and column already exists")

    def update_seat(self, seat_id: str, **fields) -> Seat:
        try:
            with self.get_session() as session:
                seat = session.get(Seat, seat_id)
                if not seat:
                    raise NotFound("Seat not found")
                for column, value in self._columns(fields, SEAT_FIELDS, SEAT_ENUMS).items():
                    setattr(seat, column, value)
                logger.info(f"Updated seat {seat_id}: {sorted(fields)}")
                return seat
        except IntegrityError:
            raise Conflict("A seat with this row and column already exists")

    def get_seats_with_live_status(self, venue_id: str, now: Optional[datetime] = None) -> List[Dict]:
        """Overlay live reservations onto the venue's seat grid without mutating anything."""
        now = _now(now)
        with self.get_session() as session:
            if not session.get(Venue, venue_id):
                raise NotFound("Venue not found")

            seats = session.query(Seat).filter(Seat.venue_id == venue_id).order_by(Seat.row, Seat.col).all()
            live = {
                r.seat_id: r for r in session.query(Reservation).filter(
                    Reservation.venue_id == venue_id,
                    Reservation.status == ReservationStatus.ACTIVE,
                    Reservation.end_time > now
                ).all()
            }

            seats_detail = []
            for seat in seats:
                reservation = live.get(seat.id)
                detail = seat.to_dict()
                detail["isReserved"] = reservation is not None
                detail["reservedUntil"] = isoformat(reservation.end_time) if reservation else None
                if reservation:
                    detail["status"] = SeatStatus.OCCUPIED.value
                seats_detail.append(detail)
            return seats_detail

    # Reservations

    def create_reservation(
        self,
        identity: Identity,
        venue_id: str,
        seat_id: str,
        duration_minutes: int,
        now: Optional[datetime] = None
    ) -> Reservation:
        """Claim a seat for ``duration_minutes`` in a single transaction.

        The seat row is locked before the availability check, and the partial
        unique index on active reservations rejects any claim that still slips
        through.
        """
        if duration_minutes not in ALLOWED_DURATIONS:
            raise ValidationError("durationMinutes must be one of 15, 30 or 45")

        now = _now(now)
        end_time = now + timedelta(minutes=duration_minutes)

        try:
            with self.get_session() as session:
                # Step 1: Lock the seat row (CRITICAL SECTION)
                seat = session.query(Seat).filter(
                    Seat.id == seat_id
                ).with_for_update().first()

                if not seat or seat.venue_id != venue_id:
                    raise NotFound("Seat not found")

                # Step 2: Retire reservations that ran out but were not swept yet
                session.query(Reservation).filter(
                    Reservation.seat_id == seat_id,
                    Reservation.status == ReservationStatus.ACTIVE,
                    Reservation.end_time <= now
                ).update({Reservation.status: ReservationStatus.EXPIRED}, synchronize_session=False)

                live = session.query(Reservation).filter(
                    Reservation.seat_id == seat_id,
                    Reservation.status == ReservationStatus.ACTIVE
                ).first()

                if live or seat.status != SeatStatus.AVAILABLE:
                    raise Conflict("Seat is already reserved or unavailable")

                # Step 3: Create reservation
                reservation = Reservation(
                    user_id=identity.user_id,
                    venue_id=venue_id,
                    seat_id=seat_id,
                    start_time=now,
                    end_time=end_time,
                    duration_minutes=duration_minutes,
                    status=ReservationStatus.ACTIVE,
                    created_at=now,
                )
                session.add(reservation)
                session.flush()

                # Step 4: Point the seat at its new holder
                seat.active_reservation_id = reservation.id
                seat.reserved_until = end_time

                logger.info(
                    f"Reservation {reservation.id} created: seat={seat_id} "
                    f"user={identity.user_id} until={end_time.isoformat()}"
                )
                return reservation
        except IntegrityError as e:
            if not _is_active_seat_conflict(e):
                raise
            logger.warning(f"Concurrent claim rejected for seat {seat_id}")
            raise Conflict("Seat is already reserved or unavailable")

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self.get_session() as session:
            return session.get(Reservation, reservation_id)

    def cancel_reservation(
        self,
        reservation_id: str,
        identity: Optional[Identity] = None
    ) -> Reservation:
        """Cancel an active reservation and free its seat if it still holds it.

        With an ``identity``, only the owner or an admin may cancel; anyone
        else sees the reservation as missing.
        """
        with self.get_session() as session:
            reservation = session.query(Reservation).filter(
                Reservation.id == reservation_id
            ).with_for_update().first()

            if not reservation or (identity and not can_manage_reservation(identity, reservation)):
                raise NotFound("Reservation not found or access denied")

            if reservation.status != ReservationStatus.ACTIVE:
                raise Conflict("Reservation is no longer active")

            reservation.status = ReservationStatus.CANCELLED
            self._release_seat(session, reservation)

            logger.info(
                f"Reservation {reservation_id} cancelled by "
                f"{identity.user_id if identity else 'system'}"
            )
            return reservation

    def expire_reservations(self, now: Optional[datetime] = None) -> int:
        """Mark overdue active reservations expired, returning how many were swept."""
        now = _now(now)

        with self.get_session() as session:
            released = 0
            for reservation in self._overdue_reservations(session, now):
                # A cancel may have committed since the read; only retire rows still active
                updated = session.query(Reservation).filter(
                    Reservation.id == reservation.id,
                    Reservation.status == ReservationStatus.ACTIVE
                ).update({Reservation.status: ReservationStatus.EXPIRED}, synchronize_session=False)

                if updated == 1:
                    self._release_seat(session, reservation)
                    released += 1

            if released:
                logger.info(f"Expired {released} reservations")

            return released

    def _overdue_reservations(self, session, now: datetime) -> List[Reservation]:
        return session.query(Reservation).filter(
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.end_time < now
        ).all()

    def _release_seat(self, session, reservation):
        """Internal helper: clear the seat pointer only if it still names this reservation."""
        session.query(Seat).filter(
            Seat.id == reservation.seat_id,
            Seat.active_reservation_id == reservation.id
        ).update(
            {
                Seat.active_reservation_id: None,
                Seat.reserved_until: None
            },
            synchronize_session=False
        )

    def get_active_reservations_for_user(self, user_id: str, now: Optional[datetime] = None) -> List[Dict]:
        now = _now(now)
        with self.get_session() as session:
            rows = session.query(Reservation, Venue, Seat).join(
                Venue, Venue.id == Reservation.venue_id
            ).join(
                Seat, Seat.id == Reservation.seat_id
            ).filter(
                Reservation.user_id == user_id,
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.end_time > now
            ).order_by(Reservation.end_time.asc()).all()

            return [
                {
                    **reservation.to_dict(),
                    "venueName": venue.name,
                    "seatRow": seat.row,
                    "seatCol": seat.col,
                }
                for reservation, venue, seat in rows
            ]

    def get_reservations_for_venue(self, venue_id: str,
                                   status: Optional[ReservationStatus] = None) -> List[Dict]:
        with self.get_session() as session:
            if not session.get(Venue, venue_id):
                raise NotFound("Venue not found")

            query = session.query(Reservation, User).join(
                User, User.id == Reservation.user_id
            ).filter(Reservation.venue_id == venue_id)
            if status is not None:
                query = query.filter(Reservation.status == status)

            rows = query.order_by(Reservation.created_at.desc()).all()
            return [
                {
                    **reservation.to_dict(),
                    "userName": user.name or "Unknown",
                    "userEmail": user.email,
                }
                for reservation, user in rows
            ]

    # Maintenance

    def initialize_demo_venue(self) -> bool:
        """Create a demo venue with a 4x5 seat grid if no venue exists yet."""
        with self.get_session() as session:
            if session.query(Venue).count() > 0:
                return False

            venue = Venue(
                name="TechHub Co-working",
                location="Downtown San Francisco",
                description="Premium workspace with high-speed wifi and coffee.",
                capacity=20,
                open_time="08:00",
                close_time="22:00",
            )
            session.add(venue)
            session.flush()

            seats = [
                Seat(
                    venue_id=venue.id,
                    row=row,
                    col=str(col),
                    type=SeatType.PREMIUM if row == "A" else SeatType.STANDARD,
                    status=SeatStatus.AVAILABLE,
                ) for row in "ABCD" for col in range(1, 6)
            ]
            session.add_all(seats)
            return True

    def health_check(self) -> Dict:
        """Report database connectivity and venue count; used by the /api/health endpoint."""
        try:
            with self.get_session() as session:
                # Test database connection
                session.execute(text("SELECT 1"))

                venue_count = session.query(Venue).count()

                return {
                    "status": "ok",
                    "database": "connected",
                    "venues": venue_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    @staticmethod
    def _columns(fields: Dict, mapping: Dict[str, str], enums: Dict = None) -> Dict:
        """Translate wire field names to columns, coercing enum-backed values."""
        unknown = set(fields) - set(mapping)
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

        columns = {}
        for key, value in fields.items():
            column = mapping[key]
            enum_cls = (enums or {}).get(column)
            if enum_cls is not None and value is not None:
                try:
                    value = enum_cls(value.lower() if isinstance(value, str) else value)
                except ValueError:
                    raise ValidationError(f"Invalid {key}: {value}")
            columns[column] = value
        return columns
