"""HTTP entrypoint for the venue seat reservation backend."""

from flask import Flask, g, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from access import admin_required, login_required, login_user, logout_user
from config import Config
from database_manager import ALLOWED_DURATIONS, DatabaseManager
from errors import NotFound, SeatDeskError, Unauthorized, ValidationError
from models import ReservationStatus, SeatStatus, SeatType, UserRole, VenueCategory
from sweeper import ExpirySweeper
from time_window import is_open, is_valid_time_of_day
from uploads import delete_venue_image, image_url, save_venue_image

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MIN_PASSWORD_LENGTH = 6


# Request validation

def require_json_object() -> Dict[str, Any]:
    """Ensure the request body is a JSON object before proceeding."""
    data = request.get_json(silent=True) if request.is_json else None
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _require_string(data: Dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    return value.strip()


def _optional_string(data: Dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _is_number(value) -> bool:
    # bool is an int subclass; reject it explicitly
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _choice(data: Dict, key: str, enum_cls) -> str:
    value = data.get(key)
    allowed = [member.value for member in enum_cls]
    if not isinstance(value, str) or value.lower() not in allowed:
        raise ValidationError(f"{key} must be one of: {', '.join(allowed)}")
    return value.lower()


def validate_duration(raw: Any) -> int:
    """Accept 15, 30 or 45 as a number or a numeric string."""
    message = "durationMinutes must be one of 15, 30 or 45"
    if isinstance(raw, bool):
        raise ValidationError(message)
    if isinstance(raw, str) and raw.strip().isdigit():
        raw = int(raw.strip())
    if not isinstance(raw, int) or raw not in ALLOWED_DURATIONS:
        raise ValidationError(message)
    return raw


def validate_venue_payload(data: Dict, partial: bool = False) -> Dict[str, Any]:
    """Validate venue fields; ``partial`` allows any subset for updates."""
    fields: Dict[str, Any] = {}

    for key in ('name', 'location'):
        if key in data or not partial:
            fields[key] = _require_string(data, key)

    for key in ('description', 'imageUrl'):
        if key in data:
            fields[key] = _optional_string(data, key)

    if 'capacity' in data:
        capacity = data['capacity']
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 0:
            raise ValidationError("capacity must be a non-negative integer")
        fields['capacity'] = capacity

    for key in ('openTime', 'closeTime'):
        if key in data:
            if not is_valid_time_of_day(data[key]):
                raise ValidationError(f"{key} must be a time of day formatted HH:MM")
            fields[key] = data[key]

    if 'category' in data:
        fields['category'] = _choice(data, 'category', VenueCategory)

    unknown = set(data) - {'name', 'location', 'description', 'imageUrl', 'capacity',
                           'openTime', 'closeTime', 'category'}
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return fields


def validate_seat_payload(data: Dict, partial: bool = False) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}

    for key in ('row', 'col'):
        if key in data or not partial:
            fields[key] = _require_string(data, key)

    if 'type' in data:
        fields['type'] = _choice(data, 'type', SeatType)
    if 'status' in data:
        fields['status'] = _choice(data, 'status', SeatStatus)

    for key in ('x', 'y'):
        if key in data:
            if data[key] is not None and not _is_number(data[key]):
                raise ValidationError(f"{key} must be a number")
            fields[key] = data[key]

    unknown = set(data) - {'row', 'col', 'type', 'status', 'x', 'y'}
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return fields


def venue_view(venue: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    # Opening hours are wall-clock times at the venue, evaluated in server local time
    local_now = now or datetime.now()
    return {**venue, "isOpen": is_open(venue["openTime"], venue["closeTime"], local_now)}


def create_app(config: Optional[Dict[str, Any]] = None, db: Optional[DatabaseManager] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config['LOG_LEVEL'])
    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)

    # Instantiate the database layer once so all request handlers reuse the same pool
    if db is None:
        db = DatabaseManager(app.config['DATABASE_URL'])
    app.extensions['db'] = db

    if app.config['SEED_DEMO_VENUE']:
        initialize_demo_venue(db)

    if app.config['ENABLE_SWEEPER']:
        sweeper = ExpirySweeper(db, app.config['SWEEP_INTERVAL_SECONDS'])
        sweeper.start()
        app.extensions['sweeper'] = sweeper

    register_error_handlers(app)
    register_routes(app, db)
    return app


def initialize_demo_venue(db: DatabaseManager):
    """Create an example venue so local demos have usable data."""
    try:
        if db.initialize_demo_venue():
            logger.info("✅ Pre-initialized demo venue with 20 seats")
        else:
            logger.info("ℹ️ Venues already exist, skipping demo seed")
    except Exception as e:
        logger.error(f"❌ Failed to initialize demo venue: {e}")


def register_error_handlers(app: Flask):
    @app.errorhandler(SeatDeskError)
    def handle_seatdesk_error(error: SeatDeskError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(error):
        return jsonify({"message": "File too large. Maximum size is 5MB."}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.path}: {error}")
        return jsonify({"message": "Internal server error"}), 500


def register_routes(app: Flask, db: DatabaseManager):

    # Health

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """Expose database connectivity and venue count."""
        return jsonify(db.health_check())

    # Auth

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        data = require_json_object()

        email = _require_string(data, 'email').lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("email must be a valid email address")

        password = data.get('password')
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

        name = _optional_string(data, 'name')
        role = UserRole.ADMIN if email in app.config['ADMIN_EMAILS'] else UserRole.USER

        user = db.create_user(email, password, name=name, role=role)
        login_user(user)
        return jsonify(user.to_dict()), 201

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        data = require_json_object()
        email = _require_string(data, 'email').lower()
        password = data.get('password')
        if not isinstance(password, str):
            raise ValidationError("password must be a string")

        user = db.authenticate(email, password)
        login_user(user)
        logger.info(f"User {user.id} logged in")
        return jsonify(user.to_dict())

    @app.route('/api/auth/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({"message": "Logged out"})

    @app.route('/api/auth/me', methods=['GET'])
    @login_required
    def me():
        user = db.get_user(g.identity.user_id)
        if user is None:
            logout_user()
            raise Unauthorized("Unauthorized")
        return jsonify(user.to_dict())

    # Venues

    @app.route('/api/venues', methods=['GET'])
    def list_venues():
        db.expire_reservations()
        return jsonify([venue_view(v) for v in db.get_venues_with_occupancy()])

    @app.route('/api/venues/<venue_id>', methods=['GET'])
    def get_venue(venue_id):
        return jsonify(venue_view(db.get_venue(venue_id).to_dict()))

    @app.route('/api/venues/<venue_id>/seats', methods=['GET'])
    def get_venue_seats(venue_id):
        """Return the seat grid with live reservations overlaid."""
        # Lazy sweep so stale reservations are released before anyone looks at the grid
        db.expire_reservations()
        seats = db.get_seats_with_live_status(venue_id)
        return jsonify({
            "seats": seats,
            "serverTime": datetime.now(timezone.utc).isoformat(),
        })

    # Reservations

    @app.route('/api/reservations', methods=['POST'])
    @login_required
    def create_reservation():
        """Claim a seat for 15, 30 or 45 minutes."""
        data = require_json_object()
        venue_id = _require_string(data, 'venueId')
        seat_id = _require_string(data, 'seatId')
        duration = validate_duration(data.get('durationMinutes'))

        reservation = db.create_reservation(g.identity, venue_id, seat_id, duration)
        return jsonify(reservation.to_dict()), 201

    @app.route('/api/reservations/me/active', methods=['GET'])
    @login_required
    def list_my_active_reservations():
        return jsonify(db.get_active_reservations_for_user(g.identity.user_id))

    @app.route('/api/reservations/<reservation_id>/cancel', methods=['POST'])
    @login_required
    def cancel_reservation(reservation_id):
        """Cancel a reservation owned by the caller (admins may cancel any)."""
        reservation = db.cancel_reservation(reservation_id, g.identity)
        return jsonify(reservation.to_dict())

    # Admin

    @app.route('/api/admin/venues', methods=['POST'])
    @admin_required
    def admin_create_venue():
        fields = validate_venue_payload(require_json_object())
        venue = db.create_venue(**fields)
        return jsonify(venue.to_dict()), 201

    @app.route('/api/admin/venues/<venue_id>', methods=['PUT'])
    @admin_required
    def admin_update_venue(venue_id):
        fields = validate_venue_payload(require_json_object(), partial=True)
        venue = db.update_venue(venue_id, **fields)
        return jsonify(venue.to_dict())

    @app.route('/api/admin/venues/<venue_id>/seats', methods=['POST'])
    @admin_required
    def admin_create_seat(venue_id):
        fields = validate_seat_payload(require_json_object())
        seat = db.create_seat(venue_id, **fields)
        return jsonify(seat.to_dict()), 201

    @app.route('/api/admin/seats/<seat_id>', methods=['PUT'])
    @admin_required
    def admin_update_seat(seat_id):
        fields = validate_seat_payload(require_json_object(), partial=True)
        seat = db.update_seat(seat_id, **fields)
        return jsonify(seat.to_dict())

    @app.route('/api/admin/venues/<venue_id>/reservations', methods=['GET'])
    @admin_required
    def admin_list_reservations(venue_id):
        status = request.args.get('status')
        if status is not None:
            try:
                status = ReservationStatus(status)
            except ValueError:
                raise ValidationError("status must be one of: active, expired, cancelled")
        return jsonify(db.get_reservations_for_venue(venue_id, status))

    @app.route('/api/admin/reservations/<reservation_id>/cancel', methods=['POST'])
    @admin_required
    def admin_cancel_reservation(reservation_id):
        reservation = db.cancel_reservation(reservation_id, g.identity)
        return jsonify(reservation.to_dict())

    @app.route('/api/admin/venues/<venue_id>/upload-image', methods=['POST'])
    @admin_required
    def admin_upload_venue_image(venue_id):
        """Store a venue image (image/* only, at most 5MB) and point the venue at it."""
        upload_folder = app.config['UPLOAD_FOLDER']
        filename = save_venue_image(request.files.get('image'), upload_folder)

        try:
            db.get_venue(venue_id)
        except NotFound:
            # Don't keep files for venues that don't exist
            delete_venue_image(filename, upload_folder)
            raise

        url = image_url(filename)
        db.update_venue(venue_id, imageUrl=url)
        return jsonify({"imageUrl": url})

    @app.route('/uploads/<path:filename>', methods=['GET'])
    def uploaded_file(filename):
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


if __name__ == '__main__':
    import os

    app = create_app()
    sweeper = app.extensions.get('sweeper')
    if sweeper:
        sweeper.install_signal_handlers()

    logger.info("""
    ================================
    SEATDESK RESERVATION SERVICE
    ================================
    Reservations: 15 / 30 / 45 minutes
    Concurrency: seat row lock + one active reservation per seat
    ================================
    """)

    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
