import atexit
import logging
import time

from models import ReservationStatus
from sweeper import ExpirySweeper


class FailingStore:
    def expire_reservations(self):
        raise RuntimeError("database went away")


def test_sweep_once_expires_overdue(db, clock, venue, seats, alice):
    reservation = db.create_reservation(alice, venue.id, seats[0].id, 15)
    sweeper = ExpirySweeper(db, interval=60)

    assert sweeper.sweep_once() == 0
    clock.advance(minutes=20)
    assert sweeper.sweep_once() == 1
    assert sweeper.sweep_once() == 0
    assert db.get_reservation(reservation.id).status == ReservationStatus.EXPIRED


def test_sweep_errors_are_logged_not_raised(caplog):
    sweeper = ExpirySweeper(FailingStore(), interval=60)
    with caplog.at_level(logging.ERROR, logger="sweeper"):
        assert sweeper.sweep_once() == 0
    assert "database went away" in caplog.text


def test_background_thread_runs_until_stopped(db, clock, venue, seats, alice):
    reservation = db.create_reservation(alice, venue.id, seats[0].id, 15)
    clock.advance(minutes=20)

    sweeper = ExpirySweeper(db, interval=0.05)
    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if db.get_reservation(reservation.id).status == ReservationStatus.EXPIRED:
                break
            time.sleep(0.05)
        assert sweeper.running
    finally:
        sweeper.stop()

    assert not sweeper.running
    assert db.get_reservation(reservation.id).status == ReservationStatus.EXPIRED


class IdleStore:
    def expire_reservations(self):
        return 0


def test_stop_joins_the_thread():
    sweeper = ExpirySweeper(IdleStore(), interval=60)
    sweeper.start()
    thread = sweeper._thread

    sweeper.stop()

    assert not thread.is_alive()
    assert not sweeper.running


def test_restart_registers_exit_hook_once(monkeypatch):
    hooks = []
    monkeypatch.setattr(atexit, "register", hooks.append)
    sweeper = ExpirySweeper(IdleStore(), interval=60)

    sweeper.start()
    sweeper.stop()
    sweeper.start()
    sweeper.stop()

    assert hooks == [sweeper.stop]
