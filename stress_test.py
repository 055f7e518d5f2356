"""
Load script for a running server: many users race for the demo venue's seats.

Usage: start the app (``python app.py``), then ``python stress_test.py``.
"""

import os
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests

BASE_URL = os.getenv("SEATDESK_URL", "http://localhost:5000")

TOTAL_USERS = 100        # concurrent users
CANCEL_PROBABILITY = 0.3 # share of winners who cancel straight away
MAX_RETRIES = 2

lock = threading.Lock()
run_id = int(time.time())

results = {
    "reserve_success": 0,
    "reserve_conflict": 0,
    "reserve_failed": 0,
    "cancelled": 0,
}


def get_demo_venue():
    r = requests.get(f"{BASE_URL}/api/venues", timeout=10)
    r.raise_for_status()
    venues = r.json()
    if not venues:
        raise SystemExit("No venues found; start the server with SEED_DEMO_VENUE enabled")
    return venues[-1]


def get_seats(venue_id):
    r = requests.get(f"{BASE_URL}/api/venues/{venue_id}/seats", timeout=10)
    r.raise_for_status()
    return r.json()["seats"]


def user_flow(user_id, venue_id, seat_ids):
    """
    Simulates a single user:
    1. Registers and gets a session cookie
    2. Tries to reserve a random seat
    3. Sometimes cancels right away
    """
    session = requests.Session()
    resp = session.post(
        f"{BASE_URL}/api/auth/register",
        json={"email": f"stress-{run_id}-{user_id}@example.com", "password": "stress-pass", "name": f"User {user_id}"},
        timeout=10
    )
    if resp.status_code != 201:
        with lock:
            results["reserve_failed"] += 1
        return

    seat_id = random.choice(seat_ids)

    for attempt in range(MAX_RETRIES):
        try:
            reserve_resp = session.post(
                f"{BASE_URL}/api/reservations",
                json={"venueId": venue_id, "seatId": seat_id, "durationMinutes": random.choice([15, 30, 45])},
                timeout=10
            )

            if reserve_resp.status_code == 409:
                with lock:
                    results["reserve_conflict"] += 1
                return

            if reserve_resp.status_code != 201:
                with lock:
                    results["reserve_failed"] += 1
                return

            with lock:
                results["reserve_success"] += 1

            # Simulate user changing their mind
            time.sleep(random.uniform(0.05, 0.5))
            if random.random() < CANCEL_PROBABILITY:
                cancel_resp = session.post(
                    f"{BASE_URL}/api/reservations/{reserve_resp.json()['id']}/cancel",
                    timeout=10
                )
                if cancel_resp.status_code == 200:
                    with lock:
                        results["cancelled"] += 1
            return

        except requests.RequestException:
            time.sleep(0.2)

    with lock:
        results["reserve_failed"] += 1


def run_stress_test():
    venue = get_demo_venue()
    seats = [s for s in get_seats(venue["id"]) if not s["isReserved"] and s["status"] == "available"]
    seat_ids = [s["id"] for s in seats]
    baseline = venue["occupiedSeats"]

    print(f"\n🚀 Starting stress test with {TOTAL_USERS} concurrent users on {len(seat_ids)} free seats\n")

    start_time = time.time()

    with ThreadPoolExecutor(max_workers=TOTAL_USERS) as executor:
        futures = [executor.submit(user_flow, i, venue["id"], seat_ids) for i in range(TOTAL_USERS)]
        for _ in as_completed(futures):
            pass

    duration = time.time() - start_time

    print("\n✅ Stress Test Completed")
    print(f"⏱  Duration: {duration:.2f}s\n")

    for k, v in results.items():
        print(f"{k:17}: {v}")

    # Critical invariant check
    reserved_now = sum(1 for s in get_seats(venue["id"]) if s["id"] in seat_ids and s["isReserved"])
    expected = results["reserve_success"] - results["cancelled"]
    occupied = get_demo_venue()["occupiedSeats"] - baseline

    print(f"\n🧮 Seats held: {reserved_now}, expected {expected}, venue occupancy delta {occupied}")

    if results["reserve_success"] > len(seat_ids):
        print("❌ ERROR: Double booking detected!")
    else:
        print("✅ No double booking detected")

    if reserved_now != expected or occupied != expected:
        print("❌ ERROR: Seat grid and reservations disagree!")
    else:
        print("✅ Seat grid consistent with reservations")


if __name__ == "__main__":
    run_stress_test()
