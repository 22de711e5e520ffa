from locust import HttpUser, task, between
from datetime import datetime, timedelta, timezone
import random
import uuid

BASE_LAT = 50.0755
BASE_LNG = 14.4378
DEST_LAT = 49.1951
DEST_LNG = 16.6068


class RideShareUser(HttpUser):
    """Drivers post rides around one event; passengers search and race for seats."""
    wait_time = between(1, 3)

    def on_start(self):
        self.user_id = str(uuid.uuid4())
        self.departure = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)

    def _jitter(self, value):
        return value + random.uniform(-0.05, 0.05)

    @task(1)
    def post_ride(self):
        payload = {
            "origin": {"lat": self._jitter(BASE_LAT), "lng": self._jitter(BASE_LNG), "address": "Praha"},
            "destination": {"lat": self._jitter(DEST_LAT), "lng": self._jitter(DEST_LNG), "address": "Brno"},
            "departure_time": self.departure.isoformat(),
            "seats_total": random.randint(1, 4),
            "price": random.choice([None, 100, 150, 200]),
            "booking_mode": random.choice(["instant", "request"]),
        }
        self.client.post("/rides", json=payload, headers={"X-User-Id": self.user_id})

    @task(4)
    def search_and_book(self):
        params = {
            "origin_lat": self._jitter(BASE_LAT),
            "origin_lng": self._jitter(BASE_LNG),
            "dest_lat": self._jitter(DEST_LAT),
            "dest_lng": self._jitter(DEST_LNG),
            "date": self.departure.date().isoformat(),
            "booking_mode": "instant",
            "min_seats": 1,
        }
        with self.client.get("/rides/search", params=params, catch_response=True) as response:
            if response.status_code != 200:
                response.failure(f"Search failed with status {response.status_code}: {response.text}")
                return
            matches = response.json()

        if not matches:
            return

        ride_id = matches[0]["ride"]["id"]
        with self.client.post(
            "/bookings/instant",
            json={"ride_id": ride_id, "seats": 1, "idempotency_key": str(uuid.uuid4())},
            headers={"X-User-Id": self.user_id},
            catch_response=True,
        ) as response:
            # Losing the race for the last seat or re-booking is expected under load
            if response.status_code == 200 or response.status_code == 409:
                response.success()
            else:
                response.failure(f"Failed with status {response.status_code}: {response.text}")
