"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags contention   # Many users race for a few seats
  locust -f locustfile.py --tags throughput   # Cached catalog reads
  locust -f locustfile.py --tags edge         # Bad input
  locust -f locustfile.py                     # All tests

The target database must already hold a catalog (stations, a route, a train
with seats). Travel date defaults to 14 days ahead; override with
LOAD_TRAVEL_DATE=YYYY-MM-DD.
"""

import os
import random
from datetime import date, timedelta

from locust import HttpUser, task, between, tag, events

TRAVEL_DATE = os.environ.get("LOAD_TRAVEL_DATE") or (date.today() + timedelta(days=14)).isoformat()

# Discovered on the first successful search
CATALOG = {}


def random_email():
    return f"load_{random.randint(100000, 999999)}@test.com"


def register_and_login(client):
    email = random_email()
    password = "loadtest123"
    client.post("/api/v1/auth/register", json={
        "email": email,
        "full_name": "Load Tester",
        "phone": "0712345678",
        "password": password,
    })
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    if resp.status_code == 200:
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}
    return {}


def discover_catalog(client):
    """Pick the first station pair with a train and remember its seats."""
    if CATALOG:
        return CATALOG
    stations = client.get("/api/v1/stations").json()
    for origin in stations:
        for destination in stations:
            if origin["id"] == destination["id"]:
                continue
            trains = client.get("/api/v1/trains/search", params={
                "origin": origin["id"], "destination": destination["id"], "travel_date": TRAVEL_DATE,
            }).json()["trains"]
            if not trains:
                continue
            train = trains[0]
            train_class = train["classes"][0]
            seats = client.get(
                f"/api/v1/trains/{train['id']}/classes/{train_class['id']}/seats",
                params={"travel_date": TRAVEL_DATE},
            ).json()["seats"]
            CATALOG.update(
                origin=origin["id"],
                destination=destination["id"],
                train_id=train["id"],
                class_id=train_class["id"],
                seat_ids=[s["id"] for s in seats],
            )
            return CATALOG
    return CATALOG


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Seat hold load test, travel date {TRAVEL_DATE}")
    print("=" * 60)


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - 100 users -> the first 5 seats of one class

    Run: locust -f locustfile.py --tags contention -u 100 -r 50 --run-time 30s

    After test, verify no seat has two live holds or two confirmed bookings:
      SELECT seat_id, COUNT(*) FROM seat_holds GROUP BY seat_id, train_id, travel_date HAVING COUNT(*) > 1;
      SELECT seat_id, COUNT(*) FROM bookings WHERE status = 'confirmed'
        GROUP BY seat_id, train_id, travel_date HAVING COUNT(*) > 1;
    Both should return no rows.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = register_and_login(self.client)
        discover_catalog(self.client)

    @tag("contention")
    @task
    def hold_contested_seat(self):
        if not CATALOG.get("seat_ids") or not self.headers:
            return

        with self.client.post("/api/v1/holds",
            json={
                "seat_id": random.choice(CATALOG["seat_ids"][:5]),
                "train_id": CATALOG["train_id"],
                "travel_date": TRAVEL_DATE,
            },
            headers=self.headers,
            name="/api/v1/holds [contended]",
            catch_response=True
        ) as resp:
            if resp.status_code in (201, 409):
                resp.success()  # 409: someone else holds it
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - Cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false, run again
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        discover_catalog(self.client)

    @tag("throughput", "read")
    @task(5)
    def list_stations_cached(self):
        self.client.get("/api/v1/stations", name="/api/v1/stations [cached]")

    @tag("throughput", "read")
    @task(10)
    def search_cached(self):
        if not CATALOG:
            return
        self.client.get("/api/v1/trains/search", params={
            "origin": CATALOG["origin"], "destination": CATALOG["destination"], "travel_date": TRAVEL_DATE,
        }, name="/api/v1/trains/search [cached]")

    @tag("throughput", "read")
    @task(3)
    def seat_map(self):
        if not CATALOG:
            return
        self.client.get(
            f"/api/v1/trains/{CATALOG['train_id']}/classes/{CATALOG['class_id']}/seats",
            params={"travel_date": TRAVEL_DATE},
            name="/api/v1/trains/{id}/classes/{id}/seats",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = register_and_login(self.client)

    def _expect(self, resp, allowed):
        if resp.status_code in allowed:
            resp.success()
        else:
            resp.failure(f"Expected {allowed}, got {resp.status_code}")

    @tag("edge")
    @task
    def hold_unknown_seat(self):
        with self.client.post("/api/v1/holds",
            json={"seat_id": 999999, "train_id": 999999, "travel_date": TRAVEL_DATE},
            headers=self.headers,
            catch_response=True
        ) as resp:
            self._expect(resp, (404, 422))

    @tag("edge")
    @task
    def hold_in_the_past(self):
        with self.client.post("/api/v1/holds",
            json={"seat_id": 1, "train_id": 1, "travel_date": "2000-01-01"},
            headers=self.headers,
            catch_response=True
        ) as resp:
            self._expect(resp, (404, 422))

    @tag("edge")
    @task
    def stk_push_bad_phone(self):
        with self.client.post("/api/v1/payments/mpesa/stk-push",
            json={"booking_id": 1, "phone_number": "12"},
            headers=self.headers,
            catch_response=True
        ) as resp:
            self._expect(resp, (404, 422))

    @tag("edge")
    @task
    def malformed_callback(self):
        with self.client.post("/api/v1/payments/mpesa/callback",
            data="not json at all",
            catch_response=True
        ) as resp:
            self._expect(resp, (200,))

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post("/api/v1/holds",
            json={"seat_id": 1, "train_id": 1, "travel_date": TRAVEL_DATE},
            catch_response=True
        ) as resp:
            self._expect(resp, (401, 403))
