"""
Locust Load Test Suite

Needs a seeded venue with seats. Point the run at it with:
  VENUE_ID=1 RESOURCE_IDS=1,2,3,4,5 CONTESTED_RESOURCE_ID=1

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test double booking
  locust -f locustfile.py --tags throughput   # Test availability cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests
"""

import os
import random
from datetime import date, timedelta

from locust import HttpUser, between, events, tag, task

VENUE_ID = int(os.environ.get("VENUE_ID", "1"))
RESOURCE_IDS = [int(r) for r in os.environ.get("RESOURCE_IDS", "1,2,3,4,5").split(",")]
CONTESTED_RESOURCE_ID = int(os.environ.get("CONTESTED_RESOURCE_ID", str(RESOURCE_IDS[0])))

# Every concurrency user asks for this exact week
CONTESTED_START = date.today() + timedelta(days=60)
CONTESTED_END = CONTESTED_START + timedelta(days=6)


def random_guest() -> dict:
    return {
        "name": f"Load Guest {random.randint(1000, 9999)}",
        "phone": f"9{random.randint(100000000, 999999999)}",
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Venue {VENUE_ID}, resources {RESOURCE_IDS}")
    print(f"Contested: resource {CONTESTED_RESOURCE_ID}, {CONTESTED_START}..{CONTESTED_END}")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - 100 users -> 1 seat, same week

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT COUNT(*) FROM reservations
      WHERE resource_id = X AND status IN ('pending', 'confirmed', 'active')
        AND start_date <= '<end>' AND end_date >= '<start>';
    Should be exactly 1
    """
    wait_time = between(0, 0.1)

    @tag("concurrency")
    @task
    def book_contested_seat(self):
        with self.client.post(
            "/api/v1/reservations",
            json={
                "venue_id": VENUE_ID,
                "resource_id": CONTESTED_RESOURCE_ID,
                "start_date": str(CONTESTED_START),
                "end_date": str(CONTESTED_END),
                "payment_method": "offline",
                "guest": random_guest(),
            },
            catch_response=True,
            name="/api/v1/reservations [contested]",
        ) as resp:
            if resp.status_code in (201, 409):
                resp.success()  # 409: already taken, expected
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - availability cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false on the API, run again

    Compare avg response time, requests/sec, P95/P99 latency
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def venue_map_cached(self):
        start = date.today() + timedelta(days=random.randint(0, 3))
        self.client.get(
            f"/api/v1/availability/venues/{VENUE_ID}",
            params={"start_date": str(start), "end_date": str(start + timedelta(days=6))},
            name="/api/v1/availability/venues/{id} [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def resource_check(self):
        start = date.today() + timedelta(days=random.randint(0, 30))
        self.client.get(
            f"/api/v1/availability/resources/{random.choice(RESOURCE_IDS)}",
            params={"start_date": str(start), "end_date": str(start + timedelta(days=2))},
            name="/api/v1/availability/resources/{id}",
        )

    @tag("throughput")
    @task(2)
    def venue_quote(self):
        start = date.today() + timedelta(days=1)
        self.client.get(
            f"/api/v1/venues/{VENUE_ID}/quote",
            params={"start_date": str(start), "end_date": str(start + timedelta(days=random.choice([0, 6, 29])))},
            name="/api/v1/venues/{id}/quote",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_resource(self):
        start = date.today() + timedelta(days=5)
        with self.client.post(
            "/api/v1/reservations",
            json={
                "venue_id": VENUE_ID,
                "resource_id": 999999,
                "start_date": str(start),
                "end_date": str(start),
                "payment_method": "offline",
                "guest": random_guest(),
            },
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def reversed_range(self):
        start = date.today() + timedelta(days=5)
        with self.client.post(
            "/api/v1/reservations",
            json={
                "venue_id": VENUE_ID,
                "resource_id": random.choice(RESOURCE_IDS),
                "start_date": str(start),
                "end_date": str(start - timedelta(days=3)),
                "guest": random_guest(),
            },
            catch_response=True,
        ) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def missing_identity(self):
        start = date.today() + timedelta(days=5)
        with self.client.post(
            "/api/v1/reservations",
            json={
                "venue_id": VENUE_ID,
                "resource_id": random.choice(RESOURCE_IDS),
                "start_date": str(start),
                "end_date": str(start),
            },
            catch_response=True,
        ) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/reservations",
            data="not json at all",
            headers={"Content-Type": "application/json"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def forged_webhook(self):
        with self.client.post(
            "/api/v1/webhooks/razorpay",
            json={"event": "order.paid", "payload": {}},
            headers={"X-Razorpay-Signature": "forged"},
            catch_response=True,
        ) as resp:
            # 200 "error" when no webhook secret is configured
            self._expect(resp, (200, 401))


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Simulates real traffic:
      - Mostly browsing the seat map (80%)
      - Some bookings (15%)
      - Payment status polls (5%)
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.transaction_ids = []

    @task(50)
    def browse_seat_map(self):
        start = date.today() + timedelta(days=random.randint(1, 14))
        self.client.get(
            f"/api/v1/availability/venues/{VENUE_ID}",
            params={"start_date": str(start), "end_date": str(start + timedelta(days=6))},
            name="/api/v1/availability/venues/{id}",
        )

    @task(10)
    def book_seat(self):
        start = date.today() + timedelta(days=random.randint(1, 90))
        with self.client.post(
            "/api/v1/reservations",
            json={
                "venue_id": VENUE_ID,
                "resource_id": random.choice(RESOURCE_IDS),
                "start_date": str(start),
                "end_date": str(start + timedelta(days=random.choice([0, 6]))),
                "payment_method": "offline",
                "guest": random_guest(),
            },
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                self.transaction_ids.append(resp.json()["transaction"]["id"])
                resp.success()
            elif resp.status_code == 409:
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @task(3)
    def poll_payment(self):
        if self.transaction_ids:
            self.client.get(
                f"/api/v1/payments/transactions/{random.choice(self.transaction_ids)}",
                name="/api/v1/payments/transactions/{id}",
            )
