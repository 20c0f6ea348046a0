"""
Load tests using Locust.

Drives checkout traffic against a running API so that overselling and
duplicate captures show up under real concurrency.

Run with: locust -f tests/locustfile.py --host=http://localhost:8000
"""
import uuid

from locust import HttpUser, between, task

LOCATION = "wh_load"


class CheckoutUser(HttpUser):
    """
    Simulated shopper placing and paying for orders.

    Each user stocks its own variant so reservations stay checkable.
    """

    wait_time = between(1, 3)

    def on_start(self) -> None:
        self.variant_id = f"var_load_{uuid.uuid4().hex[:8]}"
        self.client.post(
            "/inventory/stock-levels",
            json={"variant_id": self.variant_id, "location_id": LOCATION, "quantity": 1000},
        )

    def _order_body(self) -> dict:
        return {
            "email": "load@example.com",
            "items": [
                {
                    "variant_id": self.variant_id,
                    "location_id": LOCATION,
                    "quantity": 1,
                    "price": 50000,
                    "product_title": "Load Test Item",
                }
            ],
        }

    @task(10)
    def checkout(self) -> None:
        """Place an order, then authorize and capture its payment."""
        with self.client.post(
            "/orders", json=self._order_body(), catch_response=True, name="/orders"
        ) as response:
            if response.status_code != 201:
                response.failure(f"Unexpected status: {response.status_code}")
                return
            order_id = response.json()["data"]["id"]

        payment = self.client.post(f"/orders/{order_id}/payments", name="/orders/[id]/payments")
        if payment.status_code != 201:
            return
        payment_id = payment.json()["data"]["id"]
        self.client.post(f"/payments/{payment_id}/authorize", name="/payments/[id]/authorize")
        with self.client.post(
            f"/payments/{payment_id}/capture",
            catch_response=True,
            name="/payments/[id]/capture",
        ) as response:
            if response.status_code in (200, 503):
                # 503 is a gateway timeout the client is expected to retry
                response.success()
            else:
                response.failure(f"Unexpected status: {response.status_code}")

    @task(3)
    def get_health(self) -> None:
        self.client.get("/health")

    @task(1)
    def get_metrics(self) -> None:
        self.client.get("/metrics")


class IdempotentCheckoutUser(HttpUser):
    """
    Replays the same checkout with one Idempotency-Key.

    Every response after the first should carry replayed=true.
    """

    wait_time = between(0.5, 1.5)

    def on_start(self) -> None:
        self.key = f"load-{uuid.uuid4()}"
        self.variant_id = f"var_idem_{uuid.uuid4().hex[:8]}"
        self.client.post(
            "/inventory/stock-levels",
            json={"variant_id": self.variant_id, "location_id": LOCATION, "quantity": 10},
        )

    @task
    def repeat_checkout(self) -> None:
        body = {
            "email": "load@example.com",
            "items": [
                {
                    "variant_id": self.variant_id,
                    "location_id": LOCATION,
                    "quantity": 1,
                    "price": 50000,
                    "product_title": "Load Test Item",
                }
            ],
        }
        with self.client.post(
            "/orders",
            json=body,
            headers={"Idempotency-Key": self.key},
            catch_response=True,
            name="/orders (replay)",
        ) as response:
            if response.status_code in (200, 201):
                response.success()
            elif response.status_code == 503:
                # operation_in_progress while the first attempt holds the key
                response.success()
            else:
                response.failure(f"Unexpected status: {response.status_code}")


"""
Load Test Scenarios:

1. Basic Load Test:
   locust -f tests/locustfile.py --host=http://localhost:8000 --users=100 --spawn-rate=10

2. Idempotency Test:
   locust -f tests/locustfile.py --host=http://localhost:8000 --users=50 IdempotentCheckoutUser

Success Criteria:
- No stock level with reserved_quantity above quantity
- One order per Idempotency-Key
- POST /admin/reconcile reports no discrepancies afterwards
"""
