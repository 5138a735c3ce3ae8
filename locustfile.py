from locust import HttpUser, task, between
import random


class CustomerUser(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        # Register a customer for this simulated client
        uname = f"user_{random.randint(1, 1_000_000)}"
        r = self.client.post(
            "/api/auth/register",
            json={"name": uname, "email": f"{uname}@example.com", "password": "load-test"},
        )
        self.headers = {"Authorization": f"Bearer {r.json()['token']}"} if r.status_code == 201 else None
        items = self.client.get("/api/products/items").json() or []
        self.item_ids = [item["id"] for item in items]

    @task(3)
    def place_order(self):
        if not self.headers or not self.item_ids:
            return
        cart = [
            {"product_item_id": random.choice(self.item_ids), "quantity": random.randint(1, 3)}
            for _ in range(random.randint(1, 4))
        ]
        self.client.post("/api/orders", json={"items": cart}, headers=self.headers)

    @task(1)
    def my_orders(self):
        if self.headers:
            self.client.get("/api/orders/me", headers=self.headers)

    @task(1)
    def browse(self):
        self.client.get("/api/products")
