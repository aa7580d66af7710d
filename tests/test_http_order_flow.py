from __future__ import annotations

import unittest

from escrowmarket.models import Offer

from market_case import MarketTestCase

FILES = [{"name": "brand-kit.zip", "url": "https://files.example.test/brand-kit.zip", "size": 10240}]


class HttpOrderFlowTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.seller_id = int(self.make_user("Seller", payout_account_id="acct_seller_1").id)
        self.buyer_id = int(self.make_user("Buyer").id)
        self.seller_headers = self.auth(self.seller_id)
        self.buyer_headers = self.auth(self.buyer_id)

    def _create_listing(self) -> int:
        res = self.client.post(
            "/api/listings",
            json={"title": "Brand identity package", "price": 100, "description": "Logo, palette, type"},
            headers=self.seller_headers,
        )
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertEqual(body["listing"]["price_minor"], 10000)
        self.assertEqual(body["listing"]["status"], "active")
        return int(body["listing"]["id"])

    def _put(self, path: str, headers: dict, payload: dict | None = None, expected: int = 200) -> dict:
        res = self.client.put(path, json=payload or {}, headers=headers)
        self.assertEqual(res.status_code, expected, res.get_data(as_text=True))
        return res.get_json()

    def test_offer_to_withdrawal_over_http(self):
        listing_id = self._create_listing()

        res = self.client.post(
            "/api/offers",
            json={"listing_id": listing_id, "amount": 100, "message": "Can you start this week?"},
            headers={**self.buyer_headers, "Idempotency-Key": "offer-key-1"},
        )
        self.assertEqual(res.status_code, 201)
        offer = res.get_json()["offer"]
        self.assertEqual(offer["status"], "pending_payment")
        self.assertTrue(offer["client_secret"])

        res = self.client.post(
            "/api/offers/confirm-payment",
            json={"offer_id": offer["id"], "payment_ref": offer["payment_ref"]},
            headers=self.buyer_headers,
        )
        self.assertEqual(res.status_code, 200)
        confirmed = res.get_json()
        self.assertEqual(confirmed["offer"]["status"], "paid")
        self.assertEqual(confirmed["order"]["status"], "paid")
        self.assertTrue(confirmed["chat_channel_ref"])
        order_id = int(confirmed["order"]["id"])

        res = self.client.get(f"/api/listings/{listing_id}")
        self.assertEqual(res.get_json()["listing"]["status"], "reserved")

        received = self.client.get("/api/offers/received?status=paid", headers=self.seller_headers).get_json()
        self.assertEqual([o["id"] for o in received["items"]], [offer["id"]])
        self.assertNotIn("client_secret", received["items"][0])

        accepted = self._put(f"/api/offers/{offer['id']}/accept", self.seller_headers)
        self.assertEqual(accepted["offer"]["status"], "accepted")
        self.assertTrue(accepted["order"]["confirmed"])
        self.assertEqual(accepted["auto_rejected_offer_ids"], [])

        body = self._put(f"/api/orders/{order_id}/status", self.seller_headers, {"status": "processing"})
        self.assertEqual(body["order"]["viewer_role"], "seller")
        self.assertEqual(body["order"]["allowed_next_statuses"], ["cancelled", "disputed", "in_progress"])
        self._put(f"/api/orders/{order_id}/status", self.seller_headers, {"target": "in_progress"})

        body = self._put(f"/api/orders/{order_id}/deliver", self.seller_headers, {"message": "First pass", "attachments": FILES})
        self.assertEqual(body["delivery"]["revision_number"], 1)
        self.assertEqual(body["order"]["status"], "delivered")

        body = self._put(f"/api/orders/{order_id}/request-revision", self.buyer_headers, {"notes": "Warmer colours please"})
        self.assertEqual(body["order"]["status"], "in_revision")
        self.assertEqual(body["revisions_used"], 1)
        self.assertEqual(body["revisions_left"], 2)

        self._put(f"/api/orders/{order_id}/deliver", self.seller_headers, {"message": "Warmer", "attachments": FILES, "is_final": True})
        body = self._put(f"/api/orders/{order_id}/complete", self.buyer_headers)
        self.assertEqual(body["order"]["status"], "completed")
        self.assertEqual(body["order"]["seller_payout_minor"], 8500)

        deliveries = self.client.get(f"/api/orders/{order_id}/deliveries", headers=self.buyer_headers).get_json()["items"]
        self.assertEqual([d["revision_number"] for d in deliveries], [1, 2])
        timeline = self.client.get(f"/api/orders/{order_id}/timeline", headers=self.seller_headers).get_json()["items"]
        self.assertEqual(timeline[-1]["to_status"], "completed")

        earnings = self.client.get("/api/earnings", headers=self.seller_headers).get_json()
        self.assertEqual(earnings["available_minor"], 8500)
        self.assertEqual(earnings["pending_minor"], 0)

        res = self.client.post("/api/withdrawals", json={"amount": 90}, headers=self.seller_headers)
        self.assertEqual(res.status_code, 422)
        body = res.get_json()
        self.assertEqual(body["error"], "INSUFFICIENT_BALANCE")
        self.assertEqual(body["available_minor"], 8500)

        res = self.client.post("/api/withdrawals", json={"amount_minor": 5000}, headers=self.seller_headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["withdrawal"]["status"], "processing")
        items = self.client.get("/api/withdrawals", headers=self.seller_headers).get_json()["items"]
        self.assertEqual(len(items), 1)

    def test_offer_creation_replays_with_idempotency_key(self):
        listing_id = self._create_listing()
        headers = {**self.buyer_headers, "Idempotency-Key": "offer-key-2"}
        payload = {"listing_id": listing_id, "amount_minor": 7500}

        first = self.client.post("/api/offers", json=payload, headers=headers)
        second = self.client.post("/api/offers", json=payload, headers=headers)
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)
        self.assertEqual(first.get_json()["offer"]["id"], second.get_json()["offer"]["id"])
        self.assertEqual(Offer.query.count(), 1)

        reused = self.client.post("/api/offers", json={**payload, "amount_minor": 8000}, headers=headers)
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_direct_purchase_over_http(self):
        listing_id = self._create_listing()
        res = self.client.post("/api/orders/direct-purchase", json={"listing_id": listing_id}, headers=self.buyer_headers)
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        order = body["order"]
        self.assertEqual(order["status"], "pending_payment")
        self.assertTrue(body["client_secret"])

        res = self.client.post(
            f"/api/orders/{order['id']}/confirm-payment",
            json={"payment_ref": order["payment_ref"]},
            headers=self.buyer_headers,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "paid")

        sales = self.client.get("/api/orders/sales", headers=self.seller_headers).get_json()["items"]
        self.assertEqual([o["id"] for o in sales], [order["id"]])
        self.assertEqual(sales[0]["allowed_next_statuses"], ["cancelled", "disputed", "processing"])

        res = self.client.get(f"/api/listings/{listing_id}")
        self.assertEqual(res.get_json()["listing"]["status"], "sold")

    def test_seller_lists_unpaid_listing_changes(self):
        listing_id = self._create_listing()
        body = self._put(f"/api/listings/{listing_id}/status", self.seller_headers, {"status": "inactive"})
        self.assertEqual(body["listing"]["status"], "inactive")

        res = self.client.post("/api/offers", json={"listing_id": listing_id, "amount": 50}, headers=self.buyer_headers)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["listing_status"], "inactive")

        res = self.client.put(f"/api/listings/{listing_id}/status", json={"status": "active"}, headers=self.buyer_headers)
        self.assertEqual(res.status_code, 404)


if __name__ == "__main__":
    unittest.main()
