"""Tests for the HTTP API."""

import json

import pytest

from app.errors import GatewayRejected

API = "/api/v1"

JOB = {
    "title": "Fix my fence",
    "description": "Two panels blew down in last night's storm",
    "payment_type": "fixed",
    "payment_amount": 50,
    "payment_method_id": "pm_card_visa",
}


def post_job(client, headers, **overrides):
    response = client.post(f"{API}/jobs", json={**JOB, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def assign(client, job_id, poster_headers, worker_headers):
    application = client.post(
        f"{API}/jobs/{job_id}/applications", json={"message": "Available this weekend"}, headers=worker_headers
    ).json()
    response = client.post(
        f"{API}/jobs/{job_id}/applications/{application['id']}/accept", headers=poster_headers
    )
    assert response.status_code == 200, response.text
    return response.json()


def finish_tasks(client, job_id, poster_headers, worker_headers):
    tasks = client.post(
        f"{API}/jobs/{job_id}/tasks",
        json={"tasks": [{"description": "Remove broken panels"}, {"description": "Fit new panels"}]},
        headers=poster_headers,
    ).json()
    for task in tasks:
        response = client.post(f"{API}/jobs/{job_id}/tasks/{task['id']}/complete", headers=worker_headers)
        assert response.status_code == 200, response.text
    return tasks


class TestRoot:
    def test_root(self, client):
        assert client.get("/").json()["service"] == "fixer-payments"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "ledger": "connected"}


class TestJobRoutes:
    def test_create_fixed_job_charges(self, client, poster_headers):
        data = post_job(client, poster_headers)
        assert data["job"]["total_amount"] == "52.50"
        assert data["job"]["payment_status"] == "paid"
        assert data["payment"]["status"] == "succeeded"
        assert data["payment_error"] is None

    def test_declined_card_keeps_job(self, client, gateway, poster_headers):
        gateway.charge_error = GatewayRejected("Your card was declined.", code="card_declined")
        data = post_job(client, poster_headers)
        assert data["payment"] is None
        assert data["payment_error"] == "Your card was declined."
        assert client.get(f"{API}/jobs/{data['job']['id']}", headers=poster_headers).status_code == 200

    def test_guard_rejection(self, client, poster_headers):
        response = client.post(f"{API}/jobs", json={**JOB, "payment_amount": 5}, headers=poster_headers)
        assert response.status_code == 400
        assert response.json() == {"message": "Minimum payment amount is $10"}

    def test_request_validation(self, client, poster_headers):
        response = client.post(f"{API}/jobs", json={"title": "Fix"}, headers=poster_headers)
        assert response.status_code == 422

    def test_requires_auth(self, client):
        assert client.post(f"{API}/jobs", json=JOB).status_code == 401

    def test_detail_has_lifecycle(self, client, poster_headers):
        job = post_job(client, poster_headers, payment_method_id=None)["job"]
        detail = client.get(f"{API}/jobs/{job['id']}", headers=poster_headers).json()
        assert detail["payment_lifecycle"] == "unpaid"

    def test_missing_job(self, client, poster_headers):
        response = client.get(f"{API}/jobs/9999", headers=poster_headers)
        assert response.status_code == 404
        assert response.json() == {"message": "Job not found"}

    def test_list_filters(self, client, poster_headers, worker_headers, poster_id):
        first = post_job(client, poster_headers, category="garden")["job"]
        post_job(client, poster_headers, category="plumbing")
        assign(client, first["id"], poster_headers, worker_headers)

        response = client.get(f"{API}/jobs", params={"status": "assigned"}, headers=worker_headers)
        data = response.json()
        assert [j["id"] for j in data["jobs"]] == [first["id"]]
        assert data["limit"] == 20

        mine = client.get(f"{API}/jobs", params={"poster_id": poster_id, "limit": 1}, headers=poster_headers)
        assert len(mine.json()["jobs"]) == 1

    def test_update_by_other_user_forbidden(self, client, poster_headers, other_headers):
        job = post_job(client, poster_headers)["job"]
        response = client.patch(f"{API}/jobs/{job['id']}", json={"category": "garden"}, headers=other_headers)
        assert response.status_code == 403

    def test_update(self, client, poster_headers):
        job = post_job(client, poster_headers, payment_method_id=None)["job"]
        response = client.patch(f"{API}/jobs/{job['id']}", json={"payment_amount": 80}, headers=poster_headers)
        assert response.status_code == 200
        assert response.json()["total_amount"] == "82.50"

    def test_cancel_with_refund(self, client, gateway, poster_headers):
        job = post_job(client, poster_headers)["job"]
        response = client.delete(f"{API}/jobs/{job['id']}", params={"with_refund": "true"}, headers=poster_headers)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Job successfully canceled",
            "refund_processed": True,
        }
        assert len(gateway.refunds) == 1
        assert client.get(f"{API}/jobs/{job['id']}", headers=poster_headers).status_code == 404


class TestWorkFlow:
    def test_complete_and_pay_out(self, client, gateway, poster_headers, worker_headers):
        setup = client.post(f"{API}/connect/account", headers=worker_headers).json()
        assert setup["exists"] is True
        assert setup["onboarding_url"].startswith("https://")

        job = post_job(client, poster_headers)["job"]
        assigned = assign(client, job["id"], poster_headers, worker_headers)
        assert assigned["status"] == "assigned"

        finish_tasks(client, job["id"], poster_headers, worker_headers)
        response = client.post(f"{API}/jobs/{job['id']}/complete", headers=worker_headers)
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "paid"
        assert len(gateway.transfers) == 1

        earnings = client.get(f"{API}/earnings/me", headers=worker_headers).json()
        assert earnings["total_paid"] == "47.50"
        assert earnings["total_pending"] == "0"

        payments = client.get(f"{API}/payments/me", headers=worker_headers).json()
        assert [p["type"] for p in payments] == ["payout"]

    def test_incomplete_tasks_block_completion(self, client, poster_headers, worker_headers):
        job = post_job(client, poster_headers)["job"]
        assign(client, job["id"], poster_headers, worker_headers)
        client.post(
            f"{API}/jobs/{job['id']}/tasks",
            json={"tasks": [{"description": "Remove broken panels"}]},
            headers=poster_headers,
        )
        response = client.post(f"{API}/jobs/{job['id']}/complete", headers=worker_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "All tasks must be completed before marking the job as complete"

    def test_only_worker_completes(self, client, poster_headers, worker_headers):
        job = post_job(client, poster_headers)["job"]
        assign(client, job["id"], poster_headers, worker_headers)
        finish_tasks(client, job["id"], poster_headers, worker_headers)
        response = client.post(f"{API}/jobs/{job['id']}/complete", headers=poster_headers)
        assert response.status_code == 403

    def test_applications_visible_to_poster_only(self, client, poster_headers, worker_headers):
        job = post_job(client, poster_headers)["job"]
        client.post(f"{API}/jobs/{job['id']}/applications", json={}, headers=worker_headers)

        listing = client.get(f"{API}/jobs/{job['id']}/applications", headers=poster_headers).json()
        assert listing["total"] == 1
        assert listing["applications"][0]["status"] == "pending"
        assert client.get(f"{API}/jobs/{job['id']}/applications", headers=worker_headers).status_code == 403

    def test_task_editing(self, client, poster_headers):
        job = post_job(client, poster_headers)["job"]
        a, b = client.post(
            f"{API}/jobs/{job['id']}/tasks",
            json={"tasks": [{"description": "A"}, {"description": "B", "bonus_amount": 5}]},
            headers=poster_headers,
        ).json()

        renamed = client.patch(
            f"{API}/jobs/{job['id']}/tasks/{a['id']}", json={"description": "A2"}, headers=poster_headers
        )
        assert renamed.json()["description"] == "A2"

        ordered = client.put(
            f"{API}/jobs/{job['id']}/tasks/order", json={"task_ids": [b["id"], a["id"]]}, headers=poster_headers
        ).json()
        assert [t["description"] for t in ordered] == ["B", "A2"]

        after_delete = client.delete(f"{API}/jobs/{job['id']}/tasks/{b['id']}", headers=poster_headers).json()
        assert after_delete["tasks_total"] == 1
        remaining = client.get(f"{API}/jobs/{job['id']}/tasks", headers=poster_headers).json()
        assert [(t["description"], t["position"]) for t in remaining] == [("A2", 0)]


class TestPaymentRoutes:
    def test_retry_payment(self, client, gateway, poster_headers):
        gateway.charge_error = GatewayRejected("Your card was declined.", code="card_declined")
        job = post_job(client, poster_headers)["job"]
        body = {"payment_method_id": "pm_card_visa", "amount": 50, "payment_type": "fixed"}

        declined = client.post(f"{API}/jobs/{job['id']}/payments", json=body, headers=poster_headers)
        assert declined.status_code == 402
        assert declined.json() == {"message": "Your card was declined."}

        gateway.charge_error = None
        paid = client.post(f"{API}/jobs/{job['id']}/payments", json=body, headers=poster_headers)
        assert paid.status_code == 200
        assert paid.json()["success"] is True
        assert paid.json()["status"] == "succeeded"

    def test_job_payments_for_participants(self, client, poster_headers, other_headers):
        job = post_job(client, poster_headers)["job"]
        assert len(client.get(f"{API}/jobs/{job['id']}/payments", headers=poster_headers).json()) == 1
        assert client.get(f"{API}/jobs/{job['id']}/payments", headers=other_headers).status_code == 403


class TestEarningRoutes:
    def test_payout_retry(self, client, gateway, ledger, poster_headers, worker_headers, worker_id):
        job = post_job(client, poster_headers)["job"]
        assign(client, job["id"], poster_headers, worker_headers)
        finish_tasks(client, job["id"], poster_headers, worker_headers)
        client.post(f"{API}/jobs/{job['id']}/complete", headers=worker_headers)

        earning = client.get(f"{API}/earnings/me", headers=worker_headers).json()["earnings"][0]
        assert earning["status"] == "pending"

        no_account = client.post(f"{API}/earnings/{earning['id']}/payout", headers=poster_headers)
        assert no_account.status_code == 400

        client.post(f"{API}/connect/account", headers=worker_headers)
        paid = client.post(f"{API}/earnings/{earning['id']}/payout", headers=poster_headers)
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"

    def test_cancel_earning_by_worker_forbidden(self, client, poster_headers, worker_headers):
        job = post_job(client, poster_headers)["job"]
        assign(client, job["id"], poster_headers, worker_headers)
        finish_tasks(client, job["id"], poster_headers, worker_headers)
        client.post(f"{API}/jobs/{job['id']}/complete", headers=worker_headers)
        earning = client.get(f"{API}/earnings/me", headers=worker_headers).json()["earnings"][0]

        assert client.post(f"{API}/earnings/{earning['id']}/cancel", headers=worker_headers).status_code == 403
        cancelled = client.post(f"{API}/earnings/{earning['id']}/cancel", headers=poster_headers)
        assert cancelled.json()["status"] == "cancelled"


class TestConnectRoutes:
    def test_status_without_account(self, client, worker_headers):
        data = client.get(f"{API}/connect/account-status", headers=worker_headers).json()
        assert data["exists"] is False
        assert data["account_status"] == "incomplete"

    def test_status_after_setup(self, client, worker_headers):
        client.post(f"{API}/connect/account", headers=worker_headers)
        data = client.get(f"{API}/connect/account-status", headers=worker_headers).json()
        assert data["exists"] is True
        assert data["account_status"] == "pending"
        assert data["onboarding_url"] is not None


class TestWebhookRoute:
    URL = f"{API}/webhooks/stripe"

    def send(self, client, payload, signature="valid"):
        return client.post(
            self.URL,
            content=json.dumps(payload),
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )

    def test_bad_signature(self, client):
        response = self.send(client, {"id": "evt_1", "type": "charge.refunded"}, signature="forged")
        assert response.status_code == 400
        assert response.json() == {"message": "Invalid webhook signature"}

    def test_ignored_event(self, client):
        response = self.send(client, {"id": "evt_1", "type": "customer.created", "data": {"object": {}}})
        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "ignored"}

    def test_conflict_still_acknowledged(self, client):
        payload = {"id": "evt_2", "type": "transfer.paid", "data": {"object": {"id": "tr_x", "metadata": {}}}}
        response = self.send(client, payload)
        assert response.status_code == 200
        assert response.json()["outcome"] == "conflict"

    def test_payment_succeeded_applied(self, client, gateway, poster_headers):
        gateway.charge_status = "processing"
        created = post_job(client, poster_headers)
        assert created["job"]["payment_status"] == "pending"
        payload = {
            "id": "evt_5",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": created["payment"]["transaction_id"], "amount": 5250}},
        }

        response = self.send(client, payload)

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "applied"}
        job = client.get(f"{API}/jobs/{created['job']['id']}", headers=poster_headers).json()
        assert job["payment_status"] == "paid"

        again = self.send(client, payload)
        assert again.status_code == 200
        assert again.json() == {"received": True, "outcome": "duplicate"}

    def test_duplicate_delivery(self, client, poster_headers):
        created = post_job(client, poster_headers)
        payload = {
            "id": "evt_3",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": created["payment"]["transaction_id"], "amount": 5250}},
        }
        assert self.send(client, payload).json()["outcome"] == "duplicate"
        assert self.send(client, payload).json()["outcome"] == "duplicate"

    def test_unexpected_failure_returns_500(self, client, reconciler, monkeypatch):
        async def explode(event):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(reconciler, "reconcile", explode)
        response = self.send(client, {"id": "evt_4", "type": "charge.refunded", "data": {"object": {}}})
        assert response.status_code == 500
        assert response.json() == {"message": "Webhook processing failed"}

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature(self, client, signature):
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["Stripe-Signature"] = signature
        response = client.post(self.URL, content="{}", headers=headers)
        assert response.status_code == 400
