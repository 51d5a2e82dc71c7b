"""
Tests for API endpoints
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.plan import PlanTier
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.payment_gateway import (PaymentInfo, PaymentStatus,
                                          PaymentStatusResult)

MEDIA_SIZE = 1000


@pytest.fixture
def services(client, storage):
    """Point the route dependencies at the test storage and a fake processor"""
    from app.main import app
    from app.api.v1.routes.downloads import get_download_service
    from app.api.v1.routes.payments import get_payment_reconciler
    from app.api.v1.routes.videos import get_media_service
    from app.services.download_service import DownloadService
    from app.services.media_service import MediaService
    from app.services.payment_reconciler import PaymentReconciler

    gateway = MagicMock()
    gateway.check_payment_status = AsyncMock()
    gateway.create_checkout = AsyncMock()

    app.dependency_overrides[get_media_service] = lambda: MediaService(storage=storage)
    app.dependency_overrides[get_download_service] = lambda: DownloadService(storage=storage)
    app.dependency_overrides[get_payment_reconciler] = lambda: PaymentReconciler(gateway=gateway)
    return gateway


@pytest.fixture
def subscriber(plans, make_user, make_subscription, login):
    user = make_user("user_1")
    make_subscription(user.id, plan_tier=PlanTier.PREMIUM)
    login("user_1")
    return user


class TestHealthEndpoint:
    """Test health check endpoint"""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestVideoStreaming:
    """Range requests against /videos"""

    def test_requires_authentication(self, client, services, make_media):
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}")

        assert response.status_code == 401

    def test_partial_content(self, client, services, subscriber, make_media):
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}", headers={"Range": "bytes=100-199"})

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 100-199/1000"
        assert response.headers["content-length"] == "100"
        assert response.headers["accept-ranges"] == "bytes"
        assert response.headers["content-type"].startswith("video/mp4")
        assert response.content == bytes(i % 256 for i in range(100, 200))

    def test_full_content(self, client, services, subscriber, make_media):
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}")

        assert response.status_code == 200
        assert response.headers["content-length"] == "1000"
        assert response.headers["accept-ranges"] == "bytes"
        assert len(response.content) == MEDIA_SIZE

    def test_suffix_range(self, client, services, subscriber, make_media):
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}", headers={"Range": "bytes=-10"})

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 990-999/1000"
        assert response.content == bytes(i % 256 for i in range(990, 1000))

    def test_unsatisfiable_range(self, client, services, subscriber, make_media):
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}", headers={"Range": "bytes=5000-"})

        assert response.status_code == 416
        assert response.headers["content-range"] == "bytes */1000"
        assert response.json()["detail"]["range_not_satisfiable"] is True

    def test_unknown_video(self, client, services, subscriber):
        response = client.get("/api/v1/videos/missing")

        assert response.status_code == 404

    def test_requires_subscription(self, client, services, plans, make_user, login, make_media):
        make_user("user_2")
        login("user_2")
        media = make_media(size=MEDIA_SIZE)

        response = client.get(f"/api/v1/videos/{media.id}")

        assert response.status_code == 403
        assert response.json()["detail"]["upgrade_required"] is True


class TestPaymentEndpoints:
    """Webhook, verify and checkout"""

    def test_webhook_always_acknowledges(self, client, services):
        response = client.post("/api/v1/payments/webhook", content=b"not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = client.post("/api/v1/payments/webhook", json={"event": "something.else"})
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_webhook_activates_subscription(self, client, services, db_session, make_user):
        make_user("user_1")
        payload = {
            'event': 'payin.session.completed',
            'numeroTransaction': 'txn_1',
            'Montant': 3500,
            'personal_Info': [{'userId': 'user_1', 'planId': 'premium'}],
        }

        first = client.post("/api/v1/payments/webhook", json=payload)
        second = client.post("/api/v1/payments/webhook", json=payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["transactionId"] == "txn_1"
        subscription = db_session.query(Subscription).one()
        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_verify_paid(self, client, services, db_session, login):
        login("user_1")
        services.check_payment_status.return_value = PaymentStatusResult(
            status=PaymentStatus.PAID,
            transaction_id="txn_1",
            amount=5000.0,
            info=PaymentInfo(user_id="user_1", plan_id="family", plan_name="Family"),
        )

        response = client.post("/api/v1/payments/verify", json={"token": "tok_1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["plan"]["id"] == "family"
        assert db_session.query(Subscription).one().plan_tier == PlanTier.FAMILY

    def test_verify_pending(self, client, services, login):
        login("user_1")
        services.check_payment_status.return_value = PaymentStatusResult(status=PaymentStatus.PENDING)

        response = client.post("/api/v1/payments/verify", json={"token": "tok_1"})

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["status"] == "pending"

    def test_checkout_requires_authentication(self, client, services):
        response = client.post("/api/v1/payments/checkout", json={"plan_id": "premium"})
        assert response.status_code == 401


class TestDownloadEndpoints:
    """Offline downloads"""

    def test_create_list_delete(self, client, services, subscriber, make_media):
        media = make_media(size=MEDIA_SIZE)

        created = client.post("/api/v1/downloads", json={"media_id": media.id})
        assert created.status_code == 201
        download_id = created.json()["download"]["id"]

        duplicate = client.post("/api/v1/downloads", json={"media_id": media.id})
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["already_exists"] is True

        listing = client.get("/api/v1/downloads")
        assert listing.status_code == 200
        assert listing.json()["stats"]["remaining"] == 4

        fetched = client.get(f"/api/v1/downloads/{download_id}")
        assert fetched.status_code == 200
        assert fetched.json()["download"]["media_id"] == media.id

        deleted = client.delete(f"/api/v1/downloads/{download_id}")
        assert deleted.status_code == 200
        assert client.get(f"/api/v1/downloads/{download_id}").status_code == 404

    def test_limit_reached(self, client, services, subscriber, make_media):
        for _ in range(5):
            assert client.post("/api/v1/downloads", json={"media_id": make_media().id}).status_code == 201

        response = client.post("/api/v1/downloads", json={"media_id": make_media().id})

        assert response.status_code == 429
        assert response.json()["detail"]["limit_reached"] is True

    def test_basic_plan_cannot_download(self, client, services, plans, make_user, make_subscription, login,
                                        make_media):
        make_user("user_3")
        make_subscription("user_3", plan_tier=PlanTier.BASIC)
        login("user_3")

        response = client.post("/api/v1/downloads", json={"media_id": make_media().id})

        assert response.status_code == 403
        assert response.json()["detail"]["upgrade_required"] is True


class TestSubscriptionEndpoints:

    def test_plans_are_public(self, client, db_session):
        response = client.get("/api/v1/subscriptions/plans")

        assert response.status_code == 200
        tiers = [plan["tier"] for plan in response.json()["plans"]]
        assert tiers == ["basic", "premium", "family"]

    def test_current_subscription(self, client, subscriber):
        response = client.get("/api/v1/subscriptions/current")

        assert response.status_code == 200
        body = response.json()
        assert body["plan_tier"] == "premium"
        assert body["status"] == "active"
        assert body["limits"]["max_downloads"] == 5


class TestAdminEndpoints:

    def test_requires_admin(self, client, plans, make_user, login):
        make_user("user_1")
        login("user_1")

        response = client.post("/api/v1/admin/users/user_1/subscription", json={"plan_id": "premium"})

        assert response.status_code == 403

    def test_activate_and_renew(self, client, plans, make_user, login):
        make_user("user_1")
        login("admin_1", is_admin=True)

        activated = client.post("/api/v1/admin/users/user_1/subscription", json={"plan_id": "family"})
        assert activated.status_code == 200
        subscription_id = activated.json()["subscription"]["id"]

        renewed = client.post(f"/api/v1/admin/subscriptions/{subscription_id}/renew")
        assert renewed.status_code == 200

        cancelled = client.post(f"/api/v1/admin/subscriptions/{subscription_id}/cancel")
        assert cancelled.status_code == 200

        again = client.post(f"/api/v1/admin/subscriptions/{subscription_id}/renew")
        assert again.status_code == 409
        assert again.json()["detail"]["invalid_transition"] is True

    def test_unknown_plan(self, client, plans, make_user, login):
        make_user("user_1")
        login("admin_1", is_admin=True)

        response = client.post("/api/v1/admin/users/user_1/subscription", json={"plan_id": "platinum"})

        assert response.status_code == 400
