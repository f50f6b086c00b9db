import pytest

from entitlements.billing.gift_tokens import GiftTokenStore
from entitlements.models import GiftStatus

pytestmark = pytest.mark.integration


@pytest.fixture()
def gift(app, make_user):
    return GiftTokenStore().issue(make_user().id, "plus", "month", message="for you")


def test_redeem_requires_authentication(client):
    response = client.post("/api/gift/redeem", json={"token": "abc"})
    assert response.status_code == 401


def test_redeem_gift(client, patched_provider, make_user, auth_headers, gift):
    redeemer = make_user()

    response = client.post("/api/gift/redeem", json={"token": gift.token}, headers=auth_headers(redeemer))

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "success"
    assert body["data"]["action"] == "activated"
    assert body["data"]["tier"] == "plus"
    assert gift.status == GiftStatus.REDEEMED
    assert response.headers["X-Request-ID"]


def test_redeem_twice_is_rejected(client, patched_provider, make_user, auth_headers, gift):
    redeemer = make_user()
    client.post("/api/gift/redeem", json={"token": gift.token}, headers=auth_headers(redeemer))

    response = client.post("/api/gift/redeem", json={"token": gift.token}, headers=auth_headers(make_user()))

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_TOKEN"


def test_redeem_without_token(client, make_user, auth_headers):
    response = client.post("/api/gift/redeem", json={}, headers=auth_headers(make_user()))

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_TOKEN"


def test_check_gift(client, make_user, auth_headers, gift):
    response = client.get(f"/api/gift/check?token={gift.token}", headers=auth_headers(make_user()))

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["valid"] is True
    assert data["tier"] == "plus"
    assert data["message"] == "for you"


def test_check_expired_gift(app, client, make_user, auth_headers, now):
    store = GiftTokenStore(clock=lambda: now, ttl_days=1)
    expired = store.issue(make_user().id, "plus", "month")

    response = client.get(f"/api/gift/check?token={expired.token}", headers=auth_headers(make_user()))

    assert response.status_code == 410
    assert response.get_json()["error"] == "GIFT_EXPIRED"


def test_purchased_lists_own_gifts(client, auth_headers, gift):
    purchaser = gift.purchased_by

    response = client.get("/api/gift/purchased", headers=auth_headers(purchaser))

    data = response.get_json()["data"]
    assert [g["token"] for g in data["purchased"]] == [gift.token]
    assert data["redeemed"] == []


def test_subscription_info(client, patched_provider, make_user, auth_headers, gift):
    redeemer = make_user()
    client.post("/api/gift/redeem", json={"token": gift.token}, headers=auth_headers(redeemer))

    response = client.get("/api/subscription/info", headers=auth_headers(redeemer))

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["status"] == "PLUS_CREDIT"
    assert data["hasPlusAccess"] is True
