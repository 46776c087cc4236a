import pytest

import reviews
from conftest import StaleReads


@pytest.fixture
def product(make_product):
    return make_product(name="Ankara Dress")


def _submit(client, reviewer, product, rating=5, **extra):
    body = {"productId": product["id"], "rating": rating, "title": "Lovely fit", **extra}
    return client.post("/api/reviews", json=body, headers=reviewer["headers"])


def _approve(client, admin, review_id):
    res = client.put(f"/api/admin/reviews/{review_id}/moderate", json={"status": "approved"}, headers=admin["headers"])
    assert res.status_code == 200, res.text
    return res.json()


def test_submit_review_starts_hidden(client, user, product, make_order):
    make_order(user, product, status="delivered", payment_status="paid")
    res = _submit(client, user, product, comment="Fits well")
    assert res.status_code == 201, res.text
    review = res.json()["review"]
    assert review["moderation_status"] == "pending"
    assert review["is_visible"] is False
    assert review["is_verified_purchase"] is True
    assert review["user_name"] == "Ada L."
    assert "user_id" not in review

    listing = client.get(f"/api/products/{product['id']}/reviews").json()
    assert listing["reviews"] == []
    assert listing["stats"]["total_reviews"] == 0


def test_unverified_review(client, user, product):
    res = _submit(client, user, product)
    assert res.status_code == 201, res.text
    assert res.json()["review"]["is_verified_purchase"] is False


def test_one_review_per_product(client, user, product):
    assert _submit(client, user, product).status_code == 201
    res = _submit(client, user, product, rating=1)
    assert res.status_code == 409
    assert res.json()["error"] == "You have already reviewed this product"


def test_unique_index_catches_concurrent_review(client, db, monkeypatch, user, product):
    assert _submit(client, user, product).status_code == 201
    monkeypatch.setattr(reviews, "_reviews", lambda: StaleReads(db["review"]))
    res = _submit(client, user, product, rating=2)
    assert res.status_code == 409
    assert res.json()["error"] == "You have already reviewed this product"
    assert db["review"].count_documents({}) == 1


@pytest.mark.parametrize("body, error", [
    ({"rating": 4.5}, "Rating must be an integer between 1 and 5"),
    ({"rating": 6}, "Rating must be an integer between 1 and 5"),
    ({"rating": 3, "title": "  ", "comment": ""}, "Review must have either a title or comment"),
    ({"rating": 3, "title": "x" * 101}, "Review title cannot exceed 100 characters"),
    ({"rating": None}, "Product ID and rating are required"),
])
def test_review_validation(client, user, product, body, error):
    res = client.post("/api/reviews", json={"productId": product["id"], "title": "ok", **body}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == error


def test_moderation_updates_product_rating(client, db, admin, make_user, product):
    first = _submit(client, make_user(name="Ada Lovelace"), product, rating=5).json()["review"]
    second = _submit(client, make_user(name="Grace Hopper"), product, rating=2).json()["review"]

    res = client.put(f"/api/admin/reviews/{first['id']}/moderate", json={"status": "rejected"}, headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Reason is required for rejection or flagging"

    res = client.put(f"/api/admin/reviews/{first['id']}/moderate", json={"status": "hidden"}, headers=admin["headers"])
    assert res.json()["error"] == "Valid moderation status is required"

    approved = _approve(client, admin, first["id"])
    assert approved["is_visible"] is True
    assert approved["moderated_by"] == admin["id"]
    _approve(client, admin, second["id"])

    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["rating"] == 3.5
    assert stored["review_count"] == 2
    assert stored["rating_distribution"]["5"] == 1

    res = client.put(
        f"/api/admin/reviews/{second['id']}/moderate",
        json={"status": "rejected", "reason": "Off topic"},
        headers=admin["headers"],
    )
    assert res.json()["is_visible"] is False
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["rating"] == 5.0
    assert stored["review_count"] == 1


def test_public_listing_and_stats(client, admin, make_user, product):
    for name, rating in (("Ada Lovelace", 4), ("Grace Hopper", 2), ("Linus", 5)):
        review = _submit(client, make_user(name=name), product, rating=rating).json()["review"]
        _approve(client, admin, review["id"])

    res = client.get(f"/api/products/{product['id']}/reviews", params={"sort": "highest-rating"})
    assert res.status_code == 200
    body = res.json()
    assert [r["rating"] for r in body["reviews"]] == [5, 4, 2]
    assert [r["user_name"] for r in body["reviews"]] == ["Linus", "Ada L.", "Grace H."]
    assert body["stats"]["average_rating"] == 3.7
    assert body["stats"]["rating_distribution"] == {"1": 0, "2": 1, "3": 0, "4": 1, "5": 1}
    assert all("helpful_voters" not in r and "reported_by" not in r for r in body["reviews"])

    filtered = client.get(f"/api/products/{product['id']}/reviews", params={"rating": 2}).json()
    assert filtered["total"] == 1


def test_five_reports_flag_a_review(client, db, admin, user, make_user, product):
    review = _submit(client, user, product).json()["review"]
    _approve(client, admin, review["id"])

    for _ in range(4):
        res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Spam"}, headers=make_user()["headers"])
        assert res.status_code == 200, res.text
        assert res.json()["flagged"] is False

    res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Spam"}, headers=make_user()["headers"])
    assert res.json() == {"report_count": 5, "flagged": True, "moderation_status": "flagged"}

    stored = db["review"].find_one()
    assert stored["is_visible"] is False
    assert db["product"].find_one({"_id": product["_id"]})["review_count"] == 0


@pytest.mark.parametrize("prior", ["pending", "approved", "rejected"])
def test_fifth_report_flags_whatever_the_prior_status(client, db, admin, user, make_user, product, prior):
    review = _submit(client, user, product).json()["review"]
    if prior != "pending":
        res = client.put(
            f"/api/admin/reviews/{review['id']}/moderate",
            json={"status": prior, "reason": "Checked"},
            headers=admin["headers"],
        )
        assert res.status_code == 200, res.text

    for _ in range(5):
        res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Spam"}, headers=make_user()["headers"])
        assert res.status_code == 200, res.text
    assert res.json() == {"report_count": 5, "flagged": True, "moderation_status": "flagged"}

    stored = db["review"].find_one()
    assert stored["moderation_status"] == "flagged"
    assert stored["is_visible"] is False


def test_report_rules(client, admin, user, make_user, product):
    review = _submit(client, user, product).json()["review"]
    reporter = make_user()

    res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": " "}, headers=reporter["headers"])
    assert res.json()["error"] == "Report reason is required"

    res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Mine"}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Cannot report your own review"

    assert client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Rude"}, headers=reporter["headers"]).status_code == 200
    res = client.post(f"/api/reviews/{review['id']}/report", json={"reason": "Rude"}, headers=reporter["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "You have already reported this review"


def test_helpful_votes(client, admin, user, make_user, product):
    review = _submit(client, user, product).json()["review"]
    voter = make_user()

    res = client.post(f"/api/reviews/{review['id']}/helpful", headers=voter["headers"])
    assert res.status_code == 404

    _approve(client, admin, review["id"])
    res = client.post(f"/api/reviews/{review['id']}/helpful", headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Cannot vote on your own review"

    res = client.post(f"/api/reviews/{review['id']}/helpful", headers=voter["headers"])
    assert res.json() == {"helpful_votes": 1}
    assert client.post(f"/api/reviews/{review['id']}/helpful", headers=voter["headers"]).status_code == 409


def test_review_eligibility(client, user, product, make_order):
    url = f"/api/products/{product['id']}/reviews/eligibility"
    assert client.get(url).json() == {"can_review": False, "reason": "not_authenticated"}
    assert client.get(url, headers=user["headers"]).json() == {"can_review": False, "reason": "no_paid_order"}

    make_order(user, product, status="confirmed", payment_status="paid")
    assert client.get(url, headers=user["headers"]).json() == {"can_review": True, "my_review": None}

    _submit(client, user, product)
    body = client.get(url, headers=user["headers"]).json()
    assert body["can_review"] is False
    assert body["my_review"]["title"] == "Lovely fit"


def test_moderation_queue(client, admin, user, product):
    _submit(client, user, product)
    res = client.get("/api/admin/reviews", headers=admin["headers"])
    assert res.status_code == 200, res.text
    assert res.json()["total"] == 1
    assert res.json()["reviews"][0]["moderation_status"] == "pending"
    assert client.get("/api/admin/reviews", params={"status": "approved"}, headers=admin["headers"]).json()["total"] == 0
    assert client.get("/api/admin/reviews", headers=user["headers"]).status_code == 403
