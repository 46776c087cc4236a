def test_wishlist_roundtrip(client, user, make_product):
    product = make_product(name="Silk Scarf", price=7500.0)
    res = client.post("/api/wishlist", json={"productId": product["id"]}, headers=user["headers"])
    assert res.status_code == 201, res.text
    card = res.json()
    assert card["name"] == "Silk Scarf"
    assert card["in_stock"] is True
    assert "/upload/f_auto,q_auto,dpr_auto,c_fill,g_auto,w_400,fl_progressive,fl_immutable_cache/" in card["image"]

    res = client.post("/api/wishlist", json={"productId": product["id"]}, headers=user["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "Product already in wishlist"

    items = client.get("/api/wishlist", headers=user["headers"]).json()
    assert [i["product_id"] for i in items] == [product["id"]]

    res = client.delete(f"/api/wishlist/{card['id']}", headers=user["headers"])
    assert res.status_code == 200
    assert client.get("/api/wishlist", headers=user["headers"]).json() == []
    assert client.delete(f"/api/wishlist/{card['id']}", headers=user["headers"]).status_code == 404


def test_wishlist_validation(client, user):
    res = client.post("/api/wishlist", json={}, headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["error"] == "Product ID is required"

    res = client.post("/api/wishlist", json={"productId": "64b7f0c2a1b2c3d4e5f60718"}, headers=user["headers"])
    assert res.status_code == 404
    assert client.get("/api/wishlist").status_code == 401


def test_wishlist_hides_inactive_products(client, db, user, make_product):
    product = make_product()
    client.post("/api/wishlist", json={"productId": product["id"]}, headers=user["headers"])
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})
    assert client.get("/api/wishlist", headers=user["headers"]).json() == []
