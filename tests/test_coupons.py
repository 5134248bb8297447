from datetime import datetime, timedelta


def test_admin_creates_coupon_with_uppercase_code(client, db, admin_headers):
    response = client.post(
        "/api/coupons",
        json={"code": "welcome10", "value": 150, "minimumOrderValue": 800, "expiryDate": "2999-12-31"},
        headers=admin_headers,
    )

    assert response.status_code == 201
    coupon = response.get_json()["coupon"]
    assert coupon["code"] == "WELCOME10"
    assert coupon["minimum_order_value"] == 800
    assert coupon["expired"] is False
    assert db.coupons.count_documents({"code": "WELCOME10"}) == 1


def test_coupon_creation_validation(client, admin_headers, coupon):
    duplicate = client.post(
        "/api/coupons", json={"code": "save200", "value": 100}, headers=admin_headers
    )
    no_value = client.post("/api/coupons", json={"code": "NEW"}, headers=admin_headers)
    bad_date = client.post(
        "/api/coupons", json={"code": "NEW", "value": 10, "expiryDate": "soon"}, headers=admin_headers
    )

    assert duplicate.status_code == 400
    assert no_value.status_code == 400
    assert bad_date.status_code == 400


def test_coupon_management_requires_admin(client, user_headers):
    assert client.get("/api/coupons", headers=user_headers).status_code == 403
    assert client.post("/api/coupons", json={"code": "X", "value": 1}, headers=user_headers).status_code == 403
    assert client.get("/api/coupons").status_code == 401


def test_update_and_delete_coupon(client, db, admin_headers, coupon):
    coupon_id = str(coupon["_id"])

    updated = client.put(
        f"/api/coupons/{coupon_id}", json={"value": 300}, headers=admin_headers
    )
    assert updated.status_code == 200
    assert updated.get_json()["coupon"]["value"] == 300
    assert updated.get_json()["coupon"]["code"] == "SAVE200"

    listing = client.get("/api/coupons", headers=admin_headers).get_json()["coupons"]
    assert [entry["code"] for entry in listing] == ["SAVE200"]

    deleted = client.delete(f"/api/coupons/{coupon_id}", headers=admin_headers)
    assert deleted.status_code == 200
    assert db.coupons.count_documents({}) == 0
    assert client.delete(f"/api/coupons/{coupon_id}", headers=admin_headers).status_code == 404


def test_validate_coupon_success(client, coupon):
    response = client.post("/api/coupons/validate", json={"code": "save200", "orderAmount": 1500})

    assert response.status_code == 200
    assert response.get_json() == {
        "valid": True,
        "code": "SAVE200",
        "value": 200,
        "minimumOrderValue": 1000,
    }


def test_validate_coupon_unknown_code(client):
    response = client.post("/api/coupons/validate", json={"code": "NOPE"})
    assert response.status_code == 404
    assert response.get_json()["valid"] is False


def test_validate_coupon_below_minimum(client, coupon):
    response = client.post("/api/coupons/validate", json={"code": "SAVE200", "orderAmount": 500})

    assert response.status_code == 400
    body = response.get_json()
    assert body["valid"] is False
    assert body["message"] == "Minimum order value of PKR 1,000 is required for this coupon"


def test_validate_expired_coupon(client, db):
    db.coupons.insert_one(
        {
            "code": "OLD50",
            "value": 50,
            "minimum_order_value": 0,
            "expiry_date": datetime.utcnow() - timedelta(days=1),
            "created_at": datetime.utcnow(),
        }
    )

    response = client.post("/api/coupons/validate", json={"code": "old50"})

    assert response.status_code == 400
    assert response.get_json()["message"] == "This coupon has expired"
