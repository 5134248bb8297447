from datetime import datetime, timedelta


def test_subscribe_and_manage_subscribers(client, db, admin_headers, user_headers):
    created = client.post("/api/subscribers", json={"email": "Reader@Example.com"})
    assert created.status_code == 201
    assert created.get_json()["data"]["email"] == "reader@example.com"

    duplicate = client.post("/api/subscribers", json={"email": "reader@example.com"})
    assert duplicate.status_code == 400
    assert duplicate.get_json()["message"] == "You have already subscribed !!"

    assert client.post("/api/subscribers", json={}).status_code == 400
    assert client.post("/api/subscribers", json={"email": "nope"}).status_code == 400

    assert client.get("/api/subscribers", headers=user_headers).status_code == 403
    listing = client.get("/api/subscribers", headers=admin_headers).get_json()
    assert listing["count"] == 1

    subscriber_id = listing["subscribers"][0]["id"]
    assert client.delete(f"/api/subscribers/{subscriber_id}", headers=admin_headers).status_code == 200
    assert db.subscribers.count_documents({}) == 0
    assert client.delete(f"/api/subscribers/{subscriber_id}", headers=admin_headers).status_code == 404


def test_admin_actions_are_audited(client, admin_headers):
    client.post("/api/coupons", json={"code": "AUDIT", "value": 10}, headers=admin_headers)

    body = client.get("/api/admin/logs?search=coupon", headers=admin_headers).get_json()

    assert body["pagination"]["total"] == 1
    entry = body["logs"][0]
    assert entry["action"] == "Created coupon"
    assert entry["user_email"] == "admin@example.com"
    assert entry["metadata"] == {"code": "AUDIT"}


def test_admin_logs_filters_and_delete(client, db, admin_headers, user_headers):
    now = datetime.utcnow()
    db.audit_logs.insert_many(
        [
            {"user_email": "a@example.com", "action": "Signed in", "metadata": {}, "created_at": now - timedelta(days=10)},
            {"user_email": "b@example.com", "action": "Signed in", "metadata": {}, "created_at": now},
        ]
    )

    assert client.get("/api/admin/logs", headers=user_headers).status_code == 403
    since = (now - timedelta(days=1)).strftime("%Y-%m-%d")
    recent = client.get(f"/api/admin/logs?start={since}", headers=admin_headers).get_json()
    assert [entry["user_email"] for entry in recent["logs"]] == ["b@example.com"]

    paged = client.get("/api/admin/logs?limit=1&page=2", headers=admin_headers).get_json()
    assert paged["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}

    deleted = client.delete("/api/admin/logs", json={}, headers=admin_headers).get_json()
    assert deleted["deleted"] == 2
    # the purge itself is recorded
    assert db.audit_logs.count_documents({"action": "Deleted audit logs"}) == 1


def test_service_endpoints(client):
    assert client.get("/").data == b"Backend is up and running"
    connectivity = client.get("/api/test").get_json()
    assert connectivity["success"] is True
    assert connectivity["origin"] == "No origin header"


def test_non_object_json_body_is_rejected(client, user_headers, products):
    assert client.post("/api/subscribers", json=[1]).status_code == 400
    assert client.post("/api/coupons/validate", json=["SAVE200"]).status_code == 400
    assert client.post("/api/cart/addToCart", json=[2], headers=user_headers).status_code == 400


def test_unknown_route_returns_json(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.get_json()["success"] is False
