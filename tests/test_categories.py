from catalog import DEFAULT_CATEGORIES
from seed_categories import seed_categories


def create_category(client, headers, name, **extra):
    payload = {"name": name}
    payload.update(extra)
    return client.post("/api/categories", json=payload, headers=headers)


def orders_by_slug(client, headers):
    categories = client.get("/api/categories/admin/all", headers=headers).get_json()["categories"]
    return {category["slug"]: category["display_order"] for category in categories}


def test_create_category_generates_slug(client, admin_headers):
    response = create_category(client, admin_headers, "Water Bottles & Lunch Boxes", description="Keep it cool")

    assert response.status_code == 201
    category = response.get_json()["category"]
    assert category["slug"] == "water-bottles-lunch-boxes"
    assert category["display_order"] == 1
    assert category["is_active"] is True


def test_create_category_validation(client, admin_headers, user_headers):
    create_category(client, admin_headers, "Novels")

    assert create_category(client, admin_headers, "Novels").status_code == 400
    assert create_category(client, admin_headers, "").status_code == 400
    assert create_category(client, admin_headers, "!!!").status_code == 400
    assert create_category(client, user_headers, "Abayas").status_code == 403


def test_public_listing_shows_active_categories_in_order(client, admin_headers):
    create_category(client, admin_headers, "Novels")
    create_category(client, admin_headers, "Abayas", isActive=False)
    create_category(client, admin_headers, "Household")

    public = client.get("/api/categories").get_json()["categories"]

    assert [category["slug"] for category in public] == ["novels", "household"]
    assert orders_by_slug(client, admin_headers) == {"novels": 1, "abayas": 2, "household": 3}
    assert client.get("/api/categories/household").get_json()["category"]["name"] == "Household"
    assert client.get("/api/categories/abayas").status_code == 404


def test_moving_a_category_shifts_the_others(client, admin_headers):
    create_category(client, admin_headers, "Alpha")
    create_category(client, admin_headers, "Beta")
    gamma = create_category(client, admin_headers, "Gamma").get_json()["category"]

    response = client.patch(
        f"/api/categories/{gamma['id']}", json={"displayOrder": 1}, headers=admin_headers
    )

    assert response.status_code == 200
    assert orders_by_slug(client, admin_headers) == {"gamma": 1, "alpha": 2, "beta": 3}


def test_rename_category_updates_slug_and_products(client, db, admin_headers, products):
    category = create_category(client, admin_headers, "School Bags").get_json()["category"]
    create_category(client, admin_headers, "Novels")

    conflict = client.patch(
        f"/api/categories/{category['id']}", json={"name": "Novels"}, headers=admin_headers
    )
    renamed = client.patch(
        f"/api/categories/{category['id']}", json={"name": "Backpacks"}, headers=admin_headers
    )

    assert conflict.status_code == 400
    assert renamed.get_json()["category"]["slug"] == "backpacks"
    assert db.products.find_one({"id": 3})["category"] == "backpacks"


def test_delete_category_in_use_is_refused(client, db, admin_headers, products):
    used = create_category(client, admin_headers, "Course Books").get_json()["category"]
    create_category(client, admin_headers, "Novels")
    spare = create_category(client, admin_headers, "Household").get_json()["category"]

    refused = client.delete(f"/api/categories/{used['id']}", headers=admin_headers)
    assert refused.status_code == 400

    client.delete(f"/api/categories/{spare['id']}", headers=admin_headers)
    db.products.delete_many({"category": "course-books"})
    removed = client.delete(f"/api/categories/{used['id']}", headers=admin_headers)

    assert removed.status_code == 200
    assert orders_by_slug(client, admin_headers) == {"novels": 1}


def test_category_lookup_errors(client, admin_headers):
    assert client.patch("/api/categories/not-an-id", json={}, headers=admin_headers).status_code == 400
    assert client.delete("/api/categories/65a000000000000000000000", headers=admin_headers).status_code == 404


def test_seed_categories_is_idempotent(db):
    created, skipped = seed_categories(db.categories)
    assert created == len(DEFAULT_CATEGORIES)
    assert skipped == 0

    created, skipped = seed_categories(db.categories)
    assert created == 0
    assert skipped == len(DEFAULT_CATEGORIES)

    orders = sorted(document["display_order"] for document in db.categories.find())
    assert orders == list(range(1, len(DEFAULT_CATEGORIES) + 1))
    assert db.categories.find_one({"slug": "lunchbox-water-bottle"})["name"] == "Lunchbox/water bottle"
