# tests/conftest.py
from datetime import datetime

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

import store_api

TEST_PASSWORD = "password123"


class FakeStripeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def app(db, tmp_path):
    app = store_api.create_app(
        test_config={
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
            "IMAGE_UPLOAD_FOLDER": str(tmp_path / "images"),
            "ENABLE_CLEANUP_SCHEDULER": False,
            "RESEND_ORDER_SUMMARY_API_KEY": "",
            "STRIPE_SECRET_KEY": "",
            "FRONTEND_URL": "http://shop.test",
        },
        database=db,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def insert_user(db, name, email, role="user", cart_data=None):
    result = db.users.insert_one(
        {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(TEST_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "cart_data": cart_data or {},
            "created_at": datetime.utcnow(),
        }
    )
    return db.users.find_one({"_id": result.inserted_id})


def auth_headers(app, user_document):
    with app.app_context():
        token = create_access_token(identity=str(user_document["_id"]))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(db):
    return insert_user(db, "Ayesha Khan", "ayesha@example.com")


@pytest.fixture
def user_headers(app, user):
    return auth_headers(app, user)


@pytest.fixture
def admin(db):
    return insert_user(db, "Store Admin", "admin@example.com", role="admin")


@pytest.fixture
def admin_headers(app, admin):
    return auth_headers(app, admin)


@pytest.fixture
def products(db):
    now = datetime.utcnow()
    documents = [
        {
            "id": 1,
            "name": "Physics Textbook",
            "category": "course-books",
            "description": "Grade 10 physics course book",
            "image": "http://localhost/images/physics.png",
            "additional_images": [],
            "new_price": 1500,
            "old_price": 1200,
            "sizes": [],
            "available": True,
            "reviews": [],
            "average_rating": 0,
            "num_reviews": 0,
            "created_at": now,
        },
        {
            "id": 2,
            "name": "Gel Pen Set",
            "category": "stationary",
            "description": "Pack of 10 gel pens",
            "image": "http://localhost/images/pens.png",
            "additional_images": [],
            "new_price": 400,
            "old_price": 300,
            "sizes": [],
            "available": True,
            "reviews": [],
            "average_rating": 0,
            "num_reviews": 0,
            "created_at": now,
        },
        {
            "id": 3,
            "name": "School Bag",
            "category": "school-bags",
            "description": "Water resistant backpack",
            "image": "http://localhost/images/bag.png",
            "additional_images": [],
            "new_price": 2500,
            "old_price": 2000,
            "sizes": [{"size": "S", "price": 2000}, {"size": "L", "price": 2600}],
            "available": True,
            "reviews": [],
            "average_rating": 0,
            "num_reviews": 0,
            "created_at": now,
        },
        {
            "id": 4,
            "name": "Desk Lamp",
            "category": "gadgets",
            "description": "LED desk lamp",
            "image": "http://localhost/images/lamp.png",
            "additional_images": [],
            "new_price": 4500,
            "old_price": 4000,
            "sizes": [],
            "available": False,
            "reviews": [],
            "average_rating": 0,
            "num_reviews": 0,
            "created_at": now,
        },
    ]
    db.products.insert_many(documents)
    return {document["id"]: db.products.find_one({"id": document["id"]}) for document in documents}


@pytest.fixture
def address():
    return {
        "firstName": "Ayesha",
        "lastName": "Khan",
        "email": "ayesha@example.com",
        "Address": "House 12, Block 5, Clifton",
        "city": "Lahore",
        "country": "Pakistan",
        "Phone": "03001234567",
    }


@pytest.fixture
def coupon(db):
    db.coupons.insert_one(
        {
            "code": "SAVE200",
            "value": 200,
            "minimum_order_value": 1000,
            "expiry_date": None,
            "created_at": datetime.utcnow(),
        }
    )
    return db.coupons.find_one({"code": "SAVE200"})


def set_cart(db, user_document, cart_data):
    db.users.update_one({"_id": user_document["_id"]}, {"$set": {"cart_data": cart_data}})
