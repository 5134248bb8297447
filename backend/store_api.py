import math
import os
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin
from uuid import uuid4

import bcrypt
import requests
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from catalog import (
    canonical_categories,
    collect_referenced_filenames,
    compute_rating_summary,
    find_orphaned_files,
    image_filename_from_url,
    normalize_category,
    normalize_sizes_input,
    parse_bool,
    parse_json_list,
    safe_float,
    safe_positive_int,
    slugify_category_name,
)
from cleanup_scheduler import purge_abandoned_orders, start_cleanup_scheduler
from order_utils import (
    DIRECT_PAYMENT_METHODS,
    ORDER_STATUSES,
    PAYMENT_BANK_TRANSFER,
    PAYMENT_COD,
    PAYMENT_STRIPE,
    STATUS_CONFIRMED,
    STATUS_CONFIRMED_COD,
    STATUS_DELIVERED,
    STATUS_PAYMENT_VERIFIED,
    STATUS_PENDING_PAYMENT,
    STATUS_PENDING_VERIFICATION,
    apply_discount,
    build_stripe_line_items,
    calculate_shipping_fee,
    calculate_subtotal,
    calculate_total_quantity,
    evaluate_coupon,
    find_review_match,
    format_order_number_for_display,
    generate_order_number,
    order_contains_product,
    parse_cart_key,
    unit_price_for,
    validate_address,
)

load_dotenv()

_resend_order_summary_api_key = (
    os.getenv("RESEND_ORDER_SUMMARY_API_KEY") or os.getenv("RESEND_API_KEY") or ""
).strip()

_configured_admin_email = os.getenv("DEFAULT_ADMIN_EMAIL", "") or ""
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()

STRIPE_API_BASE_URL = "https://api.stripe.com/v1"

MESSAGE_STATUSES = ("unread", "read", "replied")
MESSAGE_MAX_LENGTH = 5000


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo handle, which is how the tests run
    against an in-memory MongoDB.
    """
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(os.getenv("JWT_ACCESS_TOKEN_HOURS", "24"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/tbs_store"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["IMAGE_UPLOAD_FOLDER"] = os.path.join(app.root_path, "upload", "images")
    app.config["IMAGE_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "").strip()
    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY", "").strip()
    app.config["ORDER_NOTIFICATION_EMAIL"] = os.getenv(
        "ORDER_NOTIFICATION_EMAIL", DEFAULT_ADMIN_EMAIL
    ).strip()
    app.config["ORDER_SENDER_EMAIL"] = (
        os.getenv("ORDER_SENDER_EMAIL", "orders@tbs-store.pk") or "orders@tbs-store.pk"
    )
    app.config["RESEND_ORDER_SUMMARY_API_KEY"] = _resend_order_summary_api_key
    app.config["ENABLE_CLEANUP_SCHEDULER"] = parse_bool(
        os.getenv("ENABLE_CLEANUP_SCHEDULER"), True
    )
    app.config["CLEANUP_INTERVAL_MINUTES"] = int(
        os.getenv("CLEANUP_INTERVAL_MINUTES", "15")
    )

    if test_config:
        app.config.update(test_config)

    os.makedirs(app.config["IMAGE_UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:3001",
        app.config["FRONTEND_URL"],
        os.getenv("ADMIN_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins)

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return jsonify({"message": "Unauthorized Access.", "error": reason}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"message": "Invalid or expired token.", "error": reason}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Invalid or expired token."}), 401

    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database

    audit_logs_collection = db.audit_logs
    index_specs = [
        (db.users, "email", {"unique": True}),
        (db.products, "id", {"unique": True}),
        (db.categories, "slug", {"unique": True}),
        (db.coupons, "code", {"unique": True}),
        (
            db.orders,
            "order_number",
            {"unique": True, "partialFilterExpression": {"order_number": {"$type": "string"}}},
        ),
        (db.subscribers, "email", {"unique": True}),
        (db.messages, [("created_at", -1)], {}),
        (audit_logs_collection, [("created_at", -1)], {}),
    ]
    for collection, keys, options in index_specs:
        try:
            collection.create_index(keys, **options)
        except Exception as exc:
            app.logger.warning(
                "Unable to ensure index on %s: %s", collection.name, exc
            )

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    min_password_length = 8
    max_checkout_attempts = 3

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def serialize_datetime(value) -> Optional[str]:
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        return None

    def parse_object_id(value):
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
        if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            return parsed + timedelta(days=1)
        return parsed

    def parse_limit(value, default: int, maximum: int) -> int:
        return min(safe_positive_int(value, 0) or default, maximum)

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def request_payload() -> Dict:
        if request.form:
            return request.form.to_dict()
        return json_payload()

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"
        if DEFAULT_ADMIN_EMAIL and normalize_email(user_document.get("email")) == DEFAULT_ADMIN_EMAIL:
            return "admin"
        return "admin" if user_document.get("role") == "admin" else "user"

    def serialize_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": get_user_role(user_document),
            "cart_data": user_document.get("cart_data") or {},
            "created_at": serialize_datetime(user_document.get("created_at")),
            "last_login_at": serialize_datetime(user_document.get("last_login_at")),
        }

    def current_user_or_error():
        user_id = parse_object_id(get_jwt_identity())
        user_document = db.users.find_one({"_id": user_id}) if user_id else None
        if not user_document:
            return None, (jsonify({"message": "User not found. Please login again."}), 401)
        return user_document, None

    def require_admin():
        user_document, auth_error = current_user_or_error()
        if auth_error:
            return None, auth_error
        if get_user_role(user_document) != "admin":
            return (
                None,
                (jsonify({"message": "Access denied. Admin privileges required."}), 403),
            )
        return user_document, None

    def issue_token(user_document) -> str:
        return create_access_token(identity=str(user_document["_id"]))

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        return {str(key): str(value) for key, value in metadata.items() if value is not None}

    def record_audit_log(actor_document, action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            audit_logs_collection.insert_one(
                {
                    "user_email": normalize_email((actor_document or {}).get("email")) or None,
                    "user_name": (actor_document or {}).get("name", "") or "",
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "created_at": datetime.utcnow(),
                }
            )
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "user_email": document.get("user_email") or "",
            "user_name": document.get("user_name") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "created_at": serialize_datetime(document.get("created_at")),
        }

    # --- Email ---

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def build_order_summary_text(order_document) -> str:
        address = order_document.get("address") or {}
        item_lines = "\n".join(
            f"- {item.get('name')} (Qty: {item.get('quantity')}) - PKR {item.get('old_price')} each"
            + (f" [Size: {item['selected_size']}]" if item.get("selected_size") else "")
            for item in order_document.get("items") or []
        )
        coupon = order_document.get("applied_coupon")
        coupon_line = (
            f"\nCoupon Applied: {coupon.get('code')} (-PKR {coupon.get('value')})"
            if coupon
            else ""
        )
        created_at = order_document.get("created_at") or datetime.utcnow()
        return (
            "New Order Received!\n"
            "==================\n\n"
            "Order Details:\n"
            f"- Order Number: {order_document.get('order_number')}\n"
            f"- Order ID: {order_document.get('_id')}\n"
            f"- Status: {order_document.get('status')}\n"
            f"- Payment Method: {order_document.get('payment_method') or PAYMENT_STRIPE}\n"
            f"- Payment Status: {'Paid' if order_document.get('payment') else 'Pending'}\n"
            f"- Order Date: {created_at.strftime('%Y-%m-%d %H:%M')}\n\n"
            "Customer Information:\n"
            f"- Name: {address.get('firstName', '')} {address.get('lastName', '')}\n"
            f"- Email: {address.get('email', '')}\n"
            f"- Phone: {address.get('Phone', '')}\n"
            f"- Address: {address.get('Address', '')}, {address.get('city', '')}, {address.get('country', '')}\n\n"
            f"Items Ordered:\n{item_lines}\n{coupon_line}\n\n"
            f"Shipping: PKR {order_document.get('shipping_fee', 0)}\n"
            f"Total Amount: PKR {order_document.get('amount')}\n"
        )

    def send_order_summary_email(order_document) -> Tuple[bool, Optional[str]]:
        recipient = normalize_email(app.config.get("ORDER_NOTIFICATION_EMAIL"))
        if not recipient:
            return False, "No order notification address is configured."

        payload: Dict[str, object] = {
            "from": f"TBS Store <{app.config['ORDER_SENDER_EMAIL']}>",
            "to": [recipient],
            "subject": (
                f"New Order #{order_document.get('order_number')} - "
                f"PKR {order_document.get('amount')}"
            ),
            "text": build_order_summary_text(order_document),
        }
        sent, error_details = send_email_via_resend(
            payload, app.config.get("RESEND_ORDER_SUMMARY_API_KEY", "")
        )
        if sent:
            app.logger.info(
                "Order summary email sent for order %s", order_document.get("order_number")
            )
        else:
            app.logger.error(
                "Order summary email failed for order %s: %s",
                order_document.get("order_number"),
                error_details,
            )
        return sent, error_details

    # --- Images ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["IMAGE_ALLOWED_EXTENSIONS"]

    def build_image_url(filename: str) -> str:
        return urljoin(request.host_url, f"images/{filename}")

    def save_image(image_file):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(app.config["IMAGE_UPLOAD_FOLDER"], unique_filename)

        try:
            image_file.save(destination)
        except OSError:
            return None, "We could not store the uploaded image. Please try again."

        return build_image_url(unique_filename), None

    def save_images(image_files):
        saved_urls: List[str] = []
        for image_file in image_files or []:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            image_url, image_error = save_image(image_file)
            if image_error:
                delete_image_files(saved_urls)
                return [], image_error
            saved_urls.append(image_url)
        return saved_urls, None

    def delete_image_files(urls):
        for url in urls or []:
            filename = image_filename_from_url(url)
            if not filename:
                continue
            try:
                os.remove(os.path.join(app.config["IMAGE_UPLOAD_FOLDER"], filename))
            except FileNotFoundError:
                continue
            except OSError as exc:
                app.logger.warning("Unable to delete image %s: %s", filename, exc)

    def release_images(urls):
        """Delete stored files that no product or review references any more."""
        if not urls:
            return
        still_referenced = collect_referenced_filenames(
            db.products.find({}, {"image": 1, "additional_images": 1, "reviews": 1})
        )
        delete_image_files(
            [url for url in urls if image_filename_from_url(url) not in still_referenced]
        )

    # --- Serialization ---

    def serialize_review(review):
        return {
            "id": str(review.get("_id")),
            "user_id": str(review.get("user_id") or ""),
            "user_name": review.get("user_name", "") or "",
            "rating": review.get("rating"),
            "comment": review.get("comment", "") or "",
            "images": list(review.get("images") or []),
            "created_at": serialize_datetime(review.get("created_at")),
        }

    def serialize_product(product_document, include_reviews: bool = True):
        serialized = {
            "id": product_document.get("id"),
            "name": product_document.get("name", ""),
            "category": product_document.get("category", ""),
            "description": product_document.get("description", "") or "",
            "image": product_document.get("image", "") or "",
            "additional_images": list(product_document.get("additional_images") or []),
            "new_price": product_document.get("new_price"),
            "old_price": product_document.get("old_price"),
            "sizes": list(product_document.get("sizes") or []),
            "available": product_document.get("available", True) is not False,
            "average_rating": product_document.get("average_rating", 0) or 0,
            "num_reviews": product_document.get("num_reviews", 0) or 0,
            "created_at": serialize_datetime(product_document.get("created_at")),
        }
        if include_reviews:
            serialized["reviews"] = [
                serialize_review(review) for review in product_document.get("reviews") or []
            ]
        return serialized

    def serialize_category(category_document):
        return {
            "id": str(category_document.get("_id")),
            "name": category_document.get("name", ""),
            "slug": category_document.get("slug", ""),
            "description": category_document.get("description", "") or "",
            "image": category_document.get("image", "") or "",
            "display_order": category_document.get("display_order", 0),
            "is_active": category_document.get("is_active", True) is not False,
            "created_at": serialize_datetime(category_document.get("created_at")),
            "updated_at": serialize_datetime(category_document.get("updated_at")),
        }

    def serialize_coupon(coupon_document):
        expiry_date = coupon_document.get("expiry_date")
        return {
            "id": str(coupon_document.get("_id")),
            "code": coupon_document.get("code", ""),
            "value": coupon_document.get("value", 0),
            "minimum_order_value": coupon_document.get("minimum_order_value", 0) or 0,
            "expiry_date": serialize_datetime(expiry_date),
            "expired": isinstance(expiry_date, datetime) and expiry_date < datetime.utcnow(),
            "created_at": serialize_datetime(coupon_document.get("created_at")),
        }

    def serialize_order(order_document):
        items = list(order_document.get("items") or [])
        return {
            "id": str(order_document.get("_id")),
            "order_number": order_document.get("order_number", ""),
            "display_number": format_order_number_for_display(
                order_document.get("order_number")
            ),
            "user_id": str(order_document.get("user_id") or ""),
            "items": items,
            "total_quantity": calculate_total_quantity(items),
            "subtotal": order_document.get("subtotal"),
            "discount": order_document.get("discount", 0),
            "shipping_fee": order_document.get("shipping_fee", 0),
            "amount": order_document.get("amount"),
            "address": order_document.get("address") or {},
            "applied_coupon": order_document.get("applied_coupon"),
            "payment": bool(order_document.get("payment")),
            "payment_method": order_document.get("payment_method", ""),
            "status": order_document.get("status", ""),
            "created_at": serialize_datetime(order_document.get("created_at")),
            "updated_at": serialize_datetime(order_document.get("updated_at")),
        }

    def serialize_subscriber(subscriber_document):
        return {
            "id": str(subscriber_document.get("_id")),
            "email": subscriber_document.get("email", ""),
            "created_at": serialize_datetime(subscriber_document.get("created_at")),
        }

    def serialize_message(message_document):
        return {
            "id": str(message_document.get("_id")),
            "name": message_document.get("name", ""),
            "email": message_document.get("email", ""),
            "subject": message_document.get("subject", ""),
            "message": message_document.get("message", ""),
            "status": message_document.get("status", "unread"),
            "created_at": serialize_datetime(message_document.get("created_at")),
            "updated_at": serialize_datetime(message_document.get("updated_at")),
        }

    # --- Catalog lookups ---

    def parse_product_id(value) -> Optional[int]:
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return None

    def fetch_product(product_id):
        numeric_id = parse_product_id(product_id)
        if numeric_id is None:
            return None, (jsonify({"message": "Invalid product identifier."}), 400)

        product_document = db.products.find_one({"id": numeric_id})
        if not product_document:
            return None, (jsonify({"message": "Product not found."}), 404)

        return product_document, None

    def next_product_id() -> int:
        last_product = db.products.find_one({}, sort=[("id", -1)])
        return int(last_product.get("id", 0)) + 1 if last_product else 1

    def is_known_category(normalized_category: str) -> bool:
        if normalized_category in canonical_categories():
            return True
        return db.categories.find_one({"slug": normalized_category}) is not None

    def category_regex(normalized_category: str):
        return re.compile(f"^{re.escape(normalized_category)}$", re.IGNORECASE)

    def search_criteria(query: str, category: str) -> Dict[str, object]:
        criteria: Dict[str, object] = {}
        if query:
            term = re.compile(re.escape(query), re.IGNORECASE)
            criteria["$or"] = [
                {"name": term},
                {"description": term},
                {"category": term},
            ]
        if category and category != "all":
            criteria["category"] = category_regex(normalize_category(category))
        return criteria

    def resequence_categories():
        documents = list(db.categories.find({}).sort([("display_order", 1), ("name", 1)]))
        for position, document in enumerate(documents, start=1):
            if document.get("display_order") != position:
                db.categories.update_one(
                    {"_id": document["_id"]}, {"$set": {"display_order": position}}
                )

    def fetch_category(category_id):
        category_object_id = parse_object_id(category_id)
        if not category_object_id:
            return None, (jsonify({"message": "Invalid category identifier."}), 400)
        category_document = db.categories.find_one({"_id": category_object_id})
        if not category_document:
            return None, (jsonify({"message": "Category not found."}), 404)
        return category_document, None

    def fetch_order(order_id):
        order_object_id = parse_object_id(order_id)
        if not order_object_id:
            return None, (jsonify({"message": "Invalid order identifier."}), 400)
        order_document = db.orders.find_one({"_id": order_object_id})
        if not order_document:
            return None, (jsonify({"message": "Order not found."}), 404)
        return order_document, None

    def find_coupon_by_code(code) -> Optional[Dict]:
        normalized_code = str(code or "").strip().upper()
        if not normalized_code:
            return None
        return db.coupons.find_one({"code": normalized_code})

    # --- Cart and checkout ---

    def load_cart(user_document) -> Dict[str, int]:
        cart_data = user_document.get("cart_data") or {}
        return {
            str(key): safe_positive_int(value, 0)
            for key, value in cart_data.items()
        }

    def store_cart(user_document, cart_data: Dict[str, int]) -> Dict[str, int]:
        db.users.update_one(
            {"_id": user_document["_id"]}, {"$set": {"cart_data": cart_data}}
        )
        return cart_data

    def clear_user_cart(user_id):
        user_object_id = parse_object_id(user_id)
        if user_object_id:
            db.users.update_one({"_id": user_object_id}, {"$set": {"cart_data": {}}})

    def unavailable_reason(product_document, size: Optional[str]) -> Optional[str]:
        if product_document.get("available") is False:
            return "Out of stock"
        offered = {str(option.get("size")) for option in product_document.get("sizes") or []}
        if size and offered and size not in offered:
            return "Size not available"
        return None

    def classify_cart(cart_data: Dict[str, int]):
        available_items: List[Dict] = []
        unavailable_items: List[Dict] = []
        for cart_key, quantity in cart_data.items():
            if quantity <= 0:
                continue
            product_id, size = parse_cart_key(cart_key)
            product_document = (
                db.products.find_one({"id": product_id}) if product_id is not None else None
            )
            if not product_document:
                unavailable_items.append(
                    {
                        "cart_key": cart_key,
                        "id": product_id,
                        "name": "Unknown Product",
                        "quantity": quantity,
                        "reason": "Product not found",
                    }
                )
            elif unavailable_reason(product_document, size):
                unavailable_items.append(
                    {
                        "cart_key": cart_key,
                        "id": product_document.get("id"),
                        "name": product_document.get("name"),
                        "image": product_document.get("image"),
                        "quantity": quantity,
                        "selected_size": size,
                        "reason": unavailable_reason(product_document, size),
                    }
                )
            else:
                available_items.append(
                    {
                        "cart_key": cart_key,
                        "id": product_document.get("id"),
                        "name": product_document.get("name"),
                        "size": size,
                        "unit_price": unit_price_for(product_document, size),
                        "quantity": quantity,
                        "available": True,
                    }
                )
        return available_items, unavailable_items

    def requested_checkout_items(payload, user_document) -> List[Dict]:
        raw_items = payload.get("items")
        if isinstance(raw_items, list) and raw_items:
            return [item for item in raw_items if isinstance(item, dict)]
        return [
            {"cart_key": cart_key, "quantity": quantity}
            for cart_key, quantity in load_cart(user_document).items()
            if quantity > 0
        ]

    def build_order_items(raw_items):
        """Snapshot the requested items from the catalog.

        Returns ``(items, error_response)``. Prices always come from the
        catalog, never from the client.
        """
        order_items: List[Dict] = []
        unavailable_items: List[Dict] = []

        for entry in raw_items:
            key_product_id, key_size = parse_cart_key(entry.get("cart_key") or entry.get("cartKey"))
            product_id = parse_product_id(
                entry.get("id") if entry.get("id") is not None else entry.get("itemId")
            )
            if product_id is None:
                product_id = key_product_id
            size = str(entry.get("selectedSize") or entry.get("selected_size") or key_size or "").strip() or None
            quantity = safe_positive_int(entry.get("quantity"), 1)
            label = str(entry.get("name") or product_id or "Item")

            product_document = (
                db.products.find_one({"id": product_id}) if product_id is not None else None
            )
            if not product_document:
                return None, (
                    jsonify(
                        {
                            "success": False,
                            "message": f"Product '{label}' no longer exists and has been removed from our catalog.",
                            "unavailableItems": [
                                {"id": product_id, "name": label, "quantity": quantity, "reason": "Product not found"}
                            ],
                        }
                    ),
                    400,
                )

            reason = unavailable_reason(product_document, size)
            if reason:
                unavailable_items.append(
                    {
                        "id": product_document.get("id"),
                        "name": product_document.get("name"),
                        "quantity": quantity,
                        "selected_size": size,
                        "reason": reason,
                    }
                )
                continue

            order_items.append(
                {
                    "id": product_document.get("id"),
                    "name": product_document.get("name", ""),
                    "category": normalize_category(product_document.get("category")),
                    "image": product_document.get("image", "") or "",
                    "new_price": product_document.get("new_price"),
                    "old_price": unit_price_for(product_document, size),
                    "quantity": quantity,
                    "selected_size": size,
                }
            )

        if unavailable_items:
            return None, (
                jsonify(
                    {
                        "success": False,
                        "message": "Some items in your cart are no longer available. Please remove them from your cart and try again.",
                        "unavailableItems": unavailable_items,
                    }
                ),
                400,
            )
        if not order_items:
            return None, (jsonify({"success": False, "message": "Your cart is empty."}), 400)

        return order_items, None

    def resolve_applied_coupon(payload, subtotal: float):
        applied = payload.get("appliedCoupon") or payload.get("applied_coupon")
        code = applied.get("code") if isinstance(applied, dict) else applied
        code = code or payload.get("couponCode")
        if not code:
            return None, 0.0, None

        coupon_document = find_coupon_by_code(code)
        is_valid, reason = evaluate_coupon(coupon_document, subtotal)
        if not is_valid:
            return None, 0.0, (
                jsonify(
                    {
                        "success": False,
                        "message": f"Coupon '{str(code).upper()}' is no longer valid: {reason}",
                        "coupon_error": True,
                    }
                ),
                400,
            )
        discount = safe_float(coupon_document.get("value"), 0.0)
        return {"code": coupon_document["code"], "value": discount}, discount, None

    def prepare_checkout(payload, user_document):
        order_items, items_error = build_order_items(
            requested_checkout_items(payload, user_document)
        )
        if items_error:
            return None, items_error

        address = payload.get("address")
        missing_fields = validate_address(address)
        if missing_fields:
            return None, (
                jsonify(
                    {
                        "success": False,
                        "message": "Please fill in all required address fields.",
                        "missing_fields": missing_fields,
                    }
                ),
                400,
            )

        subtotal = calculate_subtotal(order_items)
        applied_coupon, discount, coupon_error = resolve_applied_coupon(payload, subtotal)
        if coupon_error:
            return None, coupon_error

        discounted_subtotal = apply_discount(subtotal, discount)
        shipping_fee = calculate_shipping_fee(discounted_subtotal, address.get("city"))
        amount = round(discounted_subtotal + shipping_fee, 2)

        client_amount = safe_float(payload.get("amount"), None)
        if client_amount is not None and not math.isclose(client_amount, amount, abs_tol=0.01):
            app.logger.warning(
                "Checkout amount mismatch for user %s: client sent %s, server computed %s",
                user_document["_id"],
                client_amount,
                amount,
            )

        return {
            "items": order_items,
            "address": {key: str(value).strip() for key, value in address.items() if value is not None},
            "subtotal": subtotal,
            "discount": discount,
            "shipping_fee": shipping_fee,
            "amount": amount,
            "applied_coupon": applied_coupon,
        }, None

    def delete_pending_orders(user_id, include_bank_transfer: bool = False) -> int:
        query: Dict[str, object] = {"user_id": str(user_id), "payment": False}
        if not include_bank_transfer:
            query["payment_method"] = {"$ne": PAYMENT_BANK_TRANSFER}
        return db.orders.delete_many(query).deleted_count

    def insert_order(user_document, checkout, payment_method, status, payment):
        timestamp = datetime.utcnow()
        order_document = {
            "user_id": str(user_document["_id"]),
            "items": checkout["items"],
            "subtotal": checkout["subtotal"],
            "discount": checkout["discount"],
            "shipping_fee": checkout["shipping_fee"],
            "amount": checkout["amount"],
            "address": checkout["address"],
            "applied_coupon": checkout["applied_coupon"],
            "payment": payment,
            "payment_method": payment_method,
            "status": status,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        for attempt in range(max_checkout_attempts):
            order_document["order_number"] = generate_order_number(db.orders)
            order_document.pop("_id", None)
            try:
                insert_result = db.orders.insert_one(order_document)
            except DuplicateKeyError:
                app.logger.warning(
                    "Order number %s already taken, retrying (%s)",
                    order_document["order_number"],
                    attempt + 1,
                )
                continue
            order_document["_id"] = insert_result.inserted_id
            return order_document
        raise RuntimeError("Unable to allocate a unique order number.")

    def stripe_request(method: str, path: str, data=None):
        secret_key = app.config.get("STRIPE_SECRET_KEY")
        if not secret_key:
            raise ValueError("Stripe is not configured on this server.")
        try:
            response = requests.request(
                method,
                f"{STRIPE_API_BASE_URL}{path}",
                data=data,
                auth=(secret_key, ""),
                timeout=15,
            )
        except requests.RequestException as exc:
            app.logger.error("Stripe request failed: %s", exc)
            raise ValueError("Failed to reach the payment provider.")
        if response.status_code >= 400:
            app.logger.error("Stripe error %s: %s", response.status_code, response.text)
            raise ValueError("The payment provider rejected the request.")
        return response.json()

    def create_stripe_session(order_document, line_items):
        frontend_url = (app.config.get("FRONTEND_URL") or request.host_url).rstrip("/")
        order_id = str(order_document["_id"])
        form: Dict[str, object] = {
            "mode": "payment",
            "success_url": f"{frontend_url}/verify?success=true&orderId={order_id}",
            "cancel_url": f"{frontend_url}/verify?success=false&orderId={order_id}",
            "client_reference_id": order_document["order_number"],
        }
        for index, line_item in enumerate(line_items):
            prefix = f"line_items[{index}]"
            form[f"{prefix}[price_data][currency]"] = "pkr"
            form[f"{prefix}[price_data][product_data][name]"] = line_item["name"]
            form[f"{prefix}[price_data][unit_amount]"] = line_item["unit_amount"]
            form[f"{prefix}[quantity]"] = line_item["quantity"]
        return stripe_request("POST", "/checkout/sessions", data=form)

    def confirm_order_payment(order_document, status: str):
        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"payment": True, "status": status, "updated_at": datetime.utcnow()}},
        )
        clear_user_cart(order_document.get("user_id"))
        updated_order = db.orders.find_one({"_id": order_document["_id"]})
        email_sent, _ = send_order_summary_email(updated_order)
        return updated_order, email_sent

    # --- ROUTES ---

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        return jsonify({"success": False, "message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return (
            jsonify(
                {
                    "success": False,
                    "message": "Internal Server Error",
                    "details": "Check server logs for details",
                }
            ),
            500,
        )

    @app.route("/")
    def index():
        return "Backend is up and running"

    @app.route("/api/test")
    def api_test():
        return jsonify(
            {
                "success": True,
                "message": "API is accessible from frontend",
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "origin": request.headers.get("Origin") or "No origin header",
            }
        )

    @app.route("/images/<path:filename>")
    def serve_image(filename: str):
        return send_from_directory(app.config["IMAGE_UPLOAD_FOLDER"], filename)

    # Users
    @app.route("/api/users/signup", methods=["POST"])
    def signup():
        payload = json_payload()
        name = str(payload.get("name", "")).strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not name or not email or not password:
            return jsonify({"message": "Name, email, and password are required."}), 400
        if not is_valid_email(email):
            return jsonify({"message": "Email is not valid!"}), 400
        if len(password) < min_password_length:
            return (
                jsonify(
                    {"message": f"Password must be at least {min_password_length} characters long."}
                ),
                400,
            )
        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 400

        user_document = {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "role": "admin" if DEFAULT_ADMIN_EMAIL and email == DEFAULT_ADMIN_EMAIL else "user",
            "cart_data": {},
            "created_at": datetime.utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        record_audit_log(user_document, "Registered new account")

        return (
            jsonify({"token": issue_token(user_document), "user": serialize_user(user_document)}),
            201,
        )

    @app.route("/api/users/login", methods=["POST"])
    def login():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one(
            {"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}}
        )
        user = db.users.find_one({"_id": user["_id"]})

        record_audit_log(
            user,
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )
        return jsonify({"token": issue_token(user), "user": serialize_user(user)})

    @app.route("/api/users/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error
        return jsonify({"user": serialize_user(user)})

    # Cart
    @app.route("/api/cart/addToCart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        cart_key = str(payload.get("itemId") or "").strip()
        product_id, size = parse_cart_key(cart_key)
        if product_id is None:
            return jsonify({"message": "A valid itemId is required."}), 400

        product_document = db.products.find_one({"id": product_id})
        if not product_document:
            return jsonify({"message": "Product not found."}), 404
        sizes = {str(option.get("size")) for option in product_document.get("sizes") or []}
        if size and sizes and size not in sizes:
            return jsonify({"message": f'Size "{size}" is not offered for this product.'}), 400

        quantity = safe_positive_int(payload.get("quantity"), 1)
        cart_data = load_cart(user)
        cart_data[cart_key] = cart_data.get(cart_key, 0) + quantity
        return jsonify({"success": True, "cart_data": store_cart(user, cart_data)})

    @app.route("/api/cart/removeFromCart", methods=["POST"])
    @jwt_required()
    def remove_from_cart():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        cart_key = str(payload.get("itemId") or "").strip()
        if not cart_key:
            return jsonify({"message": "A valid itemId is required."}), 400

        cart_data = load_cart(user)
        if cart_data.get(cart_key, 0) > 0:
            cart_data[cart_key] -= 1
        if cart_key in cart_data and cart_data[cart_key] <= 0:
            del cart_data[cart_key]
        return jsonify({"success": True, "cart_data": store_cart(user, cart_data)})

    @app.route("/api/cart/getCart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error
        return jsonify({"cart_data": load_cart(user)})

    @app.route("/api/cart/validate", methods=["GET"])
    @jwt_required()
    def validate_cart():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        available_items, unavailable_items = classify_cart(load_cart(user))
        return jsonify(
            {
                "valid": not unavailable_items,
                "unavailableItems": unavailable_items,
                "availableItems": available_items,
            }
        )

    @app.route("/api/cart/removeUnavailable", methods=["POST"])
    @jwt_required()
    def remove_unavailable_items():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        cart_data = load_cart(user)
        _, unavailable_items = classify_cart(cart_data)
        for item in unavailable_items:
            cart_data.pop(item["cart_key"], None)
        updated_cart = store_cart(user, cart_data)

        return jsonify(
            {
                "success": True,
                "message": f"Removed {len(unavailable_items)} unavailable item(s) from cart",
                "itemsRemoved": unavailable_items,
                "updatedCart": updated_cart,
            }
        )

    @app.route("/api/cart/summary", methods=["GET"])
    @jwt_required()
    def cart_summary():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        available_items, unavailable_items = classify_cart(load_cart(user))
        subtotal = round(
            sum(item["unit_price"] * item["quantity"] for item in available_items), 2
        )

        coupon_payload = None
        discount = 0.0
        coupon_code = (request.args.get("couponCode") or "").strip()
        if coupon_code:
            coupon_document = find_coupon_by_code(coupon_code)
            is_valid, reason = evaluate_coupon(coupon_document, subtotal)
            coupon_payload = {"code": coupon_code.upper(), "valid": is_valid, "message": reason}
            if is_valid:
                discount = safe_float(coupon_document.get("value"), 0.0)
                coupon_payload["value"] = discount

        discounted_subtotal = apply_discount(subtotal, discount)
        shipping_fee = calculate_shipping_fee(discounted_subtotal, request.args.get("city"))
        return jsonify(
            {
                "items": available_items,
                "unavailableItems": unavailable_items,
                "total_items": sum(item["quantity"] for item in available_items),
                "subtotal": subtotal,
                "coupon": coupon_payload,
                "discount": discount,
                "total_with_discount": discounted_subtotal,
                "shipping_fee": shipping_fee,
                "total": round(discounted_subtotal + shipping_fee, 2),
            }
        )

    # Coupons
    def parse_coupon_payload(payload, existing=None):
        updates: Dict[str, object] = {}

        if existing is None or "code" in payload:
            code = str(payload.get("code") or "").strip().upper()
            if not code:
                return None, "Coupon code and value are required"
            updates["code"] = code

        if existing is None or "value" in payload:
            value = safe_float(payload.get("value"), None)
            if value is None or value <= 0:
                return None, "Coupon value must be a number greater than zero"
            updates["value"] = round(value, 2)

        minimum_raw = payload.get("minimumOrderValue", payload.get("minimum_order_value"))
        if existing is None or minimum_raw is not None:
            minimum = safe_float(minimum_raw, 0.0) if minimum_raw not in (None, "") else 0.0
            if minimum is None or minimum < 0:
                return None, "Minimum order value cannot be negative"
            updates["minimum_order_value"] = round(minimum, 2)

        expiry_raw = payload.get("expiryDate", payload.get("expiry_date"))
        if existing is None or expiry_raw is not None:
            expiry_date = None
            if expiry_raw:
                expiry_date = parse_iso_date(expiry_raw, end_of_day=True)
                if not expiry_date:
                    return None, "Expiry date must be an ISO date (YYYY-MM-DD)"
            updates["expiry_date"] = expiry_date

        return updates, None

    @app.route("/api/coupons", methods=["GET"])
    @jwt_required()
    def list_coupons():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        coupons = [serialize_coupon(document) for document in db.coupons.find().sort("created_at", -1)]
        return jsonify({"coupons": coupons})

    @app.route("/api/coupons", methods=["POST"])
    @jwt_required()
    def create_coupon():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        fields, coupon_error = parse_coupon_payload(json_payload())
        if coupon_error:
            return jsonify({"message": coupon_error}), 400
        if db.coupons.find_one({"code": fields["code"]}):
            return jsonify({"message": "A coupon with this code already exists."}), 400

        fields["created_at"] = datetime.utcnow()
        insert_result = db.coupons.insert_one(fields)
        coupon_document = db.coupons.find_one({"_id": insert_result.inserted_id})

        record_audit_log(admin_user, "Created coupon", {"code": fields["code"]})
        return (
            jsonify({"message": "Coupon created successfully.", "coupon": serialize_coupon(coupon_document)}),
            201,
        )

    @app.route("/api/coupons/<coupon_id>", methods=["PUT"])
    @jwt_required()
    def update_coupon(coupon_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        coupon_object_id = parse_object_id(coupon_id)
        coupon_document = db.coupons.find_one({"_id": coupon_object_id}) if coupon_object_id else None
        if not coupon_document:
            return jsonify({"message": "Coupon not found."}), 404

        updates, coupon_error = parse_coupon_payload(
            json_payload(), existing=coupon_document
        )
        if coupon_error:
            return jsonify({"message": coupon_error}), 400
        if updates.get("code") and db.coupons.find_one(
            {"code": updates["code"], "_id": {"$ne": coupon_object_id}}
        ):
            return jsonify({"message": "A coupon with this code already exists."}), 400

        if updates:
            db.coupons.update_one({"_id": coupon_object_id}, {"$set": updates})
        coupon_document = db.coupons.find_one({"_id": coupon_object_id})

        record_audit_log(admin_user, "Updated coupon", {"code": coupon_document.get("code")})
        return jsonify({"message": "Coupon updated successfully.", "coupon": serialize_coupon(coupon_document)})

    @app.route("/api/coupons/<coupon_id>", methods=["DELETE"])
    @jwt_required()
    def delete_coupon(coupon_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        coupon_object_id = parse_object_id(coupon_id)
        coupon_document = db.coupons.find_one({"_id": coupon_object_id}) if coupon_object_id else None
        if not coupon_document:
            return jsonify({"message": "Coupon not found."}), 404

        db.coupons.delete_one({"_id": coupon_object_id})
        record_audit_log(admin_user, "Deleted coupon", {"code": coupon_document.get("code")})
        return jsonify({"message": "Coupon deleted successfully.", "coupon": {"id": coupon_id}})

    @app.route("/api/coupons/validate", methods=["POST"])
    def validate_coupon():
        payload = json_payload()
        code = str(payload.get("code") or "").strip()
        if not code:
            return jsonify({"valid": False, "message": "Coupon code is required"}), 400

        coupon_document = find_coupon_by_code(code)
        if not coupon_document:
            return jsonify({"valid": False, "message": "Invalid coupon code"}), 404

        order_amount = payload.get("orderAmount", payload.get("order_amount"))
        is_valid, reason = evaluate_coupon(coupon_document, order_amount)
        if not is_valid:
            return (
                jsonify(
                    {
                        "valid": False,
                        "message": reason,
                        "minimumOrderValue": coupon_document.get("minimum_order_value", 0) or 0,
                    }
                ),
                400,
            )

        return jsonify(
            {
                "valid": True,
                "code": coupon_document["code"],
                "value": coupon_document.get("value", 0),
                "minimumOrderValue": coupon_document.get("minimum_order_value", 0) or 0,
            }
        )

    # Orders
    @app.route("/api/orders/place-direct", methods=["POST"])
    @jwt_required()
    def place_order_direct():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        payment_method = str(payload.get("paymentMethod") or payload.get("payment_method") or "").strip()
        if payment_method not in DIRECT_PAYMENT_METHODS:
            return (
                jsonify({"success": False, "message": "Please select a payment method (cod or bankTransfer)."}),
                400,
            )

        checkout, checkout_error = prepare_checkout(payload, user)
        if checkout_error:
            return checkout_error

        removed = delete_pending_orders(user["_id"])
        if removed:
            app.logger.info("Removed %s stale pending orders for user %s", removed, user["_id"])

        if payment_method == PAYMENT_COD:
            status, payment = STATUS_CONFIRMED_COD, True
        else:
            status, payment = STATUS_PENDING_VERIFICATION, False

        order_document = insert_order(user, checkout, payment_method, status, payment)

        if payment_method == PAYMENT_COD:
            clear_user_cart(user["_id"])
            app.logger.info("COD order %s placed, cart cleared for user %s", order_document["order_number"], user["_id"])
        else:
            app.logger.info(
                "Bank transfer order %s placed, awaiting payment verification", order_document["order_number"]
            )

        email_sent, _ = send_order_summary_email(order_document)
        record_audit_log(
            user,
            "Placed order",
            {
                "order_number": order_document["order_number"],
                "amount": order_document["amount"],
                "payment_method": payment_method,
            },
        )
        return jsonify(
            {
                "success": True,
                "message": "Order placed successfully",
                "order": serialize_order(order_document),
                "orderId": str(order_document["_id"]),
                "email_sent": email_sent,
            }
        )

    @app.route("/api/orders/place", methods=["POST"])
    @jwt_required()
    def place_order():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        checkout, checkout_error = prepare_checkout(payload, user)
        if checkout_error:
            return checkout_error

        delete_pending_orders(user["_id"])
        order_document = insert_order(user, checkout, PAYMENT_STRIPE, STATUS_PENDING_PAYMENT, False)

        line_items = build_stripe_line_items(
            checkout["items"],
            checkout["discount"],
            checkout["shipping_fee"],
            (checkout["applied_coupon"] or {}).get("code", ""),
        )
        try:
            session = create_stripe_session(order_document, line_items)
        except ValueError as exc:
            db.orders.delete_one({"_id": order_document["_id"]})
            return jsonify({"success": False, "message": str(exc)}), 502

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"stripe_session_id": session.get("id")}},
        )
        return jsonify(
            {
                "success": True,
                "session_url": session.get("url"),
                "orderId": str(order_document["_id"]),
            }
        )

    @app.route("/api/orders/verify", methods=["POST"])
    def verify_order():
        payload = json_payload()
        order_document, load_error = fetch_order(payload.get("orderId") or payload.get("order_id"))
        if load_error:
            return load_error

        if order_document.get("payment"):
            return jsonify({"success": True, "order": serialize_order(order_document)})

        if order_document.get("payment_method") != PAYMENT_STRIPE:
            return (
                jsonify({"success": False, "message": "Only card payments are verified through this route."}),
                400,
            )

        if parse_bool(payload.get("success"), False):
            session_id = order_document.get("stripe_session_id")
            if not session_id:
                return jsonify({"success": False, "message": "This order has no payment session."}), 400
            try:
                session = stripe_request("GET", f"/checkout/sessions/{session_id}")
            except ValueError as exc:
                return jsonify({"success": False, "message": str(exc)}), 502
            if session.get("payment_status") != "paid":
                return jsonify({"success": False, "message": "Payment has not been completed."}), 400

            updated_order, email_sent = confirm_order_payment(order_document, STATUS_CONFIRMED)
            app.logger.info(
                "Payment successful for order %s, cart cleared for user %s",
                updated_order["order_number"],
                updated_order.get("user_id"),
            )
            return jsonify(
                {"success": True, "order": serialize_order(updated_order), "email_sent": email_sent}
            )

        db.orders.delete_one(
            {"_id": order_document["_id"], "payment": False, "payment_method": PAYMENT_STRIPE}
        )
        app.logger.info("Payment cancelled for order %s, order deleted", order_document["order_number"])
        return jsonify({"success": True, "deleted": True, "order": serialize_order(order_document)})

    @app.route("/api/orders/userorders", methods=["POST"])
    @jwt_required()
    def user_orders():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        product_id = payload.get("productId")
        product_category = payload.get("productCategory")

        documents = list(
            db.orders.find({"user_id": str(user["_id"])}).sort([("created_at", -1), ("_id", -1)])
        )
        response_payload: Dict[str, object] = {"userId": str(user["_id"])}
        if product_id in (None, "") and not product_category:
            response_payload["orders"] = [serialize_order(document) for document in documents]
            return jsonify(response_payload)

        matching = [
            document
            for document in documents
            if order_contains_product(document, product_id, product_category)
        ]
        response_payload.update(
            {
                "orders": [serialize_order(document) for document in matching],
                "totalOrders": len(documents),
                "matchingOrders": len(matching),
            }
        )
        return jsonify(response_payload)

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        cursor = db.orders.find({}).sort([("created_at", -1), ("_id", -1)])
        return jsonify({"orders": [serialize_order(document) for document in cursor]})

    @app.route("/api/orders/status", methods=["POST"])
    @jwt_required()
    def update_order_status():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = json_payload()
        status = str(payload.get("status") or "").strip()
        if status not in ORDER_STATUSES:
            return (
                jsonify({"message": "Unknown order status.", "allowed_statuses": list(ORDER_STATUSES)}),
                400,
            )

        order_document, load_error = fetch_order(payload.get("orderId"))
        if load_error:
            return load_error

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
        )
        updated_order = db.orders.find_one({"_id": order_document["_id"]})
        record_audit_log(
            admin_user,
            "Updated order status",
            {"order_number": order_document.get("order_number"), "status": status},
        )
        return jsonify({"success": True, "order": serialize_order(updated_order)})

    @app.route("/api/orders/verify-bank-transfer", methods=["POST"])
    @jwt_required()
    def verify_bank_transfer():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = json_payload()
        order_document, load_error = fetch_order(payload.get("orderId"))
        if load_error:
            return load_error
        if order_document.get("payment_method") != PAYMENT_BANK_TRANSFER:
            return (
                jsonify({"success": False, "message": "This order is not a bank transfer order"}),
                400,
            )

        updated_order, email_sent = confirm_order_payment(order_document, STATUS_PAYMENT_VERIFIED)
        app.logger.info(
            "Bank transfer payment verified for order %s", updated_order.get("order_number")
        )
        record_audit_log(
            admin_user,
            "Verified bank transfer",
            {"order_number": updated_order.get("order_number")},
        )
        return jsonify(
            {
                "success": True,
                "message": "Bank transfer payment verified successfully",
                "order": serialize_order(updated_order),
                "email_sent": email_sent,
            }
        )

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        order_document, load_error = fetch_order(order_id)
        if load_error:
            return load_error

        db.orders.delete_one({"_id": order_document["_id"]})
        record_audit_log(
            admin_user, "Deleted order", {"order_number": order_document.get("order_number")}
        )
        return jsonify(
            {"success": True, "message": "Order deleted successfully", "deletedOrderId": order_id}
        )

    @app.route("/api/orders/cleanup", methods=["POST"])
    @jwt_required()
    def cleanup_abandoned_orders():
        _, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        counts = purge_abandoned_orders(db.orders)
        app.logger.info(
            "Cleaned up %s abandoned online orders and %s old bank transfer orders",
            counts["online_deleted"],
            counts["bank_transfer_deleted"],
        )
        return jsonify(
            {
                "success": True,
                "message": (
                    f"Cleaned up {counts['deleted_count']} abandoned orders "
                    f"({counts['online_deleted']} online, {counts['bank_transfer_deleted']} bank transfer)"
                ),
                "deletedCount": counts["deleted_count"],
                "onlineDeleted": counts["online_deleted"],
                "bankTransferDeleted": counts["bank_transfer_deleted"],
            }
        )

    @app.route("/api/orders/cleanup-user", methods=["POST"])
    @jwt_required()
    def cleanup_user_pending_orders():
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = json_payload()
        target_user_id = str(user["_id"])
        requested_user_id = str(payload.get("userId") or "").strip()
        if requested_user_id and requested_user_id != target_user_id:
            if get_user_role(user) != "admin":
                return jsonify({"success": False, "message": "You can only clean up your own orders."}), 403
            target_user_id = requested_user_id

        include_bank_transfer = parse_bool(payload.get("includeBankTransfer"), False)
        deleted_count = delete_pending_orders(target_user_id, include_bank_transfer)
        order_type = "all pending" if include_bank_transfer else "non-bank-transfer pending"
        app.logger.info("Cleaned up %s %s orders for user %s", deleted_count, order_type, target_user_id)
        return jsonify(
            {
                "success": True,
                "message": f"Instantly cleaned up {deleted_count} {order_type} orders",
                "deletedCount": deleted_count,
            }
        )

    @app.route("/api/orders/pending", methods=["GET"])
    @jwt_required()
    def list_pending_orders():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        documents = list(db.orders.find({"payment": False}).sort("created_at", -1))
        return jsonify(
            {
                "success": True,
                "count": len(documents),
                "orders": [serialize_order(document) for document in documents],
            }
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        cursor = db.products.find({}).sort("id", 1)
        return jsonify({"products": [serialize_product(document) for document in cursor]})

    @app.route("/api/products/search", methods=["GET"])
    def search_products():
        query = (request.args.get("query") or "").strip()
        category = (request.args.get("category") or "").strip()
        cursor = db.products.find(search_criteria(query, category)).sort("id", 1)
        return jsonify({"products": [serialize_product(document) for document in cursor]})

    @app.route("/api/products/suggestions", methods=["GET"])
    def product_suggestions():
        query = (request.args.get("query") or "").strip()
        if len(query) < 2:
            return jsonify({"products": []})

        limit = parse_limit(request.args.get("limit"), 10, 50)
        criteria = search_criteria(query, (request.args.get("category") or "").strip())
        projection = {"_id": 0, "id": 1, "name": 1, "category": 1, "image": 1, "new_price": 1, "old_price": 1}
        cursor = db.products.find(criteria, projection).sort("name", 1).limit(limit)
        return jsonify({"products": list(cursor)})

    @app.route("/api/products/newCollections", methods=["GET"])
    def new_collections():
        cursor = (
            db.products.find({"category": {"$in": ["stationary", "gadgets"]}})
            .sort("created_at", -1)
            .limit(8)
        )
        return jsonify({"products": [serialize_product(document, include_reviews=False) for document in cursor]})

    @app.route("/api/products/popularBooks", methods=["GET"])
    def popular_books():
        cursor = db.products.find({"category": "course-books"}).sort("id", 1).limit(4)
        return jsonify({"products": [serialize_product(document, include_reviews=False) for document in cursor]})

    @app.route("/api/products/category/<category>", methods=["GET"])
    def products_by_category(category: str):
        normalized_category = normalize_category(category)
        if not normalized_category:
            return jsonify({"message": "Category parameter is required"}), 400

        documents = list(db.products.find({"category": category_regex(normalized_category)}).sort("id", 1))
        if not documents and not is_known_category(normalized_category):
            return (
                jsonify(
                    {
                        "message": f"{category} is not a valid category",
                        "validCategories": canonical_categories()
                        + [document["slug"] for document in db.categories.find({}, {"slug": 1})],
                    }
                ),
                404,
            )
        return jsonify({"products": [serialize_product(document) for document in documents]})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify({"product": serialize_product(product_document)})

    def parse_price_fields(payload, existing=None):
        prices: Dict[str, float] = {}
        for field in ("new_price", "old_price"):
            raw_value = payload.get(field)
            if existing is not None and raw_value in (None, ""):
                continue
            value = safe_float(raw_value, None)
            if value is None or value < 0:
                return None, f"{field} must be a valid number."
            prices[field] = round(value, 2)
        if "old_price" in prices and prices["old_price"] <= 0:
            return None, "old_price must be greater than zero."
        return prices, None

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        name = str(payload.get("name", "")).strip()
        category = normalize_category(payload.get("category"))
        if not name or not category:
            return jsonify({"message": "Product name and category are required."}), 400

        prices, price_error = parse_price_fields(payload)
        if price_error:
            return jsonify({"message": price_error}), 400

        sizes, sizes_error = normalize_sizes_input(payload.get("sizes"))
        if sizes_error:
            return jsonify({"message": sizes_error}), 400

        main_image = str(payload.get("mainImage") or "").strip()
        uploaded_main = request.files.get("product") if request.files else None
        if uploaded_main and uploaded_main.filename:
            main_image, image_error = save_image(uploaded_main)
            if image_error:
                return jsonify({"message": image_error}), 400
        if not main_image:
            return jsonify({"message": "Please upload or select a main product image."}), 400

        additional_images, image_error = save_images(
            request.files.getlist("additionalImages") if request.files else []
        )
        if image_error:
            delete_image_files([main_image] if uploaded_main else [])
            return jsonify({"message": image_error}), 400
        additional_images.extend(
            str(url) for url in parse_json_list(payload.get("additionalImageUrls")) if url
        )

        product_document = {
            "name": name,
            "category": category,
            "description": str(payload.get("description", "")).strip(),
            "image": main_image,
            "additional_images": additional_images,
            "sizes": sizes,
            "available": parse_bool(payload.get("available"), True),
            "reviews": [],
            "average_rating": 0,
            "num_reviews": 0,
            "created_at": datetime.utcnow(),
            **prices,
        }
        for _ in range(max_checkout_attempts):
            product_document["id"] = next_product_id()
            product_document.pop("_id", None)
            try:
                db.products.insert_one(product_document)
                break
            except DuplicateKeyError:
                continue
        else:
            return jsonify({"message": "Could not allocate a product id, please retry."}), 409

        record_audit_log(
            admin_user, "Created product", {"product_id": product_document["id"], "name": name}
        )
        return (
            jsonify({"message": "Product added successfully.", "product": serialize_product(product_document)}),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PATCH"])
    @jwt_required()
    def update_product(product_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = request_payload()
        updates: Dict[str, object] = {}

        name = str(payload.get("name") or "").strip()
        if name:
            updates["name"] = name
        if payload.get("category"):
            updates["category"] = normalize_category(payload.get("category"))
        if payload.get("description") is not None:
            updates["description"] = str(payload.get("description")).strip()

        prices, price_error = parse_price_fields(payload, existing=product_document)
        if price_error:
            return jsonify({"message": price_error}), 400
        updates.update(prices)

        if "sizes" in payload:
            sizes, sizes_error = normalize_sizes_input(payload.get("sizes"))
            if sizes_error:
                return jsonify({"message": sizes_error}), 400
            updates["sizes"] = sizes

        available = parse_bool(payload.get("available"))
        if available is not None:
            updates["available"] = available

        released: List[str] = []
        uploaded_main = request.files.get("product") if request.files else None
        if uploaded_main and uploaded_main.filename:
            new_image, image_error = save_image(uploaded_main)
            if image_error:
                return jsonify({"message": image_error}), 400
            updates["image"] = new_image
            if product_document.get("image"):
                released.append(product_document["image"])
        elif payload.get("image"):
            updates["image"] = str(payload.get("image")).strip()

        current_additional = list(product_document.get("additional_images") or [])
        if "existingAdditionalImages" in payload:
            kept = [str(url) for url in parse_json_list(payload.get("existingAdditionalImages")) if url]
            released.extend(url for url in current_additional if url not in kept)
            current_additional = [url for url in current_additional if url in kept]

        new_uploads, image_error = save_images(
            request.files.getlist("additionalImages") if request.files else []
        )
        if image_error:
            if "image" in updates and uploaded_main:
                delete_image_files([updates["image"]])
            return jsonify({"message": image_error}), 400
        library_urls = [str(url) for url in parse_json_list(payload.get("newAdditionalImageUrls")) if url]
        if new_uploads or library_urls or "existingAdditionalImages" in payload:
            updates["additional_images"] = current_additional + new_uploads + library_urls

        if updates:
            db.products.update_one({"_id": product_document["_id"]}, {"$set": updates})
        release_images(released)

        updated_product = db.products.find_one({"_id": product_document["_id"]})
        record_audit_log(
            admin_user,
            "Updated product",
            {"product_id": updated_product.get("id"), "fields": ",".join(sorted(updates))},
        )
        return jsonify(
            {"message": "Product updated successfully", "product": serialize_product(updated_product)}
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        image_urls = [product_document.get("image")] + list(product_document.get("additional_images") or [])
        for review in product_document.get("reviews") or []:
            image_urls.extend(review.get("images") or [])
        release_images([url for url in image_urls if url])

        record_audit_log(
            admin_user,
            "Deleted product",
            {"product_id": product_document.get("id"), "name": product_document.get("name", "")},
        )
        return jsonify({"message": "Product removed successfully.", "product": serialize_product(product_document)})

    @app.route("/api/products/<product_id>/toggle-availability", methods=["PATCH"])
    @jwt_required()
    def toggle_product_availability(product_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        available = product_document.get("available") is False
        db.products.update_one({"_id": product_document["_id"]}, {"$set": {"available": available}})
        product_document["available"] = available

        record_audit_log(
            admin_user,
            "Toggled product availability",
            {"product_id": product_document.get("id"), "available": available},
        )
        return jsonify(
            {
                "message": f"Product {'marked as available' if available else 'marked as out of stock'}",
                "product": serialize_product(product_document),
            }
        )

    # Reviews
    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def create_review(product_id: str):
        user, auth_error = current_user_or_error()
        if auth_error:
            return auth_error

        payload = request_payload()
        comment = str(payload.get("comment") or "").strip()
        rating = safe_float(payload.get("rating"), None)
        if rating is None or not comment:
            return jsonify({"message": "Rating and comment are required"}), 400
        if rating < 1 or rating > 5:
            return jsonify({"message": "Rating must be a number between 1 and 5"}), 400

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        user_id = str(user["_id"])
        if any(str(review.get("user_id")) == user_id for review in product_document.get("reviews") or []):
            return jsonify({"message": "Product already reviewed"}), 400

        delivered_orders = list(db.orders.find({"user_id": user_id, "status": STATUS_DELIVERED}))
        match = find_review_match(delivered_orders, product_document)
        if not match:
            app.logger.info(
                "User %s has not received product %s, review rejected",
                user_id,
                product_document.get("id"),
            )
            return (
                jsonify(
                    {
                        "message": "You can only review products you've purchased and received",
                        "details": {
                            "productId": product_document.get("id"),
                            "productName": product_document.get("name"),
                            "productCategory": product_document.get("category"),
                            "normalizedCategory": normalize_category(product_document.get("category")),
                            "ordersChecked": len(delivered_orders),
                        },
                    }
                ),
                403,
            )

        review_images, image_error = save_images(
            request.files.getlist("images") if request.files else []
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        review = {
            "_id": ObjectId(),
            "user_id": user_id,
            "user_name": user.get("name", "") or "",
            "rating": rating,
            "comment": comment,
            "images": review_images,
            "created_at": datetime.utcnow(),
        }
        reviews = list(product_document.get("reviews") or []) + [review]
        summary = compute_rating_summary(reviews)
        db.products.update_one(
            {"_id": product_document["_id"]},
            {"$set": {"reviews": reviews, **summary}},
        )
        app.logger.info(
            "Review added for product %s by user %s (%s match)",
            product_document.get("id"),
            user_id,
            match["match_type"],
        )
        return (
            jsonify(
                {
                    "message": "Review added successfully",
                    "review": serialize_review(review),
                    "match_type": match["match_type"],
                    "product": {
                        "id": product_document.get("id"),
                        "name": product_document.get("name"),
                        **summary,
                    },
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>/reviews/<review_id>", methods=["DELETE"])
    @jwt_required()
    def delete_review(product_id: str, review_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        reviews = list(product_document.get("reviews") or [])
        removed = next((review for review in reviews if str(review.get("_id")) == review_id), None)
        if not removed:
            return jsonify({"message": f"No review found with ID {review_id} for this product"}), 404

        remaining = [review for review in reviews if review is not removed]
        summary = compute_rating_summary(remaining)
        db.products.update_one(
            {"_id": product_document["_id"]},
            {"$set": {"reviews": remaining, **summary}},
        )
        release_images(removed.get("images") or [])

        record_audit_log(
            admin_user,
            "Deleted review",
            {"product_id": product_document.get("id"), "review_id": review_id},
        )
        return jsonify(
            {
                "message": "Review deleted successfully",
                "deletedReview": serialize_review(removed),
                "product": {
                    "id": product_document.get("id"),
                    "name": product_document.get("name"),
                    **summary,
                },
            }
        )

    # Image library
    @app.route("/api/products/images", methods=["GET"])
    @jwt_required()
    def list_images():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        folder = app.config["IMAGE_UPLOAD_FOLDER"]
        entries = sorted(
            (entry for entry in os.scandir(folder) if entry.is_file() and not entry.name.startswith(".")),
            key=lambda entry: entry.stat().st_mtime,
            reverse=True,
        )
        cursor = safe_positive_int(request.args.get("cursor"), 0)
        limit = parse_limit(request.args.get("limit"), 30, 100)
        page = entries[cursor:cursor + limit]
        next_cursor = cursor + limit if cursor + limit < len(entries) else None

        return jsonify(
            {
                "resources": [
                    {
                        "filename": entry.name,
                        "url": build_image_url(entry.name),
                        "size": entry.stat().st_size,
                        "created_at": datetime.utcfromtimestamp(entry.stat().st_mtime).isoformat() + "Z",
                    }
                    for entry in page
                ],
                "next_cursor": next_cursor,
                "total": len(entries),
            }
        )

    def orphaned_images():
        referenced = collect_referenced_filenames(
            db.products.find({}, {"image": 1, "additional_images": 1, "reviews": 1})
        )
        return find_orphaned_files(app.config["IMAGE_UPLOAD_FOLDER"], referenced)

    @app.route("/api/products/images/orphaned", methods=["GET"])
    @jwt_required()
    def list_orphaned_images():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        orphans = orphaned_images()
        return jsonify(
            {
                "count": len(orphans),
                "orphans": [{**orphan, "url": build_image_url(orphan["filename"])} for orphan in orphans],
            }
        )

    @app.route("/api/products/images/cleanup", methods=["POST"])
    @jwt_required()
    def cleanup_orphaned_images():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        orphans = orphaned_images()
        if not orphans:
            return jsonify({"message": "No orphaned images found.", "deleted": []})

        delete_image_files([build_image_url(orphan["filename"]) for orphan in orphans])
        deleted = [orphan["filename"] for orphan in orphans]
        record_audit_log(admin_user, "Cleaned up orphaned images", {"count": len(deleted)})
        return jsonify(
            {
                "message": f"Successfully deleted {len(deleted)} orphaned images.",
                "deleted": deleted,
            }
        )

    # Categories
    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        cursor = db.categories.find({"is_active": True}).sort([("display_order", 1), ("name", 1)])
        return jsonify({"categories": [serialize_category(document) for document in cursor]})

    @app.route("/api/categories/admin/all", methods=["GET"])
    @jwt_required()
    def list_all_categories():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        cursor = db.categories.find({}).sort([("display_order", 1), ("name", 1)])
        return jsonify({"categories": [serialize_category(document) for document in cursor]})

    @app.route("/api/categories/<slug>", methods=["GET"])
    def get_category(slug: str):
        category_document = db.categories.find_one({"slug": slug, "is_active": True})
        if not category_document:
            return jsonify({"message": "Category not found"}), 404
        return jsonify({"category": serialize_category(category_document)})

    def category_conflict(name: str, slug: str, exclude_id=None) -> bool:
        query: Dict[str, object] = {"$or": [{"name": name}, {"slug": slug}]}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return db.categories.find_one(query) is not None

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = json_payload()
        name = " ".join(str(payload.get("name") or "").split())
        if not name:
            return jsonify({"message": "Category name is required"}), 400

        slug = slugify_category_name(name)
        if not slug:
            return jsonify({"message": "Category name must contain letters or numbers"}), 400
        if category_conflict(name, slug):
            return jsonify({"message": "Category with this name already exists"}), 400

        display_order = safe_positive_int(payload.get("displayOrder"), 0)
        if not display_order:
            last_category = db.categories.find_one({}, sort=[("display_order", -1)])
            display_order = (last_category.get("display_order", 0) + 1) if last_category else 1

        timestamp = datetime.utcnow()
        try:
            insert_result = db.categories.insert_one(
                {
                    "name": name,
                    "slug": slug,
                    "description": str(payload.get("description") or ""),
                    "image": str(payload.get("image") or ""),
                    "display_order": display_order,
                    "is_active": parse_bool(payload.get("isActive"), True),
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )
        except DuplicateKeyError:
            return jsonify({"message": "Category with this name or slug already exists"}), 400

        resequence_categories()
        category_document = db.categories.find_one({"_id": insert_result.inserted_id})
        record_audit_log(admin_user, "Created category", {"slug": slug})
        return jsonify({"category": serialize_category(category_document)}), 201

    @app.route("/api/categories/<category_id>", methods=["PATCH"])
    @jwt_required()
    def update_category(category_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        category_document, load_error = fetch_category(category_id)
        if load_error:
            return load_error

        payload = json_payload()
        updates: Dict[str, object] = {}

        name = " ".join(str(payload.get("name") or "").split())
        if name and name != category_document.get("name"):
            slug = slugify_category_name(name)
            if not slug:
                return jsonify({"message": "Category name must contain letters or numbers"}), 400
            if category_conflict(name, slug, exclude_id=category_document["_id"]):
                return jsonify({"message": "Category with this name already exists"}), 400
            updates["name"] = name
            updates["slug"] = slug

        if payload.get("description") is not None:
            updates["description"] = str(payload.get("description"))
        if payload.get("image") is not None:
            updates["image"] = str(payload.get("image"))
        is_active = parse_bool(payload.get("isActive"))
        if is_active is not None:
            updates["is_active"] = is_active

        old_order = category_document.get("display_order", 0)
        new_order = None
        if payload.get("displayOrder") is not None:
            new_order = safe_positive_int(payload.get("displayOrder"), 1)
            updates["display_order"] = new_order

        updates["updated_at"] = datetime.utcnow()
        db.categories.update_one({"_id": category_document["_id"]}, {"$set": updates})

        if new_order is not None and new_order != old_order:
            if new_order < old_order:
                db.categories.update_many(
                    {
                        "_id": {"$ne": category_document["_id"]},
                        "display_order": {"$gte": new_order, "$lt": old_order},
                    },
                    {"$inc": {"display_order": 1}},
                )
            else:
                db.categories.update_many(
                    {
                        "_id": {"$ne": category_document["_id"]},
                        "display_order": {"$gt": old_order, "$lte": new_order},
                    },
                    {"$inc": {"display_order": -1}},
                )
        resequence_categories()

        if "slug" in updates:
            db.products.update_many(
                {"category": category_document.get("slug")},
                {"$set": {"category": updates["slug"]}},
            )

        updated_category = db.categories.find_one({"_id": category_document["_id"]})
        record_audit_log(admin_user, "Updated category", {"slug": updated_category.get("slug")})
        return jsonify({"category": serialize_category(updated_category)})

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category(category_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        category_document, load_error = fetch_category(category_id)
        if load_error:
            return load_error

        if db.products.find_one({"category": category_document.get("slug")}):
            return (
                jsonify({"message": "Cannot delete category. It is being used by one or more products."}),
                400,
            )

        db.categories.delete_one({"_id": category_document["_id"]})
        resequence_categories()
        record_audit_log(admin_user, "Deleted category", {"slug": category_document.get("slug")})
        return jsonify({"message": "Category deleted successfully and order rearranged"})

    # Subscribers
    @app.route("/api/subscribers", methods=["POST"])
    def subscribe():
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"success": False, "message": "Email is required"}), 400
        if not is_valid_email(email):
            return jsonify({"success": False, "message": "Email is not valid!"}), 400
        if db.subscribers.find_one({"email": email}):
            return jsonify({"success": False, "message": "You have already subscribed !!"}), 400

        subscriber_document = {"email": email, "created_at": datetime.utcnow()}
        try:
            insert_result = db.subscribers.insert_one(subscriber_document)
        except DuplicateKeyError:
            return jsonify({"success": False, "message": "You have already subscribed !!"}), 400
        subscriber_document["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Successfully subscribed to newsletter!",
                    "data": serialize_subscriber(subscriber_document),
                }
            ),
            201,
        )

    @app.route("/api/subscribers", methods=["GET"])
    @jwt_required()
    def list_subscribers():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        cursor = db.subscribers.find({}).sort("created_at", -1)
        subscribers = [serialize_subscriber(document) for document in cursor]
        return jsonify({"success": True, "count": len(subscribers), "subscribers": subscribers})

    @app.route("/api/subscribers/<subscriber_id>", methods=["DELETE"])
    @jwt_required()
    def delete_subscriber(subscriber_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        subscriber_object_id = parse_object_id(subscriber_id)
        if not subscriber_object_id:
            return jsonify({"success": False, "message": "Invalid subscriber identifier."}), 400
        subscriber_document = db.subscribers.find_one({"_id": subscriber_object_id})
        if not subscriber_document:
            return jsonify({"success": False, "message": "Subscriber not found"}), 404

        db.subscribers.delete_one({"_id": subscriber_object_id})
        record_audit_log(admin_user, "Deleted subscriber", {"email": subscriber_document.get("email")})
        return jsonify({"success": True, "message": "Subscriber deleted successfully"})

    # Messages
    @app.route("/api/messages", methods=["POST"])
    def send_message():
        payload = json_payload()
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        subject = str(payload.get("subject") or "").strip()
        body = str(payload.get("message") or "").strip()
        if not name or not email or not body:
            return jsonify({"success": False, "message": "Name, email and message are required"}), 400
        if not is_valid_email(email):
            return jsonify({"success": False, "message": "Email is not valid!"}), 400
        if len(body) > MESSAGE_MAX_LENGTH:
            return (
                jsonify({"success": False, "message": f"Message must be at most {MESSAGE_MAX_LENGTH} characters"}),
                400,
            )

        now = datetime.utcnow()
        message_document = {
            "name": name,
            "email": email,
            "subject": subject,
            "message": body,
            "status": "unread",
            "created_at": now,
            "updated_at": now,
        }
        insert_result = db.messages.insert_one(message_document)
        message_document["_id"] = insert_result.inserted_id
        app.logger.info("Contact message received from %s", email)

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Message sent successfully!",
                    "data": serialize_message(message_document),
                }
            ),
            201,
        )

    @app.route("/api/messages", methods=["GET"])
    @jwt_required()
    def list_messages():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        query: Dict = {}
        status_filter = (request.args.get("status") or "").strip().lower()
        if status_filter:
            if status_filter not in MESSAGE_STATUSES:
                return jsonify({"success": False, "message": "Invalid status filter."}), 400
            query["status"] = status_filter

        cursor = db.messages.find(query).sort("created_at", -1)
        messages = [serialize_message(document) for document in cursor]
        unread = db.messages.count_documents({"status": "unread"})
        return jsonify({"success": True, "count": len(messages), "unread": unread, "messages": messages})

    @app.route("/api/messages/<message_id>", methods=["PATCH"])
    @jwt_required()
    def update_message_status(message_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        message_object_id = parse_object_id(message_id)
        if not message_object_id:
            return jsonify({"success": False, "message": "Invalid message identifier."}), 400
        status = str(json_payload().get("status") or "").strip().lower()
        if status not in MESSAGE_STATUSES:
            return (
                jsonify({"success": False, "message": f"Status must be one of: {', '.join(MESSAGE_STATUSES)}"}),
                400,
            )

        update_result = db.messages.update_one(
            {"_id": message_object_id},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
        )
        if not update_result.matched_count:
            return jsonify({"success": False, "message": "Message not found"}), 404
        message_document = db.messages.find_one({"_id": message_object_id})

        record_audit_log(
            admin_user,
            "Updated message status",
            {"email": message_document.get("email"), "status": status},
        )
        return jsonify({"success": True, "data": serialize_message(message_document)})

    @app.route("/api/messages/<message_id>", methods=["DELETE"])
    @jwt_required()
    def delete_message(message_id: str):
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        message_object_id = parse_object_id(message_id)
        if not message_object_id:
            return jsonify({"success": False, "message": "Invalid message identifier."}), 400
        message_document = db.messages.find_one({"_id": message_object_id})
        if not message_document:
            return jsonify({"success": False, "message": "Message not found"}), 404

        db.messages.delete_one({"_id": message_object_id})
        record_audit_log(admin_user, "Deleted message", {"email": message_document.get("email")})
        return jsonify({"success": True, "message": "Message deleted successfully"})

    # --- Admin Routes ---

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        search_term = (request.args.get("search") or "").strip()
        start_param = request.args.get("start") or request.args.get("from")
        end_param = request.args.get("end") or request.args.get("to")
        page = safe_positive_int(request.args.get("page"), 1)
        limit = parse_limit(request.args.get("limit"), 50, 200)

        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"user_email": regex},
                {"user_name": regex},
                {"action": regex},
            ]

        start_date = parse_iso_date(start_param)
        end_date = parse_iso_date(end_param, end_of_day=True)
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            query["created_at"] = created_filter

        skip = (page - 1) * limit
        cursor = (
            audit_logs_collection.find(query)
            .sort("created_at", -1)
            .skip(skip)
            .limit(limit)
        )
        logs = [serialize_audit_log(document) for document in cursor]
        total = audit_logs_collection.count_documents(query)

        return jsonify(
            {
                "logs": logs,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route("/api/admin/logs", methods=["DELETE"])
    @jwt_required()
    def admin_delete_logs():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = json_payload()
        start_date = parse_iso_date(payload.get("from") or payload.get("start"))
        end_date = parse_iso_date(payload.get("to") or payload.get("end"), end_of_day=True)

        delete_query: Dict[str, object] = {}
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            delete_query["created_at"] = created_filter

        result = audit_logs_collection.delete_many(delete_query)

        record_audit_log(
            admin_user,
            "Deleted audit logs",
            {
                "count": str(result.deleted_count),
                "range": "filtered" if delete_query else "all",
            },
        )

        return jsonify(
            {
                "message": f"Removed {result.deleted_count} audit log entries.",
                "deleted": result.deleted_count,
            }
        )

    if app.config.get("ENABLE_CLEANUP_SCHEDULER"):
        app.extensions["cleanup_scheduler"] = start_cleanup_scheduler(
            app, db.orders, app.config.get("CLEANUP_INTERVAL_MINUTES", 15)
        )

    return app
