from datetime import datetime, timedelta

import mongomock

import order_utils

NOW = datetime(2024, 3, 5, 12, 0, 0)


def test_next_order_number_starts_a_daily_sequence():
    assert order_utils.next_order_number(None, NOW) == "ORD-20240305-000001"
    assert order_utils.next_order_number("ORD-20240305-000041", NOW) == "ORD-20240305-000042"
    assert order_utils.next_order_number("ORD-20240304-000099", NOW) == "ORD-20240305-000001"


def test_generate_order_number_reads_the_highest_number_of_the_day():
    orders = mongomock.MongoClient().db.orders
    orders.insert_many(
        [
            {"order_number": "ORD-20240305-000002"},
            {"order_number": "ORD-20240305-000007"},
            {"order_number": "ORD-20240306-000001"},
        ]
    )
    assert order_utils.generate_order_number(orders, NOW) == "ORD-20240305-000008"
    assert order_utils.generate_order_number(orders, NOW + timedelta(days=2)) == "ORD-20240307-000001"


def test_format_order_number_for_display():
    assert order_utils.format_order_number_for_display("ORD-20240305-000008") == "5-000008"
    assert order_utils.format_order_number_for_display("ORD1") == "ORD1"
    assert order_utils.format_order_number_for_display(None) == "N/A"


def test_cart_keys():
    assert order_utils.parse_cart_key("12") == (12, None)
    assert order_utils.parse_cart_key("12_XL") == (12, "XL")
    assert order_utils.parse_cart_key("abc") == (None, None)
    assert order_utils.build_cart_key(12, "XL") == "12_XL"
    assert order_utils.build_cart_key(12) == "12"


def test_unit_price_prefers_matching_size():
    product = {"old_price": 2000, "sizes": [{"size": "L", "price": 2600}]}
    assert order_utils.unit_price_for(product, "L") == 2600
    assert order_utils.unit_price_for(product, "XXL") == 2000
    assert order_utils.unit_price_for(product) == 2000


def test_subtotal_and_discount():
    items = [{"old_price": 1200, "quantity": 2}, {"old_price": 300, "quantity": 1}]
    assert order_utils.calculate_subtotal(items) == 2700
    assert order_utils.calculate_total_quantity(items) == 3
    assert order_utils.apply_discount(2700, 200) == 2500
    assert order_utils.apply_discount(100, 500) == 0


def test_shipping_fee_rules():
    assert order_utils.calculate_shipping_fee(5000, "Lahore") == 0
    assert order_utils.calculate_shipping_fee(4999, " karachi ") == 250
    assert order_utils.calculate_shipping_fee(4999, "Lahore") == 350
    assert order_utils.calculate_shipping_fee(4999, "") == 0


def test_evaluate_coupon():
    coupon = {
        "code": "SAVE200",
        "value": 200,
        "minimum_order_value": 1000,
        "expiry_date": NOW + timedelta(days=1),
    }
    assert order_utils.evaluate_coupon(coupon, 1500, NOW) == (True, None)
    assert order_utils.evaluate_coupon(coupon, None, NOW) == (True, None)

    valid, message = order_utils.evaluate_coupon(coupon, 999, NOW)
    assert not valid
    assert message == "Minimum order value of PKR 1,000 is required for this coupon"

    valid, message = order_utils.evaluate_coupon(coupon, 1500, NOW + timedelta(days=2))
    assert not valid
    assert message == "This coupon has expired"

    assert order_utils.evaluate_coupon(None, 1500, NOW) == (False, "Invalid coupon code")


def test_validate_address_lists_missing_fields():
    address = {
        "firstName": "Ali",
        "lastName": "Raza",
        "email": "ali@example.com",
        "Address": " ",
        "city": "Karachi",
        "country": "Pakistan",
    }
    assert order_utils.validate_address(address) == ["Address", "Phone"]
    assert order_utils.validate_address(None) == list(order_utils.ADDRESS_REQUIRED_FIELDS)


def test_stripe_line_items_spread_discount_and_add_shipping():
    items = [
        {"name": "Novel", "old_price": 1000, "quantity": 2},
        {"name": "Pen", "old_price": 500, "quantity": 1},
    ]

    line_items = order_utils.build_stripe_line_items(items, 500, 350, "SAVE500")

    assert line_items == [
        {"name": "Novel (Discounted with coupon: SAVE500)", "unit_amount": 80000, "quantity": 2},
        {"name": "Pen (Discounted with coupon: SAVE500)", "unit_amount": 40000, "quantity": 1},
        {"name": "Shipping Fee", "unit_amount": 35000, "quantity": 1},
    ]


def test_stripe_line_items_without_discount_or_shipping():
    line_items = order_utils.build_stripe_line_items(
        [{"name": "Pen", "old_price": 300, "quantity": 3}], 0, 0
    )
    assert line_items == [{"name": "Pen", "unit_amount": 30000, "quantity": 3}]


def test_match_review_item_variants():
    product = {"id": 7, "name": "Gel Pen Set", "category": "stationary", "old_price": 300}

    assert order_utils.match_review_item({"id": "7"}, product) == "ID"
    assert order_utils.match_review_item({"id": 7.0}, product) == "ID"
    assert (
        order_utils.match_review_item(
            {"id": 99, "name": "GEL PEN SET", "category": "Stationery"}, product
        )
        == "Category+Name"
    )
    assert (
        order_utils.match_review_item(
            {"id": 99, "name": "Pens", "category": "office", "old_price": 300}, product
        )
        == "Category+Price"
    )
    assert (
        order_utils.match_review_item(
            {"id": 99, "name": "Gel Pen Set", "category": "gadgets", "old_price": 300}, product
        )
        is None
    )


def test_match_review_item_by_size_price():
    product = {
        "id": 3,
        "name": "School Bag",
        "category": "school-bags",
        "old_price": 1800,
        "sizes": [{"size": "S", "price": 2000}, {"size": "L", "price": 2600}],
    }
    item = {"id": 42, "name": "Old School Bag", "category": "school-bags", "old_price": 2600, "selected_size": "L"}

    assert order_utils.match_review_item(item, product) == "Category+Price"
    assert order_utils.match_review_item(dict(item, old_price=2100), product) is None


def test_find_review_match_reports_the_matching_order():
    product = {"id": 7, "name": "Gel Pen Set", "category": "stationary", "old_price": 300}
    orders = [
        {"_id": "a", "status": "Delivered", "items": [{"id": 1, "name": "Lamp", "category": "gadgets"}]},
        {"_id": "b", "status": "Delivered", "items": [{"id": 7, "name": "Gel Pen Set", "category": "stationary"}]},
    ]

    match = order_utils.find_review_match(orders, product)

    assert match["order_id"] == "b"
    assert match["match_type"] == "ID"
    assert order_utils.find_review_match(orders[:1], product) is None


def test_order_contains_product():
    order = {"items": [{"id": 3, "category": "stationary"}]}
    assert order_utils.order_contains_product(order, product_id="3")
    assert order_utils.order_contains_product(order, product_category="Stationery")
    assert not order_utils.order_contains_product(order, product_id=4, product_category="books")
