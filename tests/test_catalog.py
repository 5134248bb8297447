import catalog


def test_normalize_category_maps_aliases():
    assert catalog.normalize_category("Stationery") == "stationary"
    assert catalog.normalize_category(" TextBooks ") == "books"
    assert catalog.normalize_category("electronics") == "gadgets"
    assert catalog.normalize_category("school-bags") == "school-bags"
    assert catalog.normalize_category(None) == ""


def test_categories_match_uses_normalized_values():
    assert catalog.categories_match("office", "stationary")
    assert not catalog.categories_match("books", "gadgets")


def test_canonical_categories_are_unique():
    assert catalog.canonical_categories() == ["books", "stationary", "gadgets"]


def test_slugify_category_name():
    assert catalog.slugify_category_name("Water Bottles & Lunch Boxes") == "water-bottles-lunch-boxes"
    assert catalog.slugify_category_name("  Lunchbox/water   bottle ") == "lunchbox-water-bottle"
    assert catalog.slugify_category_name("---") == ""


def test_parse_json_list_accepts_several_shapes():
    assert catalog.parse_json_list('["a", "b"]') == ["a", "b"]
    assert catalog.parse_json_list("a, b") == ["a", "b"]
    assert catalog.parse_json_list("single") == ["single"]
    assert catalog.parse_json_list(["x"]) == ["x"]
    assert catalog.parse_json_list("") == []
    assert catalog.parse_json_list(None) == []


def test_normalize_sizes_input_parses_and_deduplicates():
    sizes, error = catalog.normalize_sizes_input(
        '[{"size": "S", "price": "100"}, {"size": "s", "price": 120}, {"size": "L", "price": 150.456}]'
    )
    assert error is None
    assert sizes == [{"size": "S", "price": 100.0}, {"size": "L", "price": 150.46}]


def test_normalize_sizes_input_rejects_bad_price():
    sizes, error = catalog.normalize_sizes_input([{"size": "M", "price": "free"}])
    assert sizes is None
    assert "M" in error


def test_normalize_sizes_input_rejects_non_list():
    sizes, error = catalog.normalize_sizes_input("not json")
    assert sizes is None
    assert error


def test_safe_number_helpers():
    assert catalog.safe_float("12.5") == 12.5
    assert catalog.safe_float("nan", None) is None
    assert catalog.safe_float(None, 3.0) == 3.0
    assert catalog.safe_positive_int("4") == 4
    assert catalog.safe_positive_int("-3", 1) == 1
    assert catalog.safe_positive_int("abc", 2) == 2


def test_parse_bool():
    assert catalog.parse_bool("true") is True
    assert catalog.parse_bool("0") is False
    assert catalog.parse_bool("maybe") is None
    assert catalog.parse_bool(None, True) is True


def test_image_filename_from_url():
    assert catalog.image_filename_from_url("http://api.test/images/abc.png") == "abc.png"
    assert catalog.image_filename_from_url("https://cdn.example.com/pic.png") is None
    assert catalog.image_filename_from_url("") is None


def test_orphaned_files_skip_referenced_images(tmp_path):
    for name in ("used.png", "review.jpg", "orphan.webp"):
        (tmp_path / name).write_bytes(b"data")
    products = [
        {
            "image": "http://api.test/images/used.png",
            "additional_images": ["https://cdn.example.com/remote.png"],
            "reviews": [{"images": ["http://api.test/images/review.jpg"]}],
        }
    ]

    referenced = catalog.collect_referenced_filenames(products)
    orphans = catalog.find_orphaned_files(str(tmp_path), referenced)

    assert referenced == {"used.png", "review.jpg"}
    assert orphans == [{"filename": "orphan.webp", "size": 4}]


def test_compute_rating_summary():
    assert catalog.compute_rating_summary([]) == {"average_rating": 0, "num_reviews": 0}
    summary = catalog.compute_rating_summary([{"rating": 5}, {"rating": 4}, {"rating": 4}])
    assert summary == {"average_rating": 4.3, "num_reviews": 3}
