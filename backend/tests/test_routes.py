import io

from bson import ObjectId

from catalog import UnexpectedError


def create_product(client, headers, category_id, **overrides):
    payload = {
        "name": "Sapphire Solitaire",
        "description": "Oval sapphire on a platinum band",
        "price": 899,
        "images": [
            "https://res.cloudinary.com/demo/image/upload/v1/jewelry/sapphire-1.jpg",
            "https://res.cloudinary.com/demo/image/upload/v1/jewelry/sapphire-2.jpg",
        ],
        "category": category_id,
        "slug": "sapphire-solitaire",
        "featured": True,
        "attributes": {"material": "platinum", "gemstone": "sapphire"},
    }
    payload.update(overrides)
    return client.post("/admin/api/product", json=payload, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_category_lifecycle_example(client, admin_headers, media_host):
    payload = {
        "name": "Earrings",
        "slug": "earrings",
        "description": "Studs, hoops and drops",
        "image": "https://host/a/b.png",
    }

    created = client.post("/admin/api/category", json=payload, headers=admin_headers)
    assert created.status_code == 201
    body = created.get_json()
    assert body["message"] == "Category created successfully"
    category_id = body["category"]["_id"]
    assert ObjectId.is_valid(category_id)

    duplicate = client.post("/admin/api/category", json=payload, headers=admin_headers)
    assert duplicate.status_code == 409
    assert duplicate.get_json() == {"error": "Category with this slug already exists"}

    deleted = client.delete(
        "/admin/api/category", json={"id": category_id}, headers=admin_headers
    )
    assert deleted.status_code == 200
    assert deleted.get_json()["categoryId"] == category_id
    assert media_host.destroyed == ["a/b"]

    again = client.delete(
        "/admin/api/category", json={"id": category_id}, headers=admin_headers
    )
    assert again.status_code == 404


def test_admin_routes_require_token(client):
    response = client.post("/admin/api/category", json={"name": "Rings", "slug": "rings"})
    assert response.status_code == 401
    assert "error" in response.get_json()


def test_admin_routes_require_admin_role(client, user_headers, database):
    response = client.post(
        "/admin/api/category",
        json={"name": "Rings", "slug": "rings"},
        headers=user_headers,
    )
    assert response.status_code == 403
    assert database.categories.count_documents({}) == 0


def test_create_category_validation_error(client, admin_headers):
    response = client.post(
        "/admin/api/category", json={"description": "no name"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Missing required fields")


def test_non_object_body_is_rejected(client, admin_headers):
    response = client.put("/admin/api/category", json=["id"], headers=admin_headers)
    assert response.status_code == 400


def test_update_category(client, admin_headers, category):
    response = client.put(
        "/admin/api/category",
        json={"id": category["_id"], "description": "Bands and solitaires", "unknown": 1},
        headers=admin_headers,
    )
    assert response.status_code == 200
    updated = response.get_json()["category"]
    assert updated["description"] == "Bands and solitaires"
    assert "unknown" not in updated


def test_update_requires_id(client, admin_headers):
    response = client.put(
        "/admin/api/category", json={"name": "Rings"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Category ID is required"


def test_update_unknown_id(client, admin_headers):
    response = client.put(
        "/admin/api/category",
        json={"id": str(ObjectId()), "name": "Rings"},
        headers=admin_headers,
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "Category not found"


def test_product_create_and_storefront_listing(client, admin_headers, category):
    created = create_product(client, admin_headers, category["_id"])
    assert created.status_code == 201
    product = created.get_json()["product"]
    assert product["price"] == 899.0
    assert product["category"] == category["_id"]

    listing = client.get("/api/products")
    assert listing.status_code == 200
    products = listing.get_json()["products"]
    assert len(products) == 1
    assert products[0]["category"] == {"_id": category["_id"], "name": "Rings"}

    by_slug = client.get("/api/products/sapphire-solitaire")
    assert by_slug.status_code == 200
    assert by_slug.get_json()["product"]["_id"] == product["_id"]

    assert client.get("/api/products/unknown-slug").status_code == 404


def test_product_listing_filters(client, admin_headers, category):
    create_product(client, admin_headers, category["_id"])
    create_product(
        client,
        admin_headers,
        category["_id"],
        slug="plain-band",
        name="Plain Band",
        featured=False,
    )

    featured = client.get("/api/products?featured=true").get_json()["products"]
    assert [product["slug"] for product in featured] == ["sapphire-solitaire"]

    in_category = client.get("/api/products?category=rings").get_json()["products"]
    assert len(in_category) == 2

    assert client.get("/api/products?category=bangles").status_code == 404


def test_product_create_with_unknown_category(client, admin_headers):
    response = create_product(client, admin_headers, str(ObjectId()))
    assert response.status_code == 404
    assert response.get_json()["error"] == "Category not found"


def test_product_create_with_invalid_category_id(client, admin_headers):
    response = create_product(client, admin_headers, "123")
    assert response.status_code == 400


def test_product_delete_removes_record_even_when_media_fails(
    client, admin_headers, category, media_host
):
    media_host.outcomes["jewelry/sapphire-1"] = ConnectionError("timeout")
    product = create_product(client, admin_headers, category["_id"]).get_json()["product"]

    response = client.delete(
        "/admin/api/product", json={"id": product["_id"]}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.get_json()["productId"] == product["_id"]
    assert media_host.destroyed == ["jewelry/sapphire-1", "jewelry/sapphire-2"]
    assert client.get("/api/products").get_json()["products"] == []


def test_product_delete_rejects_invalid_id(client, admin_headers):
    response = client.delete(
        "/admin/api/product", json={"id": "nope"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid product ID format"


def test_category_delete_does_not_cascade(client, admin_headers, category, database):
    product = create_product(client, admin_headers, category["_id"]).get_json()["product"]

    client.delete("/admin/api/category", json={"id": category["_id"]}, headers=admin_headers)

    stored = database.products.find_one({"_id": ObjectId(product["_id"])})
    assert str(stored["category"]) == category["_id"]


def test_storage_failure_returns_generic_error(app, client, admin_headers, monkeypatch):
    manager = app.extensions["catalog"]["category"]

    def failing_insert(document):
        raise UnexpectedError("insert on categories failed: connection refused")

    monkeypatch.setattr(manager.store, "insert", failing_insert)

    response = client.post(
        "/admin/api/category", json={"name": "Rings", "slug": "rings"}, headers=admin_headers
    )

    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to create category"}


def test_unexpected_exception_returns_generic_error(app, client, admin_headers, monkeypatch):
    manager = app.extensions["catalog"]["category"]

    def broken_list(query=None, limit=0):
        raise RuntimeError("driver exploded")

    monkeypatch.setattr(manager, "list", broken_list)

    response = client.get("/api/categories")
    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to fetch categories"}


def test_public_category_routes(client, category):
    listing = client.get("/api/categories").get_json()["categories"]
    assert [item["slug"] for item in listing] == ["rings"]

    detail = client.get("/api/categories/rings")
    assert detail.status_code == 200
    assert detail.get_json()["category"]["name"] == "Rings"


def test_testimonials(client, admin_headers):
    created = client.post(
        "/admin/api/testimonial",
        json={"name": "Maya", "review": "My engagement ring is perfect."},
        headers=admin_headers,
    )
    assert created.status_code == 201

    missing_review = client.post(
        "/admin/api/testimonial", json={"name": "Maya"}, headers=admin_headers
    )
    assert missing_review.status_code == 400

    testimonials = client.get("/api/testimonials").get_json()["testimonials"]
    assert len(testimonials) == 1
    assert testimonials[0]["review"] == "My engagement ring is perfect."


def test_admin_listing(client, admin_headers, category):
    response = client.get("/admin/api/category", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["categories"][0]["_id"] == category["_id"]


def test_dashboard(client, admin_headers, category):
    create_product(client, admin_headers, category["_id"])
    create_product(
        client, admin_headers, category["_id"], slug="plain-band", featured=False
    )

    response = client.get("/admin/api/dashboard", headers=admin_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["stats"] == {
        "totalProducts": 2,
        "totalCategories": 1,
        "featuredProducts": 1,
        "totalTestimonials": 0,
    }
    assert len(body["recentProducts"]) == 2
    assert body["categories"][0]["productCount"] == 2


def test_media_upload(client, admin_headers, media_host):
    response = client.post(
        "/admin/api/media",
        data={"file": (io.BytesIO(b"fake-png"), "necklace.png")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    assert response.get_json()["image"]["publicId"] == "jewelry/necklace"
    assert media_host.uploaded == ["necklace.png"]


def test_media_upload_rejects_bad_files(client, admin_headers, media_host):
    missing = client.post(
        "/admin/api/media", data={}, headers=admin_headers, content_type="multipart/form-data"
    )
    assert missing.status_code == 400

    wrong_type = client.post(
        "/admin/api/media",
        data={"file": (io.BytesIO(b"<svg/>"), "necklace.svg")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )
    assert wrong_type.status_code == 400
    assert media_host.uploaded == []


def test_media_upload_with_non_ascii_filename(client, admin_headers, media_host):
    response = client.post(
        "/admin/api/media",
        data={"file": (io.BytesIO(b"fake-png"), "кольцо.png")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    assert media_host.uploaded == ["кольцо.png"]
