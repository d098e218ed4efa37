import os
import re
from datetime import datetime, timedelta
from functools import wraps
from typing import Dict, List, Optional

import bcrypt
from bson import ObjectId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from catalog import (
    CATEGORY_SCHEMA,
    PRODUCT_SCHEMA,
    TESTIMONIAL_SCHEMA,
    CatalogError,
    CatalogManager,
    ValidationError,
    as_bool,
    serialize_entity,
)
from media import DEFAULT_ALLOWED_EXTENSIONS, CloudinaryMediaHost, allowed_image_extension
from storage import MongoEntityStore

load_dotenv()

DEFAULT_DATABASE_NAME = "jewelry"
ALLOWED_USER_ROLES = {"admin", "user"}
MIN_PASSWORD_LENGTH = 6
RECENT_PRODUCTS_LIMIT = 5


def create_app(test_config: Optional[Dict] = None, database=None, media_host=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` and ``media_host`` replace the MongoDB database and the
    Cloudinary client built from configuration, which is how the tests run
    the app without either service.
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
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", f"mongodb://localhost:27017/{DEFAULT_DATABASE_NAME}"
    )
    app.config["MONGO_TIMEOUT_MS"] = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))
    app.config["BCRYPT_ROUNDS"] = int(os.getenv("BCRYPT_ROUNDS", "12"))
    app.config["DEFAULT_ADMIN_EMAIL"] = (
        os.getenv("DEFAULT_ADMIN_EMAIL", "") or ""
    ).strip().lower()
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024

    app.config["CLOUDINARY_CLOUD_NAME"] = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    app.config["CLOUDINARY_API_KEY"] = os.getenv("CLOUDINARY_API_KEY", "")
    app.config["CLOUDINARY_API_SECRET"] = os.getenv("CLOUDINARY_API_SECRET", "")
    app.config["CLOUDINARY_UPLOAD_FOLDER"] = os.getenv(
        "CLOUDINARY_UPLOAD_FOLDER", DEFAULT_DATABASE_NAME
    )
    app.config["MEDIA_TIMEOUT_SECONDS"] = float(os.getenv("MEDIA_TIMEOUT_SECONDS", "10"))
    app.config["MEDIA_DELETE_ATTEMPTS"] = int(os.getenv("MEDIA_DELETE_ATTEMPTS", "3"))
    app.config["MEDIA_DELETE_BACKOFF_SECONDS"] = float(
        os.getenv("MEDIA_DELETE_BACKOFF_SECONDS", "0.5")
    )
    app.config["MEDIA_ALLOWED_EXTENSIONS"] = set(DEFAULT_ALLOWED_EXTENSIONS)

    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token_callback(reason: str):
        return jsonify({"error": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason: str):
        return jsonify({"error": reason}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"error": "Token has expired"}), 401

    if database is None:
        timeout_ms = app.config["MONGO_TIMEOUT_MS"]
        mongo = PyMongo(
            app,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        database = mongo.db
        if database is None:
            database = mongo.cx.get_database(DEFAULT_DATABASE_NAME)
    db = database

    try:
        db.users.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique index for user emails: %s", exc)

    if media_host is None and app.config["CLOUDINARY_CLOUD_NAME"]:
        media_host = CloudinaryMediaHost(
            cloud_name=app.config["CLOUDINARY_CLOUD_NAME"],
            api_key=app.config["CLOUDINARY_API_KEY"],
            api_secret=app.config["CLOUDINARY_API_SECRET"],
            folder=app.config["CLOUDINARY_UPLOAD_FOLDER"],
            timeout=app.config["MEDIA_TIMEOUT_SECONDS"],
            max_attempts=app.config["MEDIA_DELETE_ATTEMPTS"],
            backoff_seconds=app.config["MEDIA_DELETE_BACKOFF_SECONDS"],
            allowed_extensions=app.config["MEDIA_ALLOWED_EXTENSIONS"],
            logger=app.logger,
        )
    if media_host is None:
        app.logger.warning(
            "Cloudinary is not configured; media cleanup and uploads are disabled."
        )

    def build_store(schema) -> MongoEntityStore:
        store = MongoEntityStore(
            db[schema.collection],
            label=schema.label,
            slug_field=schema.slug_field,
            logger=app.logger,
        )
        store.ensure_indexes()
        return store

    category_store = build_store(CATEGORY_SCHEMA)
    product_store = build_store(PRODUCT_SCHEMA)
    testimonial_store = build_store(TESTIMONIAL_SCHEMA)

    category_manager = CatalogManager(
        CATEGORY_SCHEMA, category_store, media_host, logger=app.logger
    )
    product_manager = CatalogManager(
        PRODUCT_SCHEMA,
        product_store,
        media_host,
        references={"category": category_manager},
        logger=app.logger,
    )
    testimonial_manager = CatalogManager(
        TESTIMONIAL_SCHEMA, testimonial_store, media_host, logger=app.logger
    )

    app.extensions["catalog"] = {
        "product": product_manager,
        "category": category_manager,
        "testimonial": testimonial_manager,
    }

    # --- Helpers ---

    email_regex = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        email = normalize_email(user_document.get("email"))
        default_admin = app.config["DEFAULT_ADMIN_EMAIL"]
        if default_admin and email == default_admin:
            return "admin"

        role = str(user_document.get("role", "user") or "").strip().lower()
        return role if role in ALLOWED_USER_ROLES else "user"

    def require_admin_user():
        current_email = get_jwt_identity()
        current_user = db.users.find_one({"email": current_email})
        if not current_user:
            return None, (jsonify({"error": "Account not found."}), 401)

        if get_user_role(current_user) != "admin":
            return (
                None,
                (
                    jsonify(
                        {"error": "You need additional permissions to perform this action."}
                    ),
                    403,
                ),
            )
        return current_user, None

    def hash_password(password: str) -> bytes:
        rounds = int(app.config["BCRYPT_ROUNDS"])
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))

    def check_password(password: str, stored_password) -> bool:
        if isinstance(stored_password, str):
            stored_password = stored_password.encode("utf-8")
        if not stored_password:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), stored_password)

    def serialize_user_profile(user_document) -> Dict[str, str]:
        if not user_document:
            return {}

        created_at = user_document.get("created_at")
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": get_user_role(user_document),
            "createdAt": created_at.isoformat() + "Z"
            if isinstance(created_at, datetime)
            else None,
        }

    def read_json_payload() -> Dict:
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload

    def catalog_action(failure_message: str):
        """Turn catalog errors into the JSON error envelope.

        Anything that is not a 4xx catalog error is logged and answered with
        ``failure_message`` so storage details never reach the client.
        """

        def decorator(view):
            @wraps(view)
            def wrapper(*args, **kwargs):
                try:
                    return view(*args, **kwargs)
                except CatalogError as exc:
                    if exc.status_code >= 500:
                        app.logger.error("%s: %s", failure_message, exc)
                        return jsonify({"error": failure_message}), exc.status_code
                    return jsonify({"error": exc.message}), exc.status_code
                except Exception as exc:
                    app.logger.exception("%s: %s", failure_message, exc)
                    return jsonify({"error": failure_message}), 500

            return wrapper

        return decorator

    def serialize_products(product_documents: List[Dict]) -> List[Dict]:
        category_ids = [
            document.get("category")
            for document in product_documents
            if isinstance(document.get("category"), ObjectId)
        ]
        category_map = category_store.find_by_ids(category_ids)

        products = []
        for document in product_documents:
            serialized = serialize_entity(document)
            category_document = category_map.get(document.get("category"))
            if category_document:
                serialized["category"] = {
                    "_id": str(category_document["_id"]),
                    "name": category_document.get("name", ""),
                }
            products.append(serialized)
        return products

    def serialize_many(kind: str, documents: List[Dict]) -> List[Dict]:
        if kind == PRODUCT_SCHEMA.kind:
            return serialize_products(documents)
        return [serialize_entity(document) for document in documents]

    def register_admin_entity_routes(url: str, manager: CatalogManager):
        schema = manager.schema
        kind = schema.kind
        label = schema.label
        plural = schema.collection

        @jwt_required()
        @catalog_action(f"Failed to fetch {plural}")
        def list_entities():
            _, permission_error = require_admin_user()
            if permission_error:
                return permission_error
            return jsonify({plural: serialize_many(kind, manager.list())})

        @jwt_required()
        @catalog_action(f"Failed to create {kind}")
        def create_entity():
            _, permission_error = require_admin_user()
            if permission_error:
                return permission_error
            document = manager.create(read_json_payload())
            return (
                jsonify(
                    {
                        "message": f"{label} created successfully",
                        kind: serialize_entity(document),
                    }
                ),
                201,
            )

        @jwt_required()
        @catalog_action(f"Failed to update {kind}")
        def update_entity():
            _, permission_error = require_admin_user()
            if permission_error:
                return permission_error
            payload = read_json_payload()
            document = manager.update(payload.get("id"), payload)
            return jsonify(
                {
                    "message": f"{label} updated successfully",
                    kind: serialize_entity(document),
                }
            )

        @jwt_required()
        @catalog_action(f"Failed to delete {kind}")
        def delete_entity():
            _, permission_error = require_admin_user()
            if permission_error:
                return permission_error
            payload = read_json_payload()
            result = manager.delete(payload.get("id"))
            return jsonify(
                {
                    "message": f"{label} and associated media deleted successfully",
                    f"{kind}Id": result.entity_id,
                }
            )

        app.add_url_rule(url, f"admin_list_{kind}", list_entities, methods=["GET"])
        app.add_url_rule(url, f"admin_create_{kind}", create_entity, methods=["POST"])
        app.add_url_rule(url, f"admin_update_{kind}", update_entity, methods=["PUT"])
        app.add_url_rule(url, f"admin_delete_{kind}", delete_entity, methods=["DELETE"])

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Admin catalog
    register_admin_entity_routes("/admin/api/product", product_manager)
    register_admin_entity_routes("/admin/api/category", category_manager)
    register_admin_entity_routes("/admin/api/testimonial", testimonial_manager)

    @app.route("/admin/api/dashboard", methods=["GET"])
    @jwt_required()
    @catalog_action("Failed to load dashboard data")
    def admin_dashboard():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_counts = product_store.count_by("category")
        categories = []
        for document in category_manager.list():
            categories.append(
                {
                    "_id": str(document["_id"]),
                    "name": document.get("name", ""),
                    "slug": document.get("slug", ""),
                    "productCount": int(product_counts.get(document["_id"], 0)),
                }
            )

        recent_products = product_manager.list(limit=RECENT_PRODUCTS_LIMIT)
        return jsonify(
            {
                "stats": {
                    "totalProducts": product_store.count(),
                    "totalCategories": category_store.count(),
                    "featuredProducts": product_store.count({"featured": True}),
                    "totalTestimonials": testimonial_store.count(),
                },
                "recentProducts": serialize_products(recent_products),
                "categories": categories,
            }
        )

    @app.route("/admin/api/media", methods=["POST"])
    @jwt_required()
    @catalog_action("Image upload failed")
    def admin_upload_media():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        if media_host is None:
            return jsonify({"error": "Image hosting is not configured."}), 500

        image_file = request.files.get("file") or request.files.get("image")
        if not image_file or not getattr(image_file, "filename", ""):
            raise ValidationError("An image file is required.")
        if not allowed_image_extension(
            image_file.filename, app.config["MEDIA_ALLOWED_EXTENSIONS"]
        ):
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )

        uploaded = media_host.upload(image_file)
        return (
            jsonify({"message": "Image uploaded successfully", "image": uploaded}),
            201,
        )

    # Storefront
    @app.route("/api/products", methods=["GET"])
    @catalog_action("Failed to fetch products")
    def list_products():
        query: Dict = {}
        category_slug = request.args.get("category", "").strip()
        if category_slug:
            category_document = category_manager.get_by_slug(category_slug)
            query["category"] = category_document["_id"]
        if "featured" in request.args:
            query["featured"] = as_bool(request.args.get("featured"))

        product_documents = product_manager.list(query=query)
        return jsonify({"products": serialize_products(product_documents)})

    @app.route("/api/products/<slug>", methods=["GET"])
    @catalog_action("Failed to fetch product")
    def get_product(slug: str):
        document = product_manager.get_by_slug(slug)
        return jsonify({"product": serialize_products([document])[0]})

    @app.route("/api/categories", methods=["GET"])
    @catalog_action("Failed to fetch categories")
    def list_categories():
        documents = category_manager.list()
        return jsonify({"categories": [serialize_entity(document) for document in documents]})

    @app.route("/api/categories/<slug>", methods=["GET"])
    @catalog_action("Failed to fetch category")
    def get_category(slug: str):
        document = category_manager.get_by_slug(slug)
        return jsonify({"category": serialize_entity(document)})

    @app.route("/api/testimonials", methods=["GET"])
    @catalog_action("Error fetching testimonials")
    def list_testimonials():
        documents = testimonial_manager.list()
        return jsonify(
            {"testimonials": [serialize_entity(document) for document in documents]}
        )

    # Accounts
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}
        name = str(payload.get("name", "") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not name or not email or not password:
            return jsonify({"message": "Missing required fields"}), 400

        if not is_valid_email(email):
            return jsonify({"message": "Invalid email format"}), 400

        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
                    }
                ),
                400,
            )

        default_admin = app.config["DEFAULT_ADMIN_EMAIL"]
        assigned_role = "admin" if default_admin and email == default_admin else "user"

        try:
            if db.users.find_one({"email": email}):
                return jsonify({"message": "User already exists with this email"}), 409

            user_document = {
                "name": name,
                "email": email,
                "password": hash_password(password),
                "role": assigned_role,
                "created_at": datetime.utcnow(),
            }
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "User already exists with this email"}), 409
        except PyMongoError as exc:
            app.logger.error("Registration error: %s", exc)
            return jsonify({"message": "Failed to register user"}), 500

        return (
            jsonify(
                {
                    "message": "User registered successfully",
                    "user": {
                        "id": str(insert_result.inserted_id),
                        "name": name,
                        "email": email,
                        "role": assigned_role,
                    },
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not check_password(password, user.get("password")):
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )

        token = create_access_token(identity=email)
        return jsonify({"access_token": token, "user": serialize_user_profile(user)})

    @app.route("/api/user/details", methods=["GET"])
    @jwt_required()
    def user_details():
        user = db.users.find_one({"email": get_jwt_identity()})
        if not user:
            return jsonify({"message": "User not found"}), 404
        return jsonify({"user": serialize_user_profile(user)})

    @app.route("/api/user/update-password", methods=["POST"])
    @jwt_required()
    def update_password():
        user = db.users.find_one({"email": get_jwt_identity()})
        if not user:
            return jsonify({"message": "User not found"}), 404

        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}
        current_password = str(payload.get("currentPassword", "") or "")
        new_password = str(payload.get("newPassword", "") or "")

        if not current_password or not new_password:
            return jsonify({"message": "All fields are required"}), 400

        if len(new_password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"New password must be at least {MIN_PASSWORD_LENGTH} characters long"
                    }
                ),
                400,
            )

        if not check_password(current_password, user.get("password")):
            return jsonify({"message": "Current password is incorrect"}), 400

        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "password": hash_password(new_password),
                    "password_updated_at": datetime.utcnow(),
                }
            },
        )
        return jsonify({"message": "Password updated successfully"})

    return app
