from datetime import datetime

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app

ADMIN_EMAIL = "admin@example.com"
USER_EMAIL = "shopper@example.com"


class FakeMediaHost:
    """Records every call; ``outcomes`` maps a public ID to a result string
    or to an exception instance that should be raised for it."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.destroyed = []
        self.uploaded = []

    def destroy(self, public_id):
        self.destroyed.append(public_id)
        outcome = self.outcomes.get(public_id, "ok")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def upload(self, image_file):
        self.uploaded.append(image_file.filename)
        return {
            "url": f"https://res.cloudinary.com/demo/image/upload/v1/jewelry/{image_file.filename}",
            "publicId": f"jewelry/{image_file.filename.rsplit('.', 1)[0]}",
        }


@pytest.fixture
def database():
    return mongomock.MongoClient()["jewelry_test"]


@pytest.fixture
def media_host():
    return FakeMediaHost()


@pytest.fixture
def app(database, media_host):
    app = create_app(
        test_config={
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
            "BCRYPT_ROUNDS": 4,
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
        },
        database=database,
        media_host=media_host,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def insert_user(database, email, role, password="secret-pass"):
    database.users.insert_one(
        {
            "name": email.split("@")[0],
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "created_at": datetime.utcnow(),
        }
    )


def auth_headers(app, email):
    with app.app_context():
        token = create_access_token(identity=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(app, database):
    insert_user(database, ADMIN_EMAIL, "admin")
    return auth_headers(app, ADMIN_EMAIL)


@pytest.fixture
def user_headers(app, database):
    insert_user(database, USER_EMAIL, "user")
    return auth_headers(app, USER_EMAIL)


@pytest.fixture
def category(client, admin_headers):
    response = client.post(
        "/admin/api/category",
        json={
            "name": "Rings",
            "slug": "rings",
            "description": "Gold and silver rings",
            "image": "https://res.cloudinary.com/demo/image/upload/v1/jewelry/rings.png",
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    return response.get_json()["category"]
