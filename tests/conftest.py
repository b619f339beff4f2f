import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import catalog
import database
import main
import settings_store
from database import create_document
from schemas import User as UserSchema


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["storefront_test"]
    database.ensure_indexes(test_db)
    settings_store.seed_defaults(test_db)
    return test_db


@pytest.fixture
def make_user(db):
    def _make(email="shopper@example.com", role="user", password="secret1", verified=True, **extra):
        doc = UserSchema(
            name="Test User",
            email=email,
            password_hash=auth.hash_password(password),
            role=role,
            is_verified=verified,
            **extra,
        )
        return auth.load_user(db, create_document(db, "user", doc))
    return _make


@pytest.fixture
def shopper(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin")


def bearer(user):
    return {"Authorization": f"Bearer {auth.token_for(user)}"}


@pytest.fixture
def category(db):
    return catalog.create_category(db, {"slug": "stationery", "name": "Stationery"})


@pytest.fixture
def make_product(db, category):
    def _make(slug="pen-blue", price=10.0, discount=None, track=False, stock=0, published=True, **extra):
        data = {
            "slug": slug,
            "name": extra.pop("name", slug.replace("-", " ").title()),
            "price": price,
            "category": category["slug"],
            "published": published,
            "inventory": {"track": track, "stock": stock},
            "discount": discount,
        }
        data.update(extra)
        return catalog.create_product(db, data)
    return _make


@pytest.fixture
def settings_cache(db):
    return settings_store.SettingsCache(settings_store.public_loader(db), ttl_seconds=300)


@pytest.fixture
def client(db, settings_cache):
    main.app.dependency_overrides[database.get_db] = lambda: db
    main.app.dependency_overrides[main.get_settings_cache] = lambda: settings_cache
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
