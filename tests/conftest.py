import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, get_database, hash_password
from database import CATEGORIES, DEPARTMENTS, PRODUCTS, SUBCATEGORIES, USERS
from main import app


@pytest.fixture
def db():
    return mongomock.MongoClient()["ecom_test"]


@pytest.fixture
def catalog(db):
    """Two departments, three categories (one orphan), subcategories and products."""
    dept_grocery = db[DEPARTMENTS].insert_one(
        {"department_id": "2", "department_name": "Grocery", "sequence_id": 1}
    ).inserted_id
    dept_home = db[DEPARTMENTS].insert_one(
        {"department_id": "5", "department_name": "Home", "sequence_id": 2}
    ).inserted_id

    cat_rice = db[CATEGORIES].insert_one(
        {"idcategory_master": "C9", "category_name": "Rice", "dept_id": "2", "sequence_id": 1}
    ).inserted_id
    cat_clean = db[CATEGORIES].insert_one(
        {"idcategory_master": "C11", "category_name": "Cleaning", "dept_id": "5", "sequence_id": 2}
    ).inserted_id
    cat_orphan = db[CATEGORIES].insert_one(
        {"idcategory_master": "C10", "category_name": "Lost", "dept_id": "99", "sequence_id": 3}
    ).inserted_id

    sub_basmati = db[SUBCATEGORIES].insert_one(
        {"idsub_category_master": "S1", "sub_category_name": "Basmati", "category_id": "C9"}
    ).inserted_id
    sub_floor = db[SUBCATEGORIES].insert_one(
        {"idsub_category_master": "S2", "sub_category_name": "Floor Care", "category_id": "C11"}
    ).inserted_id
    sub_orphan = db[SUBCATEGORIES].insert_one(
        {"idsub_category_master": "S3", "sub_category_name": "Nowhere", "category_id": "C404"}
    ).inserted_id

    prod_ok = db[PRODUCTS].insert_one(
        {"p_code": "P1", "product_name": "Basmati 1kg", "dept_id": "2", "category_id": "C9", "sub_category_id": "S1"}
    ).inserted_id
    prod_partial = db[PRODUCTS].insert_one(
        {"p_code": "P2", "product_name": "Mop", "dept_id": "5", "category_id": "C11", "sub_category_id": "S999"}
    ).inserted_id

    return {
        "dept_grocery": dept_grocery,
        "dept_home": dept_home,
        "cat_rice": cat_rice,
        "cat_clean": cat_clean,
        "cat_orphan": cat_orphan,
        "sub_basmati": sub_basmati,
        "sub_floor": sub_floor,
        "sub_orphan": sub_orphan,
        "prod_ok": prod_ok,
        "prod_partial": prod_partial,
    }


@pytest.fixture
def client(db):
    app.dependency_overrides[get_database] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _token_for(db, email, is_admin):
    user_id = db[USERS].insert_one(
        {"name": email.split("@")[0], "email": email, "password_hash": hash_password("secret"), "is_admin": is_admin}
    ).inserted_id
    return create_access_token({"sub": str(user_id), "email": email})


@pytest.fixture
def admin_headers(db):
    return {"Authorization": f"Bearer {_token_for(db, 'admin@example.com', True)}"}


@pytest.fixture
def user_headers(db):
    return {"Authorization": f"Bearer {_token_for(db, 'shopper@example.com', False)}"}
