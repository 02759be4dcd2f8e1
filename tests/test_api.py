from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

import main
import migration
from database import CATEGORIES, MIGRATION_LOCKS
from migration import LOCK_ID


def test_root(client):
    assert client.get("/").json() == {"message": "Catalog Store API running"}


def test_register_login_and_me(client):
    response = client.post("/auth/register", json={"name": "Asha", "email": "Asha@Example.com", "password": "pw123"})
    assert response.status_code == 200
    assert response.json()["is_admin"] is False

    duplicate = client.post("/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "x"})
    assert duplicate.status_code == 400

    bad = client.post("/auth/login", json={"email": "asha@example.com", "password": "wrong"})
    assert bad.status_code == 401

    token = client.post("/auth/login", json={"email": "asha@example.com", "password": "pw123"}).json()["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "asha@example.com"


def test_invalid_token(client):
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_departments_sorted(client, catalog):
    names = [d["department_name"] for d in client.get("/api/departments").json()]
    assert names == ["Grocery", "Home"]


def test_category_filter_before_and_after_migration(client, catalog, admin_headers):
    before = client.get("/api/categories", params={"dept_id": "2"}).json()
    assert [c["category_name"] for c in before] == ["Rice"]

    client.post("/admin/migration/hierarchy", headers=admin_headers)

    by_legacy = client.get("/api/categories", params={"dept_id": "2"}).json()
    by_ref = client.get("/api/categories", params={"dept_id": str(catalog["dept_grocery"])}).json()
    assert [c["category_name"] for c in by_legacy] == ["Rice"]
    assert by_legacy == by_ref
    assert by_legacy[0]["dept_id"] == str(catalog["dept_grocery"])


def test_category_detail_populates_department(client, catalog):
    response = client.get("/api/categories/C9")
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == str(catalog["cat_rice"])
    assert body["department"]["department_name"] == "Grocery"

    assert client.get(f"/api/categories/{catalog['cat_orphan']}").json()["department"] is None
    assert client.get("/api/categories/nope").status_code == 404


def test_subcategories_by_category(client, catalog):
    subs = client.get("/api/subcategories", params={"category_id": "C11"}).json()
    assert [s["sub_category_name"] for s in subs] == ["Floor Care"]


def test_products_listing_and_detail(client, catalog):
    page = client.get("/api/products", params={"category_id": "C11"}).json()
    assert page["total"] == 1
    assert page["items"][0]["product_name"] == "Mop"

    everything = client.get("/api/products", params={"limit": 1, "page": 2}).json()
    assert everything["pages"] == 2
    assert [p["p_code"] for p in everything["items"]] == ["P2"]

    assert client.get("/api/products", params={"limit": 0}).status_code == 400

    detail = client.get("/api/products/P1").json()
    assert detail["category"]["category_name"] == "Rice"
    assert detail["sub_category"]["sub_category_name"] == "Basmati"
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404


def test_migration_endpoint_requires_admin(client, catalog, user_headers):
    assert client.post("/admin/migration/hierarchy").status_code == 401
    assert client.post("/admin/migration/hierarchy", headers=user_headers).status_code == 403


def test_migration_endpoint_report(client, db, catalog, admin_headers):
    response = client.post("/admin/migration/hierarchy", params={"batch_size": 1}, headers=admin_headers)
    assert response.status_code == 200

    data = response.json()["data"]
    categories, subcategories, products = data["per_level"]
    assert categories["level_name"] == "categories"
    assert (categories["updated"], categories["error_count"]) == (2, 1)
    assert categories["errors"][0]["offending_legacy_id"] == "99"
    assert subcategories["updated"] == 2
    assert products["errored"] == 1
    assert db[CATEGORIES].find_one({"_id": catalog["cat_rice"]})["dept_id"] == catalog["dept_grocery"]

    again = client.post("/admin/migration/hierarchy", headers=admin_headers).json()["data"]
    assert [level["updated"] for level in again["per_level"]] == [0, 0, 0]


def test_migration_endpoint_truncates_errors(client, db, catalog, admin_headers):
    db[CATEGORIES].insert_many(
        [{"idcategory_master": f"X{i}", "category_name": f"Bad {i}", "dept_id": "nope"} for i in range(12)]
    )

    shown = client.post("/admin/migration/hierarchy", params={"max_errors": 3}, headers=admin_headers).json()
    categories = shown["data"]["per_level"][0]
    assert categories["error_count"] == 13
    assert len(categories["errors"]) == 3
    assert categories["errors_truncated"] is True

    full = client.post("/admin/migration/hierarchy", params={"max_errors": 0}, headers=admin_headers).json()
    assert len(full["data"]["per_level"][0]["errors"]) == 13


def test_migration_endpoint_conflict(client, db, catalog, admin_headers):
    db[MIGRATION_LOCKS].insert_one({"_id": LOCK_ID, "host": "worker-2", "pid": 77})
    response = client.post("/admin/migration/hierarchy", headers=admin_headers)
    assert response.status_code == 409
    assert "worker-2" in response.json()["detail"]


def test_migration_status(client, catalog, admin_headers):
    status = client.get("/admin/migration/status", headers=admin_headers).json()
    assert status["complete"] is False
    assert len(status["links"]) == 5
    assert status["links"][0]["string_links"] == 3


def test_backup_endpoint(client, catalog, admin_headers, tmp_path, monkeypatch):
    monkeypatch.setattr(main, "BACKUP_DIR", str(tmp_path))
    response = client.post("/admin/migration/backup", headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["counts"]["products"] == 2
    assert body["path"].startswith(str(tmp_path))


def test_admin_creates_catalog_with_native_links(client, db, catalog, admin_headers, user_headers):
    payload = {"idcategory_master": "C20", "category_name": "Pulses", "dept_id": "2"}
    assert client.post("/admin/categories", json=payload, headers=user_headers).status_code == 403

    response = client.post("/admin/categories", json=payload, headers=admin_headers)
    assert response.status_code == 201
    created = db[CATEGORIES].find_one({"_id": ObjectId(response.json()["id"])})
    assert created["dept_id"] == catalog["dept_grocery"]

    assert client.post("/admin/categories", json=payload, headers=admin_headers).status_code == 400

    orphan = {"idcategory_master": "C21", "category_name": "Nowhere", "dept_id": "99"}
    response = client.post("/admin/categories", json=orphan, headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Department 99 not found"

    product = {
        "p_code": "P30",
        "product_name": "Toor Dal",
        "dept_id": str(catalog["dept_grocery"]),
        "category_id": "C20",
        "sub_category_id": "S1",
    }
    assert client.post("/admin/products", json=product, headers=admin_headers).status_code == 201

    report = client.post("/admin/migration/hierarchy", headers=admin_headers).json()["data"]
    categories, _, products = report["per_level"]
    assert categories["skipped"] == 1
    assert products["skipped"] == 1


def test_admin_creates_department_and_subcategory(client, db, catalog, admin_headers):
    department = {"department_id": "7", "department_name": "Toys", "sequence_id": 3}
    assert client.post("/admin/departments", json=department, headers=admin_headers).status_code == 201

    sub = {"idsub_category_master": "S9", "sub_category_name": "Brown", "category_id": "C9"}
    response = client.post("/admin/subcategories", json=sub, headers=admin_headers)
    assert response.status_code == 201
    assert db["subcategories"].find_one({"idsub_category_master": "S9"})["category_id"] == catalog["cat_rice"]

    names = [d["department_name"] for d in client.get("/api/departments").json()]
    assert names == ["Grocery", "Home", "Toys"]


def test_migration_endpoint_database_down(client, db, catalog, admin_headers, monkeypatch):
    def unreachable(*args, **kwargs):
        raise ServerSelectionTimeoutError("localhost:27017: connection refused")

    monkeypatch.setattr(migration, "build_reference_map", unreachable)
    response = client.post("/admin/migration/hierarchy", headers=admin_headers)

    assert response.status_code == 503
    assert response.json()["detail"] == "Database unavailable"
    assert db[MIGRATION_LOCKS].count_documents({}) == 0


def test_object_ids_serialized_as_strings(catalog):
    doc = {"_id": catalog["cat_rice"], "dept_id": catalog["dept_grocery"], "password_hash": "x", "tags": ["a"]}
    assert main.to_public(doc) == {
        "id": str(catalog["cat_rice"]),
        "dept_id": str(catalog["dept_grocery"]),
        "tags": ["a"],
    }


def test_logging_configured_on_startup():
    assert main.configure_logging in main.app.router.on_startup
