import logging
import os
from typing import Any, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import create_access_token, get_current_user, get_database, hash_password, require_admin, verify_password
from database import CATEGORIES, DEPARTMENTS, PRODUCTS, SUBCATEGORIES, USERS, create_document, get_documents
from migration import BACKUP_DIR, DEFAULT_BATCH_SIZE, HierarchyMigrator, MigrationLockedError, backup_collections, verify_hierarchy
from references import resolve_reference
from schemas import Category, Department, LoginRequest, Product, RegisterRequest, SubCategory, Token, UserPublic

logger = logging.getLogger(__name__)

app = FastAPI(title="Catalog Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Helpers


def object_id_str(value: Any) -> Any:
    return str(value) if isinstance(value, ObjectId) else value


def to_public(doc: Any):
    if not isinstance(doc, dict):
        return object_id_str(doc)
    d = {k: to_public(v) for k, v in doc.items()}
    if "_id" in d:
        d["id"] = d.pop("_id")
    d.pop("password_hash", None)
    return d


def parent_filter(database: Database, field: str, value: str, parent_collection: str, legacy_field: str) -> dict:
    """Match children whose link points at `value`, whether the link is migrated or not."""
    parent = resolve_reference(database[parent_collection], value, legacy_field, {"_id": 1, legacy_field: 1})
    if parent is None:
        return {field: value}
    candidates = [parent["_id"], str(parent["_id"])]
    if parent.get(legacy_field) is not None:
        candidates.append(parent[legacy_field])
    return {field: {"$in": candidates}}


def find_by_id(database: Database, collection_name: str, entity_id: str, legacy_field: str) -> dict:
    doc = None
    if ObjectId.is_valid(entity_id):
        doc = database[collection_name].find_one({"_id": ObjectId(entity_id)})
    if doc is None:
        doc = database[collection_name].find_one({legacy_field: entity_id})
    return doc


@app.on_event("startup")
async def configure_logging():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


@app.get("/")
def read_root():
    return {"message": "Catalog Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        database = get_database()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        collections = database.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except HTTPException:
        response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# === Auth Endpoints ===
@app.post("/auth/register", response_model=UserPublic)
def register_user(payload: RegisterRequest, database: Database = Depends(get_database)):
    existing = database[USERS].find_one({"email": payload.email.lower()})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user_doc = {
        "name": payload.name,
        "email": payload.email.lower(),
        "password_hash": hash_password(payload.password),
        "is_admin": False,
    }
    user_id = create_document(USERS, user_doc, database=database)
    return UserPublic(id=user_id, name=payload.name, email=payload.email)


@app.post("/auth/login", response_model=Token)
def login_user(payload: LoginRequest, database: Database = Depends(get_database)):
    user = database[USERS].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token({"sub": str(user.get("_id")), "email": user.get("email")})
    return Token(access_token=token)


@app.get("/auth/me", response_model=UserPublic)
def read_me(user: dict = Depends(get_current_user)):
    return UserPublic(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user.get("email"),
        is_admin=bool(user.get("is_admin")),
    )


# === Catalog Endpoints ===
@app.get("/api/departments")
def list_departments(database: Database = Depends(get_database)):
    docs = get_documents(DEPARTMENTS, sort=[("sequence_id", ASCENDING)], database=database)
    return [to_public(d) for d in docs]


@app.get("/api/categories")
def list_categories(dept_id: Optional[str] = None, database: Database = Depends(get_database)):
    filter_dict = {}
    if dept_id:
        filter_dict = parent_filter(database, "dept_id", dept_id, DEPARTMENTS, "department_id")
    docs = get_documents(CATEGORIES, filter_dict, sort=[("sequence_id", ASCENDING)], database=database)
    return [to_public(d) for d in docs]


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, database: Database = Depends(get_database)):
    doc = find_by_id(database, CATEGORIES, category_id, "idcategory_master")
    if not doc:
        raise HTTPException(status_code=404, detail="Category not found")
    doc["department"] = resolve_reference(
        database[DEPARTMENTS], doc.get("dept_id"), "department_id",
        {"department_name": 1, "department_id": 1, "image_link": 1},
    )
    return to_public(doc)


@app.get("/api/subcategories")
def list_subcategories(category_id: Optional[str] = None, database: Database = Depends(get_database)):
    filter_dict = {}
    if category_id:
        filter_dict = parent_filter(database, "category_id", category_id, CATEGORIES, "idcategory_master")
    docs = get_documents(SUBCATEGORIES, filter_dict, database=database)
    return [to_public(d) for d in docs]


@app.get("/api/products")
def list_products(
    dept_id: Optional[str] = None,
    category_id: Optional[str] = None,
    sub_category_id: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    database: Database = Depends(get_database),
):
    if page < 1 or limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")

    filter_dict = {}
    if dept_id:
        filter_dict.update(parent_filter(database, "dept_id", dept_id, DEPARTMENTS, "department_id"))
    if category_id:
        filter_dict.update(parent_filter(database, "category_id", category_id, CATEGORIES, "idcategory_master"))
    if sub_category_id:
        filter_dict.update(
            parent_filter(database, "sub_category_id", sub_category_id, SUBCATEGORIES, "idsub_category_master")
        )

    total = database[PRODUCTS].count_documents(filter_dict)
    docs = get_documents(
        PRODUCTS, filter_dict, limit=limit, skip=(page - 1) * limit,
        sort=[("_id", ASCENDING)], database=database,
    )
    return {
        "items": [to_public(d) for d in docs],
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


@app.get("/api/products/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_database)):
    doc = find_by_id(database, PRODUCTS, product_id, "p_code")
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    doc["department"] = resolve_reference(
        database[DEPARTMENTS], doc.get("dept_id"), "department_id", {"department_name": 1, "department_id": 1}
    )
    doc["category"] = resolve_reference(
        database[CATEGORIES], doc.get("category_id"), "idcategory_master", {"category_name": 1, "idcategory_master": 1}
    )
    doc["sub_category"] = resolve_reference(
        database[SUBCATEGORIES], doc.get("sub_category_id"), "idsub_category_master",
        {"sub_category_name": 1, "idsub_category_master": 1},
    )
    return to_public(doc)


# === Admin: catalog management ===
# Parent links are resolved and stored as ObjectIds, so new documents never need migrating.

def create_catalog_document(database: Database, collection_name: str, legacy_field: str, payload, links) -> dict:
    doc = payload.model_dump()
    if database[collection_name].find_one({legacy_field: doc[legacy_field]}):
        raise HTTPException(status_code=400, detail=f"{legacy_field} {doc[legacy_field]} already exists")
    for field, parent_collection, parent_legacy_field, label in links:
        parent = resolve_reference(database[parent_collection], doc[field], parent_legacy_field, {"_id": 1})
        if parent is None:
            raise HTTPException(status_code=404, detail=f"{label} {doc[field]} not found")
        doc[field] = parent["_id"]
    return {"id": create_document(collection_name, doc, database=database)}


DEPARTMENT_LINK = ("dept_id", DEPARTMENTS, "department_id", "Department")
CATEGORY_LINK = ("category_id", CATEGORIES, "idcategory_master", "Category")
SUBCATEGORY_LINK = ("sub_category_id", SUBCATEGORIES, "idsub_category_master", "SubCategory")


@app.post("/admin/departments", status_code=201)
def create_department(payload: Department, admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    return create_catalog_document(database, DEPARTMENTS, "department_id", payload, [])


@app.post("/admin/categories", status_code=201)
def create_category(payload: Category, admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    return create_catalog_document(database, CATEGORIES, "idcategory_master", payload, [DEPARTMENT_LINK])


@app.post("/admin/subcategories", status_code=201)
def create_subcategory(payload: SubCategory, admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    return create_catalog_document(database, SUBCATEGORIES, "idsub_category_master", payload, [CATEGORY_LINK])


@app.post("/admin/products", status_code=201)
def create_product(payload: Product, admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    return create_catalog_document(
        database, PRODUCTS, "p_code", payload, [DEPARTMENT_LINK, CATEGORY_LINK, SUBCATEGORY_LINK]
    )


# === Admin: hierarchy migration ===
@app.post("/admin/migration/hierarchy")
def run_hierarchy_migration(
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_errors: int = 10,
    admin: dict = Depends(require_admin),
    database: Database = Depends(get_database),
):
    if batch_size < 1:
        raise HTTPException(status_code=400, detail="batch_size must be at least 1")
    logger.info(f"Hierarchy migration requested by {admin.get('email')}")
    try:
        report = HierarchyMigrator(database, batch_size=batch_size).migrate_hierarchy()
    except MigrationLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PyMongoError as e:
        logger.error(f"Hierarchy migration failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {"success": True, "data": report.summary(max_errors if max_errors > 0 else None)}


@app.get("/admin/migration/status")
def migration_status(admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    try:
        verification = verify_hierarchy(database)
    except PyMongoError as e:
        logger.error(f"Hierarchy verification failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {
        "complete": verification.complete,
        "links": [dict(status.model_dump(), complete=status.complete) for status in verification.links],
    }


@app.post("/admin/migration/backup")
def backup_catalog(admin: dict = Depends(require_admin), database: Database = Depends(get_database)):
    try:
        result = backup_collections(database, BACKUP_DIR)
    except PyMongoError as e:
        logger.error(f"Catalog backup failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return result.model_dump()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
