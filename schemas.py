"""
Database Schemas

Pydantic models for the catalog collections and for the payloads the API
and the migration tooling return.

Catalog collection names:
- Department -> "departments"
- Category -> "categories"
- SubCategory -> "subcategories"
- Product -> "products"

Stored parent links (dept_id, category_id, sub_category_id) hold either the
parent's legacy string id or its ObjectId, depending on whether the hierarchy
migration has run. Payloads accept either form as a string.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

# -----------------
# Catalog Collections
# -----------------


class Department(BaseModel):
    """Collection name: "departments" """
    department_id: str = Field(..., description="Legacy department id, e.g. '2'")
    department_name: str
    dept_type_id: Optional[str] = None
    dept_no_of_col: int = 0
    store_code: Optional[str] = None
    image_link: Optional[str] = None
    sequence_id: int = 0


class Category(BaseModel):
    """Collection name: "categories" """
    idcategory_master: str = Field(..., description="Legacy category id")
    category_name: str
    dept_id: str = Field(..., description="Department legacy id or ObjectId string")
    image_link: Optional[str] = None
    sequence_id: int = 0


class SubCategory(BaseModel):
    """Collection name: "subcategories" """
    idsub_category_master: str = Field(..., description="Legacy sub category id")
    sub_category_name: str
    category_id: str = Field(..., description="Category legacy id or ObjectId string")
    main_category_name: Optional[str] = None


class Product(BaseModel):
    """Collection name: "products" """
    p_code: str = Field(..., description="Legacy product code")
    product_name: str
    dept_id: str
    category_id: str
    sub_category_id: str
    product_mrp: float = Field(0, ge=0)
    our_price: float = Field(0, ge=0)
    store_code: Optional[str] = None


# -----------------
# Users / Auth
# -----------------


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserPublic(BaseModel):
    id: str
    name: str
    email: EmailStr
    is_admin: bool = False


# -----------------
# Migration Reports
# -----------------


class MigrationError(BaseModel):
    """One link that could not be migrated."""
    entity_id: str
    entity_name: Optional[str] = None
    field: str
    offending_legacy_id: Optional[str] = Field(None, description="Value found in the link field")
    reason: str = Field("orphan", description="orphan, ambiguous or unexpected_type")


class LevelReport(BaseModel):
    level_name: str
    total: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = Field(0, description="Entities with at least one unresolved link")
    errors: List[MigrationError] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def summary(self, max_errors: Optional[int] = 10) -> Dict[str, Any]:
        """Display form: the error list is cut to `max_errors`, counts stay complete."""
        data = self.model_dump(exclude={"errors"})
        data["error_count"] = self.error_count
        shown = self.errors if max_errors is None else self.errors[:max_errors]
        data["errors"] = [e.model_dump() for e in shown]
        data["errors_truncated"] = len(shown) < self.error_count
        return data


class MigrationReport(BaseModel):
    per_level: List[LevelReport] = Field(default_factory=list)
    interrupted: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def level(self, level_name: str) -> LevelReport:
        for level in self.per_level:
            if level.level_name == level_name:
                return level
        raise KeyError(level_name)

    @property
    def total_updated(self) -> int:
        return sum(level.updated for level in self.per_level)

    def summary(self, max_errors: Optional[int] = 10) -> Dict[str, Any]:
        return {
            "per_level": [level.summary(max_errors) for level in self.per_level],
            "interrupted": self.interrupted,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class LinkStatus(BaseModel):
    """Read-only view of one parent-link field across a collection."""
    level_name: str
    field: str
    total: int = 0
    string_links: int = 0
    reference_links: int = 0
    dangling_references: int = 0
    invalid_links: int = 0

    @property
    def complete(self) -> bool:
        return self.string_links == 0 and self.dangling_references == 0 and self.invalid_links == 0


class VerificationReport(BaseModel):
    links: List[LinkStatus] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return all(status.complete for status in self.links)


class BackupResult(BaseModel):
    path: str
    counts: Dict[str, int]
