"""
Parent-link references

A parent link field (dept_id, category_id, sub_category_id) holds either the
parent's legacy string id or, once migrated, the parent's ObjectId. The store
keeps both in the same field, so every reader goes through `classify_link`
to get an explicit tagged value back.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Union

from bson import ObjectId
from pymongo.collection import Collection


@dataclass(frozen=True)
class Unmigrated:
    legacy_id: str


@dataclass(frozen=True)
class Migrated:
    ref: ObjectId


@dataclass(frozen=True)
class Invalid:
    """Neither a string nor an ObjectId (None, number, embedded doc...)."""
    value: Any


ParentLink = Union[Unmigrated, Migrated, Invalid]


def classify_link(value: Any) -> ParentLink:
    if isinstance(value, ObjectId):
        return Migrated(value)
    if isinstance(value, str) and value.strip():
        return Unmigrated(value)
    return Invalid(value)


class ReferenceMap:
    """Legacy id -> ObjectId lookup for one parent level.

    Also knows every parent `_id`, so a link stored as a stringified ObjectId
    ("64f0c1...") can be resolved to the real reference. A legacy id shared by
    more than one parent is ambiguous and never resolves.
    """

    def __init__(self, level_name: str, legacy_field: str):
        self.level_name = level_name
        self.legacy_field = legacy_field
        self.by_legacy: Dict[str, ObjectId] = {}
        self.by_id: Dict[str, ObjectId] = {}
        self.ambiguous: Set[str] = set()

    def add(self, doc: dict) -> None:
        oid = doc["_id"]
        self.by_id[str(oid)] = oid
        legacy = doc.get(self.legacy_field)
        if legacy is not None:
            key = str(legacy)
            if key in self.by_legacy and self.by_legacy[key] != oid:
                self.ambiguous.add(key)
            self.by_legacy[key] = oid

    def is_ambiguous(self, legacy_id: str) -> bool:
        return legacy_id in self.ambiguous

    def lookup(self, legacy_id: str) -> Optional[ObjectId]:
        if legacy_id in self.ambiguous:
            return None
        oid = self.by_legacy.get(legacy_id)
        if oid is None and ObjectId.is_valid(legacy_id):
            oid = self.by_id.get(legacy_id)
        return oid

    def __contains__(self, oid: ObjectId) -> bool:
        return str(oid) in self.by_id

    def __len__(self) -> int:
        return len(self.by_legacy)


def build_reference_map(collection: Collection, level_name: str, legacy_field: str) -> ReferenceMap:
    mapping = ReferenceMap(level_name, legacy_field)
    for doc in collection.find({}, {"_id": 1, legacy_field: 1}):
        mapping.add(doc)
    return mapping


def resolve_reference(
    collection: Collection,
    value: Any,
    legacy_field: str,
    projection: Optional[dict] = None,
) -> Optional[dict]:
    """Fetch the parent document a link points at, whatever state the link is in."""
    link = classify_link(value)
    if isinstance(link, Migrated):
        return collection.find_one({"_id": link.ref}, projection)
    if isinstance(link, Unmigrated):
        doc = collection.find_one({legacy_field: link.legacy_id}, projection)
        if doc is None and ObjectId.is_valid(link.legacy_id):
            doc = collection.find_one({"_id": ObjectId(link.legacy_id)}, projection)
        return doc
    return None
