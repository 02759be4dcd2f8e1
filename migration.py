"""
Hierarchy reference migration

Rewrites the legacy string parent links of the catalog into ObjectId
references, one level at a time:

    Department -> Category -> SubCategory -> Product

Each level builds a legacy-id -> ObjectId map of its parents, then walks the
child collection in `_id` order, in batches, and writes only the links that
resolve. Links that are already ObjectIds are left alone, so running it again
is safe. Links that resolve to nothing are reported, never guessed.

Run from the command line:

    python migration.py --backup
    python migration.py --verify
"""

import argparse
import json
import logging
import os
import signal
import socket
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from bson import json_util
from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import CATEGORIES, DEPARTMENTS, MIGRATION_LOCKS, PRODUCTS, SUBCATEGORIES, get_db
from references import Migrated, ReferenceMap, Unmigrated, build_reference_map, classify_link
from schemas import BackupResult, LevelReport, LinkStatus, MigrationError, MigrationReport, VerificationReport

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = int(os.getenv("MIGRATION_BATCH_SIZE", "100"))
BACKUP_DIR = os.getenv("MIGRATION_BACKUP_DIR", "backups")
LOCK_ID = "hierarchy_migration"

# (level name, collection, legacy id field, display name field)
DEPARTMENT_LEVEL = ("departments", DEPARTMENTS, "department_id", "department_name")
CATEGORY_LEVEL = ("categories", CATEGORIES, "idcategory_master", "category_name")
SUBCATEGORY_LEVEL = ("subcategories", SUBCATEGORIES, "idsub_category_master", "sub_category_name")
PRODUCT_LEVEL = ("products", PRODUCTS, "p_code", "product_name")


class MigrationLockedError(RuntimeError):
    """Another migration run holds the lock document."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HierarchyMigrator:
    def __init__(self, database: Database, batch_size: int = DEFAULT_BATCH_SIZE, use_lock: bool = True):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.db = database
        self.batch_size = batch_size
        self.use_lock = use_lock
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop after the batch currently being processed has been written."""
        self._stop_requested = True

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def migrate_hierarchy(self) -> MigrationReport:
        """Migrate every level top-down and return the per-level report.

        Levels that were not reached because of a stop request are absent from
        the report and `interrupted` is set. Database errors propagate.
        """
        report = MigrationReport(started_at=_now())
        with self._run_lock():
            logger.info("Starting hierarchy migration: Department -> Category -> SubCategory -> Product")

            departments = self._parent_map(DEPARTMENT_LEVEL)
            report.per_level.append(self._migrate_level(CATEGORY_LEVEL, {"dept_id": departments}))

            if not self.stopped:
                # Re-read so the maps reflect what the previous step persisted
                categories = self._parent_map(CATEGORY_LEVEL)
                report.per_level.append(self._migrate_level(SUBCATEGORY_LEVEL, {"category_id": categories}))

            if not self.stopped:
                categories = self._parent_map(CATEGORY_LEVEL)
                subcategories = self._parent_map(SUBCATEGORY_LEVEL)
                report.per_level.append(
                    self._migrate_level(
                        PRODUCT_LEVEL,
                        {
                            "dept_id": departments,
                            "category_id": categories,
                            "sub_category_id": subcategories,
                        },
                    )
                )

        report.interrupted = self.stopped
        report.finished_at = _now()
        if report.interrupted:
            logger.warning("Hierarchy migration interrupted; re-run to continue")
        else:
            logger.info("Hierarchy migration finished: %d documents updated", report.total_updated)
        return report

    def _parent_map(self, level) -> ReferenceMap:
        level_name, collection_name, legacy_field, _ = level
        mapping = build_reference_map(self.db[collection_name], level_name, legacy_field)
        logger.info("Built %s mapping with %d entries", level_name, len(mapping))
        return mapping

    def _migrate_level(self, level, links: Dict[str, ReferenceMap]) -> LevelReport:
        level_name, collection_name, legacy_field, name_field = level
        collection = self.db[collection_name]
        report = LevelReport(level_name=level_name)
        logger.info("Migrating %s (%s)", level_name, ", ".join(links))

        projection = {"_id": 1, legacy_field: 1, name_field: 1}
        projection.update({field: 1 for field in links})

        # A stop request is only honoured between batches, so a batch is always fully written
        for batch in self._batches(collection, projection):
            for doc in batch:
                update = self._migrate_entity(doc, links, legacy_field, name_field, report)
                if update:
                    collection.update_one({"_id": doc["_id"]}, {"$set": update})
            logger.info(
                "%s: processed %d, updated %d, skipped %d, errored %d",
                level_name, report.total, report.updated, report.skipped, report.errored,
            )

        logger.info(
            "%s done: %d total, %d updated, %d skipped, %d with errors",
            level_name, report.total, report.updated, report.skipped, report.errored,
        )
        return report

    def _batches(self, collection: Collection, projection: dict):
        last_id = None
        while not self.stopped:
            query = {} if last_id is None else {"_id": {"$gt": last_id}}
            batch = list(collection.find(query, projection).sort("_id", ASCENDING).limit(self.batch_size))
            if not batch:
                return
            yield batch
            last_id = batch[-1]["_id"]

    def _migrate_entity(self, doc, links, legacy_field, name_field, report: LevelReport) -> dict:
        """Classify every link of one document; return the fields to $set."""
        update = {}
        failed = False
        entity_name = doc.get(name_field) or doc.get(legacy_field)

        for field, parents in links.items():
            link = classify_link(doc.get(field))
            if isinstance(link, Migrated):
                continue
            if isinstance(link, Unmigrated):
                ref = parents.lookup(link.legacy_id)
                if ref is not None:
                    update[field] = ref
                    continue
                offending = link.legacy_id
                if parents.is_ambiguous(offending):
                    reason = "ambiguous"
                    logger.warning(
                        '%s "%s": %s "%s" matches more than one entry in %s',
                        report.level_name, entity_name, field, offending, parents.level_name,
                    )
                else:
                    reason = "orphan"
                    logger.warning(
                        '%s "%s": %s "%s" not found in %s',
                        report.level_name, entity_name, field, offending, parents.level_name,
                    )
            else:
                offending = None if link.value is None else str(link.value)
                reason = "unexpected_type"
                logger.warning(
                    '%s "%s": %s has unexpected value %r',
                    report.level_name, entity_name, field, link.value,
                )
            failed = True
            report.errors.append(
                MigrationError(
                    entity_id=str(doc["_id"]),
                    entity_name=None if entity_name is None else str(entity_name),
                    field=field,
                    offending_legacy_id=offending,
                    reason=reason,
                )
            )

        report.total += 1
        if update:
            report.updated += 1
        elif not failed:
            report.skipped += 1
        if failed:
            report.errored += 1
        return update

    @contextmanager
    def _run_lock(self):
        if not self.use_lock:
            yield
            return
        locks = self.db[MIGRATION_LOCKS]
        try:
            locks.insert_one({
                "_id": LOCK_ID,
                "acquired_at": _now(),
                "host": socket.gethostname(),
                "pid": os.getpid(),
            })
        except DuplicateKeyError:
            holder = locks.find_one({"_id": LOCK_ID}) or {}
            raise MigrationLockedError(
                f"Hierarchy migration already running (host={holder.get('host')}, "
                f"pid={holder.get('pid')}, since={holder.get('acquired_at')})"
            )
        try:
            yield
        finally:
            locks.delete_one({"_id": LOCK_ID})


def migrate_hierarchy(database: Database, batch_size: int = DEFAULT_BATCH_SIZE, use_lock: bool = True) -> MigrationReport:
    return HierarchyMigrator(database, batch_size=batch_size, use_lock=use_lock).migrate_hierarchy()


def release_lock(database: Database) -> bool:
    """Drop a lock left behind by a run that died without cleaning up."""
    return database[MIGRATION_LOCKS].delete_one({"_id": LOCK_ID}).deleted_count > 0


# ---------------
# Verification
# ---------------

# child level, link field, parent level
LINKS_TO_VERIFY = [
    (CATEGORY_LEVEL, "dept_id", DEPARTMENT_LEVEL),
    (SUBCATEGORY_LEVEL, "category_id", CATEGORY_LEVEL),
    (PRODUCT_LEVEL, "dept_id", DEPARTMENT_LEVEL),
    (PRODUCT_LEVEL, "category_id", CATEGORY_LEVEL),
    (PRODUCT_LEVEL, "sub_category_id", SUBCATEGORY_LEVEL),
]


def verify_hierarchy(database: Database) -> VerificationReport:
    """Read-only scan of every parent link: strings left, references, dangling references."""
    report = VerificationReport()
    parent_ids: Dict[str, set] = {}

    for child_level, field, parent_level in LINKS_TO_VERIFY:
        parent_collection = parent_level[1]
        if parent_collection not in parent_ids:
            parent_ids[parent_collection] = {doc["_id"] for doc in database[parent_collection].find({}, {"_id": 1})}
        known = parent_ids[parent_collection]

        status = LinkStatus(level_name=child_level[0], field=field)
        for doc in database[child_level[1]].find({}, {field: 1}):
            status.total += 1
            link = classify_link(doc.get(field))
            if isinstance(link, Migrated):
                status.reference_links += 1
                if link.ref not in known:
                    status.dangling_references += 1
            elif isinstance(link, Unmigrated):
                status.string_links += 1
            else:
                status.invalid_links += 1
        report.links.append(status)
        logger.info(
            "%s.%s: %d references (%d dangling), %d strings, %d invalid",
            status.level_name, field, status.reference_links, status.dangling_references,
            status.string_links, status.invalid_links,
        )
    return report


# ---------------
# Backup
# ---------------


def backup_collections(database: Database, directory: str = BACKUP_DIR) -> BackupResult:
    """Dump the four catalog collections into one timestamped JSON file."""
    backup_dir = Path(directory)
    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = _now()
    backup = {"timestamp": timestamp.isoformat()}
    counts = {}
    for _, collection_name, _, _ in (DEPARTMENT_LEVEL, CATEGORY_LEVEL, SUBCATEGORY_LEVEL, PRODUCT_LEVEL):
        docs = list(database[collection_name].find({}))
        backup[collection_name] = docs
        counts[collection_name] = len(docs)

    path = backup_dir / f"backup_{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"
    path.write_text(json_util.dumps(backup, indent=2))
    logger.info("Backup saved to %s (%s)", path, ", ".join(f"{k}: {v}" for k, v in counts.items()))
    return BackupResult(path=str(path), counts=counts)


# ---------------
# Command line
# ---------------


def log_report(report: MigrationReport, max_errors: Optional[int] = 10) -> None:
    for level in report.per_level:
        logger.info(
            "%s: %d total, %d updated, %d skipped, %d with errors",
            level.level_name, level.total, level.updated, level.skipped, level.errored,
        )
        shown = level.errors if max_errors is None else level.errors[:max_errors]
        for error in shown:
            logger.info(
                '  %s "%s" (%s): %s=%r [%s]',
                level.level_name, error.entity_name, error.entity_id, error.field,
                error.offending_legacy_id, error.reason,
            )
        hidden = level.error_count - len(shown)
        if hidden > 0:
            logger.info("  ... and %d more", hidden)


def _install_signal_handlers(migrator: HierarchyMigrator) -> dict:
    def handler(signum, frame):
        logger.warning("Received %s, stopping after the current batch", signal.Signals(signum).name)
        migrator.request_stop()

    return {signum: signal.signal(signum, handler) for signum in (signal.SIGINT, signal.SIGTERM)}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convert catalog parent links from legacy ids to ObjectIds.")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--backup", action="store_true", help="dump the catalog collections before migrating")
    parser.add_argument("--backup-dir", default=BACKUP_DIR)
    parser.add_argument("--verify", action="store_true", help="only report link status, change nothing")
    parser.add_argument("--no-lock", action="store_true", help="skip the run lock document")
    parser.add_argument("--force-unlock", action="store_true", help="remove a stale run lock and exit")
    parser.add_argument("--max-errors", type=int, default=10, help="errors shown per level (0 for all)")
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    return parser


def main(argv: Optional[List[str]] = None, database: Optional[Database] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if database is None:
        database = get_db()

    max_errors = args.max_errors or None
    try:
        if args.force_unlock:
            removed = release_lock(database)
            logger.info("Lock removed" if removed else "No lock present")
            return 0

        if args.verify:
            verification = verify_hierarchy(database)
            if args.json:
                print(json.dumps([s.model_dump() for s in verification.links], indent=2))
            return 0 if verification.complete else 1

        if args.backup:
            backup_collections(database, args.backup_dir)

        migrator = HierarchyMigrator(database, batch_size=args.batch_size, use_lock=not args.no_lock)
        previous = _install_signal_handlers(migrator)
        try:
            report = migrator.migrate_hierarchy()
        finally:
            for signum, old in previous.items():
                signal.signal(signum, old)
    except MigrationLockedError as e:
        logger.error(str(e))
        return 2
    except PyMongoError as e:
        logger.error("Migration aborted, database error: %s", e)
        return 1

    log_report(report, max_errors)
    if args.json:
        print(json.dumps(report.summary(max_errors), indent=2, default=str))
    return 130 if report.interrupted else 0


if __name__ == "__main__":
    sys.exit(main())
