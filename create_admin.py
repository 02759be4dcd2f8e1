"""Create an admin user, or promote an existing one."""

import argparse
import getpass
import logging
import sys
from typing import List, Optional

from pymongo.database import Database

from auth import hash_password
from database import USERS, create_document, get_db

logger = logging.getLogger(__name__)


def create_admin(database: Database, name: str, email: str, password: str) -> str:
    email = email.lower()
    existing = database[USERS].find_one({"email": email})
    if existing:
        database[USERS].update_one(
            {"_id": existing["_id"]},
            {"$set": {"is_admin": True, "password_hash": hash_password(password)}},
        )
        logger.info("Promoted existing user %s to admin", email)
        return str(existing["_id"])

    user_id = create_document(
        USERS,
        {"name": name, "email": email, "password_hash": hash_password(password), "is_admin": True},
        database=database,
    )
    logger.info("Created admin user %s", email)
    return user_id


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("email")
    parser.add_argument("--name", default="Admin")
    parser.add_argument("--password", help="prompted for when omitted")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    password = args.password or getpass.getpass("Password: ")
    if not password:
        logger.error("Password must not be empty")
        return 1
    create_admin(get_db(), args.name, args.email, password)
    return 0


if __name__ == "__main__":
    sys.exit(main())
