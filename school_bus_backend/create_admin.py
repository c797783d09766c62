"""
Create the first admin account.

Admin registration over HTTP requires an existing admin token, so the first one
is created directly in the database:

    python create_admin.py --email admin@example.com --password secret123 --name "Transport Office"
"""

import argparse
import logging
import sys

from sqlalchemy import select

from src.api.db import init_db, session_scope
from src.api.models.user import User, UserRole
from src.api.security import hash_password

logger = logging.getLogger("create_admin")


def create_admin(email: str, password: str, name: str) -> int:
    """Insert an admin user and return its id; an existing email is left untouched."""
    email = email.lower().strip()
    with session_scope() as db:
        existing = db.scalar(select(User).where(User.email == email))
        if existing is not None:
            logger.warning("User %s already exists (id=%s, role=%s)", email, existing.id, existing.role.value)
            return existing.id
        user = User(name=name.strip(), email=email, password_hash=hash_password(password), role=UserRole.admin)
        db.add(user)
        db.flush()
        logger.info("Created admin %s (id=%s)", email, user.id)
        return user.id


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create an admin user.")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--name", default="Administrator")
    args = parser.parse_args(argv)

    if len(args.password) < 6:
        parser.error("password must be at least 6 characters")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    init_db()
    create_admin(args.email, args.password, args.name)
    return 0


if __name__ == "__main__":
    sys.exit(main())
