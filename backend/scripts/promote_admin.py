"""Give an account the admin role (or take it away).

Usage:
    python -m scripts.promote_admin --email ana@example.com
    python -m scripts.promote_admin --email ana@example.com --demote
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from db import SessionLocal, init_db, unit_of_work
from domain.models import AccountRole
from repositories import AccountsRepository

logger = logging.getLogger(__name__)
accounts_repo = AccountsRepository()


def main(argv: Optional[List[str]] = None) -> int:
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="Change the role of an account.")
    parser.add_argument("--email", required=True, help="Email of the account.")
    parser.add_argument("--create", action="store_true", help="Create the account if it does not exist yet.")
    parser.add_argument("--demote", action="store_true", help="Set the role back to user.")
    args = parser.parse_args(argv)

    role = AccountRole.USER if args.demote else AccountRole.ADMIN
    init_db()
    with SessionLocal() as session:
        with unit_of_work(session):
            account = accounts_repo.get_by_email(session, args.email)
            if account is None and args.create:
                account = accounts_repo.create(session, email=args.email)
            if account is not None:
                account = accounts_repo.set_role(session, account.id, role)
        if account is None:
            logger.error("No account with email %s (use --create)", args.email)
            return 1
    logger.info("%s is now %s", account.email, account.role.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
