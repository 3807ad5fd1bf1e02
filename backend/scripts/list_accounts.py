"""Print accounts with their balance and role.

Usage:
    python -m scripts.list_accounts --limit 50 --check
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from db import SessionLocal, init_db
from repositories import AccountsRepository
from services import credits

logger = logging.getLogger(__name__)
accounts_repo = AccountsRepository()


def main(argv: Optional[List[str]] = None) -> int:
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="List accounts.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--check", action="store_true", help="Compare each balance with its ledger total.")
    args = parser.parse_args(argv)

    init_db()
    mismatches = 0
    with SessionLocal() as session:
        for account in accounts_repo.list_accounts(session, limit=args.limit):
            line = f"{account.id}  {account.email or '(anonymous)':<32} {account.role.value:<6} {account.credits:>6}"
            if args.check:
                balance, ledger_total = credits.reconcile(session, account.id)
                if balance != ledger_total:
                    mismatches += 1
                    line += f"  MISMATCH ledger={ledger_total}"
            logger.info(line)
    if mismatches:
        logger.warning("%s account(s) do not match their ledger", mismatches)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
