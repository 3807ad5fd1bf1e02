"""Grant (or remove) credits from the command line.

Usage:
    python -m scripts.add_credits --email ana@example.com --amount 15
    python -m scripts.add_credits --account-id <id> --amount -5

Goes through the ledger like the admin endpoint, so the balance and its
history stay in step. The reference on the ledger entry is "cli".
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

CLI_REFERENCE = "cli"


def main(argv: Optional[List[str]] = None) -> int:
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="Adjust the credit balance of one account.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--account-id", help="Account id to adjust.")
    target.add_argument("--email", help="Email of the account to adjust.")
    parser.add_argument("--amount", type=int, required=True, help="Credits to add; negative removes (stops at 0).")
    args = parser.parse_args(argv)

    if args.amount == 0:
        parser.error("--amount must not be zero")

    init_db()
    with SessionLocal() as session:
        account = (
            accounts_repo.get(session, args.account_id)
            if args.account_id
            else accounts_repo.get_by_email(session, args.email)
        )
        if account is None:
            logger.error("No account found for %s", args.account_id or args.email)
            return 1
        balance = credits.admin_adjust(session, account.id, args.amount, CLI_REFERENCE)
    logger.info("Account %s now has %s credits", account.id, balance)
    return 0


if __name__ == "__main__":
    sys.exit(main())
