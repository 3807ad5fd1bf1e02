import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db import Base, unit_of_work
from domain.errors import ConcurrentLedgerUpdate, NotFoundError
from domain.models import LedgerReason, OperationKind
from repositories import AccountsRepository
from services import credits


def _assert_snapshots_consistent(session, account_id):
    entries = list(reversed(credits.history(session, account_id, limit=10_000)))
    running = 0
    for entry in entries:
        running += entry.amount
        assert entry.balance == running
        assert entry.balance >= 0
    balance, ledger_total = credits.reconcile(session, account_id)
    assert balance == ledger_total == running


def test_purchase_then_drain_to_zero(session, make_account):
    account = make_account()

    assert credits.grant(session, account.id, 500, reference_id="pay_1") == 500
    [entry] = credits.history(session, account.id)
    assert (entry.reason, entry.amount, entry.balance, entry.reference_id) == (LedgerReason.PURCHASE, 500, 500, "pay_1")

    assert credits.consume(session, account.id, OperationKind.BOOK_GENERATION, "book_1") is True
    assert credits.get_balance(session, account.id) == 495
    latest = credits.history(session, account.id, limit=1)[0]
    assert (latest.reason, latest.amount, latest.balance) == (LedgerReason.BOOK_GENERATION, -5, 495)

    for _ in range(99):
        assert credits.consume(session, account.id, OperationKind.BOOK_GENERATION, "book_2") is True
    assert credits.get_balance(session, account.id) == 0
    entries_before = len(credits.history(session, account.id, limit=1000))

    assert credits.consume(session, account.id, OperationKind.BOOK_GENERATION, "book_2") is False
    assert credits.get_balance(session, account.id) == 0
    assert len(credits.history(session, account.id, limit=1000)) == entries_before == 101
    _assert_snapshots_consistent(session, account.id)


def test_consume_with_short_balance_writes_nothing(session, make_account):
    account = make_account(credits_amount=4)

    assert credits.has_sufficient_balance(session, account.id, OperationKind.BOOK_GENERATION) is False
    assert credits.has_sufficient_balance(session, account.id, OperationKind.PAGE_REGENERATION) is True
    assert credits.consume(session, account.id, OperationKind.BOOK_GENERATION, "book_x") is False
    assert credits.get_balance(session, account.id) == 4
    assert len(credits.history(session, account.id)) == 1


def test_unknown_account_has_no_balance(session):
    assert credits.has_sufficient_balance(session, "missing", OperationKind.PAGE_REGENERATION) is False
    assert credits.consume(session, "missing", OperationKind.PAGE_REGENERATION) is False
    with pytest.raises(NotFoundError):
        credits.grant(session, "missing", 10)


def test_page_regeneration_costs_one(session, make_account):
    account = make_account(credits_amount=2)
    assert credits.consume(session, account.id, OperationKind.PAGE_REGENERATION, "b-page-3") is True
    entry = credits.history(session, account.id, limit=1)[0]
    assert (entry.reason, entry.amount, entry.reference_id) == (LedgerReason.PAGE_REGENERATION, -1, "b-page-3")


def test_admin_deduct_clamps_at_zero_and_logs_applied_delta(session, make_account):
    account = make_account(credits_amount=3)
    admin = make_account(email="admin@example.com")

    assert credits.admin_adjust(session, account.id, -10, admin.id) == 0
    entry = credits.history(session, account.id, limit=1)[0]
    assert entry.reason == LedgerReason.ADMIN_DEDUCT
    assert entry.amount == -3
    assert entry.reference_id == admin.id

    assert credits.admin_adjust(session, account.id, 7, admin.id) == 7
    assert credits.history(session, account.id, limit=1)[0].reason == LedgerReason.ADMIN_GRANT
    _assert_snapshots_consistent(session, account.id)


def test_grant_refuses_consumption_reasons(session, make_account):
    account = make_account()
    with pytest.raises(ValueError):
        credits.grant(session, account.id, 5, reason=LedgerReason.BOOK_GENERATION)
    assert credits.history(session, account.id) == []


def test_history_is_newest_first_and_limited(session, make_account):
    account = make_account()
    for n in range(1, 6):
        credits.grant(session, account.id, n, reference_id=f"pay_{n}")

    history = credits.history(session, account.id, limit=3)
    assert [e.reference_id for e in history] == ["pay_5", "pay_4", "pay_3"]
    assert history[0].balance == 15


def test_lost_compare_and_swap_applies_nothing(session, make_account, monkeypatch):
    account = make_account(credits_amount=10)

    with monkeypatch.context() as m:
        # Pretend another writer changed the balance after our read
        m.setattr(credits, "_read_balance", lambda session, account_id, for_update=False: 7)
        with pytest.raises(ConcurrentLedgerUpdate):
            credits.grant(session, account.id, 5, reference_id="pay_race")

    assert credits.get_balance(session, account.id) == 10
    assert [e.reference_id for e in credits.history(session, account.id)] == ["seed"]


def test_failed_ledger_insert_rolls_back_the_debit(session, make_account, monkeypatch):
    account = make_account(credits_amount=10)

    def broken_append(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(credits, "_append_entry", broken_append)
    with pytest.raises(RuntimeError):
        credits.consume(session, account.id, OperationKind.BOOK_GENERATION, "book_1")
    monkeypatch.undo()

    assert credits.get_balance(session, account.id) == 10
    _assert_snapshots_consistent(session, account.id)


@pytest.fixture
def file_sessions(tmp_path):
    """Sessions on separate connections to one SQLite file, like two API workers."""
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


def test_two_workers_cannot_spend_the_same_credits(file_sessions):
    with file_sessions() as setup:
        with unit_of_work(setup):
            account = AccountsRepository().create(setup, email="ana@example.com")
        credits.grant(setup, account.id, 5, reference_id="seed")

    with file_sessions() as worker_a, file_sessions() as worker_b:
        # Both workers see enough credits before either one spends them
        assert credits.has_sufficient_balance(worker_a, account.id, OperationKind.BOOK_GENERATION)
        assert credits.has_sufficient_balance(worker_b, account.id, OperationKind.BOOK_GENERATION)

        spent_a = credits.consume(worker_a, account.id, OperationKind.BOOK_GENERATION, "book-a")
        spent_b = credits.consume(worker_b, account.id, OperationKind.BOOK_GENERATION, "book-b")

    assert (spent_a, spent_b) == (True, False)
    with file_sessions() as check:
        assert credits.get_balance(check, account.id) == 0
        debits = [e for e in credits.history(check, account.id) if e.amount < 0]
        assert [(e.amount, e.reference_id) for e in debits] == [(-5, "book-a")]
        _assert_snapshots_consistent(check, account.id)
