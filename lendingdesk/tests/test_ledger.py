from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from lendingdesk import ledger
from lendingdesk.errors import NotFound, ValidationError
from lendingdesk.models import (
    Account,
    AccountTransaction,
    InstallmentStatus,
    Loan,
    LoanInstallment,
    LoanStatus,
    TransactionDirection,
)


def _transactions(session, account_id):
    return session.exec(
        select(AccountTransaction).where(AccountTransaction.account_id == account_id).order_by(AccountTransaction.id)
    ).all()


def test_deposit_increments_balance_and_appends_one_credit(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="100.00")

    result = ledger.deposit(session, account.id, "50.25")

    assert result.account.current_balance == Decimal("150.25")
    assert result.transaction.direction == TransactionDirection.CREDIT
    assert result.transaction.amount == Decimal("50.25")
    assert result.transaction.description == ledger.DEFAULT_DEPOSIT_DESCRIPTION
    assert len(_transactions(session, account.id)) == 1


def test_deposit_keeps_custom_description(session, seed):
    account = seed.account(seed.tenant())
    result = ledger.deposit(session, account.id, Decimal("10"), "  cash from branch  ")
    assert result.transaction.description == "cash from branch"


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_deposit_rejects_invalid_amount(session, seed, amount):
    account = seed.account(seed.tenant(), opening="10.00")
    with pytest.raises(ValidationError):
        ledger.deposit(session, account.id, amount)
    session.refresh(account)
    assert account.current_balance == Decimal("10.00")
    assert _transactions(session, account.id) == []


def test_deposit_on_missing_or_foreign_account_is_not_found(session, seed):
    tenant = seed.tenant()
    other = seed.tenant()
    account = seed.account(other)
    with pytest.raises(NotFound):
        ledger.deposit(session, 9999, "10")
    with pytest.raises(NotFound):
        ledger.deposit(session, account.id, "10", tenant_id=tenant.id)
    assert _transactions(session, account.id) == []


def test_disburse_loan_debits_account_and_links_transaction(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="50000.00")
    client = seed.client(tenant)

    loan = ledger.disburse_loan(
        session,
        client_id=client.id,
        account_id=account.id,
        principal_amount="10000",
        interest_rate="10",
        due_date=date(2024, 3, 15),
        tenant_id=tenant.id,
    )

    session.refresh(account)
    assert account.current_balance == Decimal("40000.00")
    assert loan.status == LoanStatus.ACTIVE
    assert loan.tenant_id == tenant.id
    entries = _transactions(session, account.id)
    assert len(entries) == 1
    assert entries[0].direction == TransactionDirection.DEBIT
    assert entries[0].amount == Decimal("10000.00")
    assert entries[0].loan_id == loan.id
    assert entries[0].description == ledger.DISBURSEMENT_DESCRIPTION
    assert len(loan.installments) == 1
    assert loan.installments[0].total_due == Decimal("11000.00")


def test_disbursement_allows_overdraft(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="100.00")
    client = seed.client(tenant)

    ledger.disburse_loan(
        session,
        client_id=client.id,
        account_id=account.id,
        principal_amount="500",
        interest_rate="0",
        due_date=date(2024, 1, 10),
    )

    session.refresh(account)
    assert account.current_balance == Decimal("-400.00")


def test_disbursement_validates_references_and_amounts(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="100.00")
    client = seed.client(tenant)
    common = dict(interest_rate="1", due_date=date(2024, 1, 10))

    with pytest.raises(NotFound):
        ledger.disburse_loan(session, client_id=client.id, account_id=999, principal_amount="10", **common)
    with pytest.raises(NotFound):
        ledger.disburse_loan(session, client_id=999, account_id=account.id, principal_amount="10", **common)
    with pytest.raises(ValidationError):
        ledger.disburse_loan(session, client_id=client.id, account_id=account.id, principal_amount="0", **common)
    with pytest.raises(ValidationError):
        ledger.disburse_loan(
            session,
            client_id=client.id,
            account_id=account.id,
            principal_amount="10",
            interest_rate="-1",
            due_date=date(2024, 1, 10),
        )
    assert session.exec(select(Loan)).all() == []


def test_disbursement_rolls_back_when_balance_update_fails(session, seed, monkeypatch):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="1000.00")
    client = seed.client(tenant)

    def broken_update(*args, **kwargs):
        raise RuntimeError("storage went away")

    monkeypatch.setattr(ledger, "_apply_balance_delta", broken_update)

    with pytest.raises(RuntimeError):
        ledger.disburse_loan(
            session,
            client_id=client.id,
            account_id=account.id,
            principal_amount="250",
            interest_rate="5",
            due_date=date(2024, 6, 1),
            installments=3,
        )

    session.refresh(account)
    assert account.current_balance == Decimal("1000.00")
    assert session.exec(select(Loan)).all() == []
    assert session.exec(select(LoanInstallment)).all() == []
    assert _transactions(session, account.id) == []


def test_deposit_rolls_back_balance_when_journal_write_fails(session, seed, monkeypatch):
    account = seed.account(seed.tenant(), opening="80.00")
    applied = []
    real_apply = ledger._apply_balance_delta

    def tracking_apply(*args, **kwargs):
        real_apply(*args, **kwargs)
        applied.append(args[-1])

    def broken_append(*args, **kwargs):
        raise RuntimeError("journal unavailable")

    monkeypatch.setattr(ledger, "_apply_balance_delta", tracking_apply)
    monkeypatch.setattr(ledger, "_append_transaction", broken_append)

    with pytest.raises(RuntimeError):
        ledger.deposit(session, account.id, "20")

    assert applied == [Decimal("20.00")]
    session.refresh(account)
    assert account.current_balance == Decimal("80.00")
    assert _transactions(session, account.id) == []


def test_installment_schedule_puts_rounding_remainder_on_last():
    schedule = ledger.build_installment_schedule(Decimal("1000.00"), Decimal("10"), date(2024, 1, 31), 3)

    assert [item.principal_due for item in schedule] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
    assert [item.interest_due for item in schedule] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert sum(item.total_due for item in schedule) == Decimal("1100.00")
    assert [item.due_date for item in schedule] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]
    assert all(item.status == InstallmentStatus.PENDING for item in schedule)


def test_record_payment_credits_account_and_fills_installments_in_order(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="5000.00")
    client = seed.client(tenant)
    loan = ledger.disburse_loan(
        session,
        client_id=client.id,
        account_id=account.id,
        principal_amount="1000",
        interest_rate="10",
        due_date=date(2024, 2, 1),
        installments=2,
    )

    result = ledger.record_payment(session, loan.id, "600")

    assert result.account.current_balance == Decimal("4600.00")
    assert result.transaction.direction == TransactionDirection.CREDIT
    assert result.transaction.loan_id == loan.id
    assert result.transaction.description == ledger.DEFAULT_PAYMENT_DESCRIPTION
    first, second = result.loan.installments
    assert first.status == InstallmentStatus.PAID
    assert first.paid_amount == Decimal("550.00")
    assert second.status == InstallmentStatus.PARTIAL
    assert second.paid_amount == Decimal("50.00")
    assert result.loan.status == LoanStatus.ACTIVE
    assert ledger.reconcile(session, result.account) == Decimal("0.00")


def test_record_payment_on_unknown_loan_is_not_found(session):
    with pytest.raises(NotFound):
        ledger.record_payment(session, 12345, "10")


def test_deposit_then_disbursement_scenario(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="50000.00")
    client = seed.client(tenant)

    ledger.deposit(session, account.id, "1500")
    session.refresh(account)
    assert account.current_balance == Decimal("51500.00")

    ledger.disburse_loan(
        session,
        client_id=client.id,
        account_id=account.id,
        principal_amount="10000",
        interest_rate="2.5",
        due_date=date(2024, 12, 1),
    )
    session.refresh(account)
    assert account.current_balance == Decimal("41500.00")
    assert ledger.signed_transaction_total(session, account.id) == Decimal("-8500.00")
    assert ledger.reconcile(session, account) == Decimal("0.00")


def test_reconcile_reports_drift_when_balance_is_edited_directly(session, seed):
    account = seed.account(seed.tenant(), opening="10.00")
    ledger.deposit(session, account.id, "5")
    session.refresh(account)
    account.current_balance = account.current_balance + Decimal("1.00")
    session.add(account)
    session.commit()
    session.refresh(account)

    assert ledger.reconcile(session, account) == Decimal("1.00")


def test_total_balance_sums_owned_and_shared_accounts(session, seed):
    tenant = seed.tenant()
    other_tenant = seed.tenant()
    me = seed.user(tenant)
    colleague = seed.user(tenant)
    seed.account(tenant, owner=me, opening="100.00")
    seed.account(tenant, opening="50.50")
    seed.account(tenant, owner=colleague, opening="1000.00")
    seed.account(other_tenant, opening="7.00")

    assert ledger.total_balance(session, owner_id=me.id, tenant_id=tenant.id) == Decimal("150.50")
    assert ledger.total_balance(session, tenant_id=tenant.id) == Decimal("1150.50")
    assert ledger.total_balance(session, owner_id=me.id, tenant_id=tenant.id, include_unowned=False) == Decimal("100.00")


def test_concurrent_deposits_never_lose_an_update(tmp_path):
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(file_engine)
    with Session(file_engine) as setup:
        account = Account(
            tenant_id=None,
            name="Shared",
            bank_name="Banco",
            branch="1",
            account_number="1",
            opening_balance=Decimal("0.00"),
            current_balance=Decimal("0.00"),
        )
        setup.add(account)
        setup.commit()
        account_id = account.id

    def worker(_):
        with Session(file_engine) as worker_session:
            ledger.deposit(worker_session, account_id, "1.00")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(worker, range(40)))

    with Session(file_engine) as check:
        account = check.get(Account, account_id)
        assert account.current_balance == Decimal("40.00")
        assert len(_transactions(check, account_id)) == 40
        assert ledger.reconcile(check, account) == Decimal("0.00")
    file_engine.dispose()
