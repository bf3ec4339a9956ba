"""Money-moving operations on accounts.

Every balance change is paired with exactly one append-only
``AccountTransaction`` row and both are committed in the same database
transaction. Balances are changed with ``balance = balance + delta`` in SQL,
never by reading the balance into Python and writing it back, so concurrent
requests against one account cannot lose an update.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterator, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from .errors import NotFound, ValidationError
from .models import (
    Account,
    AccountTransaction,
    Client,
    InstallmentStatus,
    Loan,
    LoanInstallment,
    LoanStatus,
    TransactionDirection,
)
from .pagination import Pagination
from .permissions import in_tenant_scope
from .timezone_utils import add_months, now_local

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

DEFAULT_DEPOSIT_DESCRIPTION = "manual deposit"
DISBURSEMENT_DESCRIPTION = "loan disbursement"
DEFAULT_PAYMENT_DESCRIPTION = "loan payment"


@dataclass
class DepositResult:
    account: Account
    transaction: AccountTransaction


@dataclass
class PaymentResult:
    loan: Loan
    account: Account
    transaction: AccountTransaction


def to_money(value: Any) -> Decimal:
    if value is None:
        return ZERO
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid monetary value: {value!r}") from exc
    if not number.is_finite():
        raise ValidationError(f"Invalid monetary value: {value!r}")
    return number.quantize(CENT, rounding=ROUND_HALF_UP)


def _require_positive(value: Any, field_name: str) -> Decimal:
    amount = to_money(value)
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be greater than zero", details={"field": field_name})
    return amount


@contextmanager
def _atomic(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def get_account(session: Session, account_id: int, *, tenant_id: Optional[int] = None) -> Account:
    account = session.get(Account, account_id)
    if not account or not in_tenant_scope(account.tenant_id, tenant_id):
        raise NotFound("Account not found")
    return account


def get_loan(session: Session, loan_id: int, *, tenant_id: Optional[int] = None) -> Loan:
    loan = session.get(Loan, loan_id)
    if not loan or not in_tenant_scope(loan.tenant_id, tenant_id):
        raise NotFound("Loan not found")
    return loan


def _apply_balance_delta(session: Session, account_id: int, delta: Decimal) -> None:
    result = session.exec(
        update(Account)
        .where(Account.id == account_id)
        .values(current_balance=Account.current_balance + delta, updated_at=now_local())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Account not found")


def _append_transaction(
    session: Session,
    *,
    account_id: int,
    direction: TransactionDirection,
    amount: Decimal,
    description: str,
    loan_id: Optional[int] = None,
) -> AccountTransaction:
    entry = AccountTransaction(
        account_id=account_id,
        loan_id=loan_id,
        direction=direction,
        amount=amount,
        description=description,
    )
    session.add(entry)
    session.flush()
    return entry


def deposit(
    session: Session,
    account_id: int,
    amount: Any,
    description: Optional[str] = None,
    *,
    tenant_id: Optional[int] = None,
) -> DepositResult:
    value = _require_positive(amount, "amount")
    account = get_account(session, account_id, tenant_id=tenant_id)
    with _atomic(session):
        _apply_balance_delta(session, account.id, value)
        entry = _append_transaction(
            session,
            account_id=account.id,
            direction=TransactionDirection.CREDIT,
            amount=value,
            description=(description or "").strip() or DEFAULT_DEPOSIT_DESCRIPTION,
        )
    session.refresh(account)
    session.refresh(entry)
    logger.info("Deposited %s into account %s (balance %s)", value, account.id, account.current_balance)
    return DepositResult(account=account, transaction=entry)


def build_installment_schedule(
    principal: Decimal,
    interest_rate: Decimal,
    first_due_date: date,
    count: int,
    *,
    loan_id: Optional[int] = None,
) -> List[LoanInstallment]:
    """Split principal plus simple interest into ``count`` monthly installments.

    Each installment gets the rounded even share; the last one absorbs the
    rounding remainder so the schedule always adds up to the exact totals.
    """
    total_interest = to_money(principal * interest_rate / Decimal(100))
    principal_share = to_money(principal / count)
    interest_share = to_money(total_interest / count)
    schedule: List[LoanInstallment] = []
    for sequence in range(1, count + 1):
        if sequence == count:
            principal_due = principal - principal_share * (count - 1)
            interest_due = total_interest - interest_share * (count - 1)
        else:
            principal_due = principal_share
            interest_due = interest_share
        schedule.append(
            LoanInstallment(
                loan_id=loan_id,
                sequence=sequence,
                due_date=add_months(first_due_date, sequence - 1),
                principal_due=principal_due,
                interest_due=interest_due,
                total_due=principal_due + interest_due,
                paid_amount=ZERO,
                status=InstallmentStatus.PENDING,
            )
        )
    return schedule


def disburse_loan(
    session: Session,
    *,
    client_id: int,
    account_id: int,
    principal_amount: Any,
    interest_rate: Any,
    due_date: date,
    notes: Optional[str] = None,
    installments: Optional[int] = None,
    tenant_id: Optional[int] = None,
    created_by_user_id: Optional[int] = None,
) -> Loan:
    principal = _require_positive(principal_amount, "principalAmount")
    try:
        rate = Decimal(str(interest_rate))
    except InvalidOperation as exc:
        raise ValidationError("interestRate must be a number") from exc
    if not rate.is_finite() or rate < 0:
        raise ValidationError("interestRate cannot be negative", details={"field": "interestRate"})
    count = 1 if installments is None else installments
    if count < 1:
        raise ValidationError("installments must be positive", details={"field": "installments"})

    account = get_account(session, account_id, tenant_id=tenant_id)
    client = session.get(Client, client_id)
    if not client or not in_tenant_scope(client.tenant_id, tenant_id):
        raise NotFound("Client not found")

    # No balance-sufficiency check: the source account is allowed to go negative.
    with _atomic(session):
        loan = Loan(
            tenant_id=tenant_id if tenant_id is not None else account.tenant_id,
            client_id=client.id,
            account_id=account.id,
            created_by_user_id=created_by_user_id,
            principal_amount=principal,
            interest_rate=rate,
            due_date=due_date,
            status=LoanStatus.ACTIVE,
            notes=notes,
        )
        session.add(loan)
        session.flush()
        for installment in build_installment_schedule(principal, rate, due_date, count, loan_id=loan.id):
            session.add(installment)
        _append_transaction(
            session,
            account_id=account.id,
            loan_id=loan.id,
            direction=TransactionDirection.DEBIT,
            amount=principal,
            description=DISBURSEMENT_DESCRIPTION,
        )
        _apply_balance_delta(session, account.id, -principal)
    session.refresh(loan)
    logger.info(
        "Disbursed loan %s: %s from account %s to client %s",
        loan.id,
        principal,
        account.id,
        client.id,
    )
    return loan


def _apply_to_installments(installments: List[LoanInstallment], amount: Decimal) -> Decimal:
    remaining = amount
    for installment in sorted(installments, key=lambda item: item.sequence):
        if remaining <= ZERO:
            break
        if installment.status == InstallmentStatus.PAID:
            continue
        outstanding = to_money(installment.total_due) - to_money(installment.paid_amount)
        applied = min(outstanding, remaining)
        installment.paid_amount = to_money(installment.paid_amount) + applied
        installment.status = (
            InstallmentStatus.PAID if installment.paid_amount >= to_money(installment.total_due) else InstallmentStatus.PARTIAL
        )
        remaining -= applied
    return remaining


def record_payment(
    session: Session,
    loan_id: int,
    amount: Any,
    description: Optional[str] = None,
    *,
    tenant_id: Optional[int] = None,
) -> PaymentResult:
    value = _require_positive(amount, "amount")
    loan = get_loan(session, loan_id, tenant_id=tenant_id)
    account = get_account(session, loan.account_id)
    with _atomic(session):
        entry = _append_transaction(
            session,
            account_id=account.id,
            loan_id=loan.id,
            direction=TransactionDirection.CREDIT,
            amount=value,
            description=(description or "").strip() or DEFAULT_PAYMENT_DESCRIPTION,
        )
        _apply_balance_delta(session, account.id, value)
        leftover = _apply_to_installments(list(loan.installments), value)
        for installment in loan.installments:
            session.add(installment)
        loan.updated_at = now_local()
        session.add(loan)
    session.refresh(loan)
    session.refresh(account)
    session.refresh(entry)
    if leftover > ZERO:
        logger.info("Payment on loan %s exceeds the schedule by %s", loan.id, leftover)
    logger.info("Recorded payment of %s on loan %s into account %s", value, loan.id, account.id)
    return PaymentResult(loan=loan, account=account, transaction=entry)


def total_balance(
    session: Session,
    *,
    owner_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
    include_unowned: bool = True,
) -> Decimal:
    statement = select(func.coalesce(func.sum(Account.current_balance), 0))
    if owner_id is not None:
        if include_unowned:
            statement = statement.where(or_(Account.user_id == owner_id, Account.user_id.is_(None)))
        else:
            statement = statement.where(Account.user_id == owner_id)
    if tenant_id is not None:
        statement = statement.where(Account.tenant_id == tenant_id)
    return to_money(session.exec(statement).one())


def list_transactions(
    session: Session,
    account_id: int,
    pagination: Pagination,
    *,
    tenant_id: Optional[int] = None,
) -> Tuple[List[AccountTransaction], int]:
    account = get_account(session, account_id, tenant_id=tenant_id)
    total = session.exec(
        select(func.count(AccountTransaction.id)).where(AccountTransaction.account_id == account.id)
    ).one()
    rows = session.exec(
        select(AccountTransaction)
        .where(AccountTransaction.account_id == account.id)
        .order_by(AccountTransaction.created_at.desc(), AccountTransaction.id.desc())
        .offset(pagination.offset)
        .limit(pagination.page_size)
    ).all()
    return list(rows), int(total or 0)


def signed_transaction_total(session: Session, account_id: int) -> Decimal:
    rows = session.exec(
        select(AccountTransaction.direction, func.coalesce(func.sum(AccountTransaction.amount), 0))
        .where(AccountTransaction.account_id == account_id)
        .group_by(AccountTransaction.direction)
    ).all()
    total = ZERO
    for direction, amount in rows:
        if direction == TransactionDirection.CREDIT:
            total += to_money(amount)
        else:
            total -= to_money(amount)
    return total


def reconcile(session: Session, account: Account) -> Decimal:
    """Return ``current - (opening + credits - debits)``; zero when the ledger is intact."""
    expected = to_money(account.opening_balance) + signed_transaction_total(session, account.id)
    return to_money(account.current_balance) - expected
