"""Check that every account balance is explained by its transaction history.

Run with ``python -m lendingdesk.scripts.audit_ledger [--tolerance 0.01] [--json]``.
Exits with status 1 when any issue is found.
"""

from __future__ import annotations

import argparse
import json
from collections import Counter, defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from .. import ledger
from ..database import engine
from ..models import Account, AccountTransaction, Client, Loan, LoanInstallment, TransactionDirection


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[int]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    issues: List[AuditIssue]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
        }


def run_audit(session: Session, *, tolerance: Decimal = Decimal("0.00")) -> AuditReport:
    tolerance = max(Decimal(tolerance), Decimal("0"))
    accounts = session.exec(select(Account)).all()
    transactions = session.exec(select(AccountTransaction)).all()
    loans = session.exec(select(Loan)).all()
    installments = session.exec(select(LoanInstallment)).all()
    client_ids = set(session.exec(select(Client.id)).all())

    stats = {
        "accounts": len(accounts),
        "transactions": len(transactions),
        "loans": len(loans),
        "installments": len(installments),
    }

    issues: List[AuditIssue] = []
    account_ids = {account.id for account in accounts}
    loan_lookup = {loan.id: loan for loan in loans}

    for account in accounts:
        drift = ledger.reconcile(session, account)
        if abs(drift) > tolerance:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="balance_drift",
                    entity="account",
                    entity_id=account.id,
                    message="current_balance is not explained by opening balance and transactions",
                    details={
                        "current_balance": str(account.current_balance),
                        "drift": str(drift),
                    },
                )
            )

    debits_by_loan: Dict[int, List[AccountTransaction]] = defaultdict(list)
    for entry in transactions:
        if ledger.to_money(entry.amount) <= 0:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="transaction_amount",
                    entity="transaction",
                    entity_id=entry.id,
                    message="amount must be positive",
                    details={"amount": str(entry.amount)},
                )
            )
        if entry.account_id not in account_ids:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="transaction_reference",
                    entity="transaction",
                    entity_id=entry.id,
                    message="account_id does not point to an existing account",
                    details={"account_id": entry.account_id},
                )
            )
        if entry.loan_id is not None:
            if entry.loan_id not in loan_lookup:
                issues.append(
                    AuditIssue(
                        severity="error",
                        category="transaction_reference",
                        entity="transaction",
                        entity_id=entry.id,
                        message="loan_id does not point to an existing loan",
                        details={"loan_id": entry.loan_id},
                    )
                )
            elif entry.direction == TransactionDirection.DEBIT:
                debits_by_loan[entry.loan_id].append(entry)

    installments_by_loan: Dict[int, List[LoanInstallment]] = defaultdict(list)
    for installment in installments:
        installments_by_loan[installment.loan_id].append(installment)

    for loan in loans:
        if loan.client_id not in client_ids:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="loan_reference",
                    entity="loan",
                    entity_id=loan.id,
                    message="client_id does not point to an existing client",
                    details={"client_id": loan.client_id},
                )
            )
        debits = debits_by_loan.get(loan.id, [])
        if len(debits) != 1:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="disbursement",
                    entity="loan",
                    entity_id=loan.id,
                    message="loan must have exactly one disbursement debit",
                    details={"debits": len(debits)},
                )
            )
        elif ledger.to_money(debits[0].amount) != ledger.to_money(loan.principal_amount):
            issues.append(
                AuditIssue(
                    severity="error",
                    category="disbursement",
                    entity="loan",
                    entity_id=loan.id,
                    message="disbursement amount differs from principal",
                    details={"principal": str(loan.principal_amount), "debit": str(debits[0].amount)},
                )
            )
        schedule = installments_by_loan.get(loan.id, [])
        if schedule:
            scheduled_principal = sum((ledger.to_money(item.principal_due) for item in schedule), Decimal("0"))
            if scheduled_principal != ledger.to_money(loan.principal_amount):
                issues.append(
                    AuditIssue(
                        severity="warning",
                        category="installments",
                        entity="loan",
                        entity_id=loan.id,
                        message="installment principal does not add up to the loan principal",
                        details={"principal": str(loan.principal_amount), "scheduled": str(scheduled_principal)},
                    )
                )

    return AuditReport(stats=stats, issues=issues)


def format_issue(issue: AuditIssue) -> str:
    target = f"{issue.entity} {issue.entity_id}" if issue.entity_id is not None else issue.entity
    line = f"{issue.severity.upper():<7} {target} ({issue.category}) {issue.message}"
    if issue.details:
        extras = ", ".join(f"{key}={value}" for key, value in issue.details.items())
        line = f"{line} [{extras}]"
    return line


def print_report(report: AuditReport) -> None:
    print(", ".join(f"{name}={count}" for name, count in report.stats.items()))
    if not report.issues:
        print("Ledger is consistent.")
        return
    by_category = Counter(issue.category for issue in report.issues)
    summary = ", ".join(f"{category}: {count}" for category, count in sorted(by_category.items()))
    print(f"{report.issue_count} issue(s) found ({summary})")
    for issue in report.issues:
        print(f"  {format_issue(issue)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit account balances against the transaction ledger")
    parser.add_argument(
        "--tolerance",
        type=Decimal,
        default=Decimal("0.00"),
        help="largest balance drift that is still accepted (default: 0.00)",
    )
    parser.add_argument("--json", action="store_true", help="emit the report as a JSON document")
    return parser.parse_args(None if argv is None else list(argv))


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    with Session(engine) as session:
        report = run_audit(session, tolerance=args.tolerance)
    if args.json:
        print(json.dumps(report.as_dict(), indent=2))
    else:
        print_report(report)
    return 0 if not report.issues else 1


if __name__ == "__main__":
    raise SystemExit(main())
