import json
from datetime import date
from decimal import Decimal

from lendingdesk import ledger
from lendingdesk.models import AccountTransaction, TransactionDirection
from lendingdesk.scripts import audit_ledger


def _busy_ledger(session, seed):
    tenant = seed.tenant()
    account = seed.account(tenant, opening="1000.00")
    borrower = seed.client(tenant)
    ledger.deposit(session, account.id, "250")
    loan = ledger.disburse_loan(
        session,
        client_id=borrower.id,
        account_id=account.id,
        principal_amount="300",
        interest_rate="3",
        due_date=date(2025, 3, 10),
        installments=3,
    )
    ledger.record_payment(session, loan.id, "103")
    return account, loan


def test_clean_ledger_has_no_issues(session, seed):
    _busy_ledger(session, seed)

    report = audit_ledger.run_audit(session)

    assert report.issues == []
    assert report.stats == {"accounts": 1, "transactions": 3, "loans": 1, "installments": 3}


def test_manual_balance_edit_is_reported_as_drift(session, seed):
    account, _ = _busy_ledger(session, seed)
    account.current_balance = account.current_balance + Decimal("0.05")
    session.add(account)
    session.commit()

    report = audit_ledger.run_audit(session)

    assert [issue.category for issue in report.issues] == ["balance_drift"]
    assert report.issues[0].entity_id == account.id
    assert report.issues[0].details["drift"] == "0.05"

    tolerant = audit_ledger.run_audit(session, tolerance=Decimal("0.10"))
    assert tolerant.issues == []


def test_second_disbursement_debit_is_reported(session, seed):
    account, loan = _busy_ledger(session, seed)
    session.add(
        AccountTransaction(
            account_id=account.id,
            loan_id=loan.id,
            direction=TransactionDirection.DEBIT,
            amount=Decimal("300.00"),
            description=ledger.DISBURSEMENT_DESCRIPTION,
        )
    )
    session.commit()

    categories = {issue.category for issue in audit_ledger.run_audit(session).issues}

    # the extra debit also leaves the balance unexplained
    assert categories == {"disbursement", "balance_drift"}


def test_main_prints_json_and_signals_issues(engine, session, seed, monkeypatch, capsys):
    account, _ = _busy_ledger(session, seed)
    monkeypatch.setattr(audit_ledger, "engine", engine)

    assert audit_ledger.main(["--json"]) == 0
    clean = json.loads(capsys.readouterr().out)
    assert clean["issue_count"] == 0

    account.current_balance = account.current_balance - Decimal("1.00")
    session.add(account)
    session.commit()

    assert audit_ledger.main([]) == 1
    output = capsys.readouterr().out
    assert "1 issue(s) found (balance_drift: 1)" in output
    assert "balance_drift" in output
