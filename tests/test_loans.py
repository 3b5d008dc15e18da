"""
Test suite for loan module

Tests disbursement, repayments through the allocation waterfall, extra
payments with schedule recalculation and write-offs, checking the ledger
after each step.
"""

import pytest
from dataclasses import replace
from datetime import date
from decimal import Decimal

from microfinance_core.repository import InMemoryRepository
from microfinance_core.audit import AuditTrail, AuditEventType
from microfinance_core.backdate import GovernanceApproval
from microfinance_core.config import MicrofinanceConfig
from microfinance_core.ledger import Account, AccountType, JournalReferenceType, LedgerPoster
from microfinance_core.references import ReferenceGenerator
from microfinance_core.amortization import InterestType
from microfinance_core.loans import LoanService, LoanStatus, RecoveryStatus
from microfinance_core.errors import (
    AccountNotFoundError, BackdateApprovalRequiredError, InvalidInputError
)


TODAY = date(2026, 3, 15)


class TestLoanService:
    """Loan lifecycle against an in-memory ledger"""

    def setup_method(self):
        self.repository = InMemoryRepository()
        for account in (
            Account("acc-cash", "CASH", "Cash on hand", AccountType.ASSET),
            Account("acc-portfolio", "PORTFOLIO", "Loan portfolio", AccountType.ASSET),
            Account("acc-income", "INTEREST_INCOME", "Interest income", AccountType.REVENUE),
            Account("acc-overpay", "OVERPAYMENTS", "Borrower overpayments", AccountType.LIABILITY),
            Account("acc-provision", "PROVISION", "Loan loss provision", AccountType.EXPENSE),
        ):
            self.repository.save_account(account.to_dict())

        self.config = MicrofinanceConfig()
        self.audit_trail = AuditTrail(self.repository)
        self.poster = LedgerPoster(self.repository, self.config, self.audit_trail, clock=lambda: TODAY)
        self.references = ReferenceGenerator(self.repository, self.config, clock=lambda: TODAY)
        self.service = LoanService(self.poster, self.references, self.repository, self.config,
                                   self.audit_trail)

    def disburse(self, interest_type="flat", principal="100000"):
        return self.service.disburse_loan(
            borrower_id="borrower-1",
            principal=principal,
            rate="5",
            term_months=12,
            interest_type=interest_type,
            cash_account_id="acc-cash",
            user_id="officer-1",
        )

    def test_disburse_loan(self):
        loan = self.disburse()

        assert loan.reference_no == "JN26030001"
        assert loan.status == LoanStatus.ACTIVE
        assert loan.interest_type == InterestType.FLAT
        assert loan.disbursement_date == TODAY
        assert loan.principal_outstanding == Decimal("100000")
        assert loan.interest_outstanding == Decimal("60000.00")
        assert loan.penalty_outstanding == Decimal("0")
        assert len(loan.schedule) == 12

    def test_disbursement_posting(self):
        loan = self.disburse()

        entry = self.poster.get_journal_entry(loan.disbursement_entry_id)
        assert entry.reference_type == JournalReferenceType.DISBURSEMENT
        assert entry.reference_id == loan.id
        assert entry.description == "Loan disbursement JN26030001"
        assert self.poster.account_balance("acc-portfolio") == Decimal("100000")
        assert self.poster.account_balance("acc-cash") == Decimal("-100000")

    def test_references_are_sequential(self):
        assert self.disburse().reference_no == "JN26030001"
        assert self.disburse().reference_no == "JN26030002"

    def test_invalid_terms_post_nothing(self):
        with pytest.raises(InvalidInputError):
            self.disburse(principal="0")
        assert self.repository.posted_lines_for_account("acc-cash") == []
        assert self.repository.highest_reference_for_prefix("JN2603") is None

    def test_repayment_waterfall_posting(self):
        loan = replace(self.disburse(), principal_outstanding=Decimal("10000"),
                       interest_outstanding=Decimal("2000"), penalty_outstanding=Decimal("1000"))

        outcome = self.service.record_repayment(loan, "5000", "acc-cash", "officer-1")

        assert outcome.allocation.penalty_paid == Decimal("1000")
        assert outcome.allocation.interest_paid == Decimal("2000")
        assert outcome.allocation.principal_paid == Decimal("2000")
        assert outcome.loan.principal_outstanding == Decimal("8000")
        assert outcome.loan.interest_outstanding == Decimal("0")
        assert outcome.loan.penalty_outstanding == Decimal("0")
        assert outcome.loan.status == LoanStatus.ACTIVE

        entry = self.poster.get_journal_entry(outcome.posting.id)
        assert entry.reference_type == JournalReferenceType.REPAYMENT
        assert entry.description == f"Repayment from {loan.reference_no}"
        assert entry.total_debits == entry.total_credits == Decimal("5000")
        assert self.poster.account_balance("acc-income") == Decimal("-3000")
        assert self.poster.account_balance("acc-portfolio") == Decimal("98000")

    def test_original_loan_unchanged(self):
        loan = self.disburse()
        self.service.record_repayment(loan, "1000", "acc-cash", "officer-1")
        assert loan.interest_outstanding == Decimal("60000.00")

    def test_payoff_with_overpayment(self):
        loan = self.disburse()
        outcome = self.service.record_repayment(loan, "160100", "acc-cash", "officer-1")

        assert outcome.allocation.overpayment == Decimal("100.00")
        assert outcome.loan.status == LoanStatus.COMPLETED
        assert outcome.loan.total_outstanding == Decimal("0")
        assert self.poster.account_balance("acc-overpay") == Decimal("-100.00")
        assert self.poster.account_balance("acc-portfolio") == Decimal("0")

    def test_completed_loan_rejects_payment(self):
        loan = self.disburse()
        completed = self.service.record_repayment(loan, "160000", "acc-cash", "officer-1").loan
        with pytest.raises(InvalidInputError, match="not active"):
            self.service.record_repayment(completed, "10", "acc-cash", "officer-1")

    def test_missing_system_account(self):
        repository = InMemoryRepository()
        repository.save_account({"id": "acc-cash", "code": "CASH", "name": "Cash", "account_type": "asset"})
        poster = LedgerPoster(repository, self.config, clock=lambda: TODAY)
        service = LoanService(poster, ReferenceGenerator(repository, self.config, clock=lambda: TODAY))

        with pytest.raises(AccountNotFoundError, match="PORTFOLIO"):
            service.disburse_loan("b-1", "1000", "5", 6, "flat", "acc-cash", "officer-1")

    def test_backdated_repayment_needs_approval(self):
        loan = self.disburse()
        with pytest.raises(BackdateApprovalRequiredError):
            self.service.record_repayment(loan, "1000", "acc-cash", "officer-1",
                                          payment_date=date(2026, 3, 1))

    def test_extra_payment_recalculates_schedule(self):
        loan = replace(self.disburse("reducing"), interest_outstanding=Decimal("0"))

        outcome = self.service.apply_extra_payment(loan, "30000", "acc-cash", "officer-1",
                                                   elapsed_months=3)

        assert outcome.loan.principal_outstanding == Decimal("70000")
        assert len(outcome.loan.schedule) == 11
        assert outcome.loan.schedule[:3] == loan.schedule[:3]
        assert outcome.loan.schedule[-1].balance == Decimal("0.00")

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[-1].event_type == AuditEventType.SCHEDULE_RECALCULATED
        assert events[-1].metadata["remaining_months"] == 8

    def test_extra_payment_that_completes_loan(self):
        loan = replace(self.disburse("reducing"), interest_outstanding=Decimal("0"))
        outcome = self.service.apply_extra_payment(loan, "100000", "acc-cash", "officer-1",
                                                   elapsed_months=3)
        assert outcome.loan.status == LoanStatus.COMPLETED
        assert outcome.loan.schedule == loan.schedule

    def test_write_off(self):
        loan = self.disburse()
        written_off = self.service.write_off_loan(loan, "ceo-1", "Borrower relocated")

        assert written_off.status == LoanStatus.WRITTEN_OFF
        assert self.poster.account_balance("acc-portfolio") == Decimal("0")
        assert self.poster.account_balance("acc-provision") == Decimal("100000")

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_WRITTEN_OFF
        assert events[-1].metadata["reason"] == "Borrower relocated"

    def test_write_off_description(self):
        loan = self.disburse()
        self.service.write_off_loan(loan, "ceo-1", "Borrower relocated")
        entries = [
            self.poster.get_journal_entry(line["journal_entry_id"])
            for line in self.repository.posted_lines_for_account("acc-provision")
        ]
        assert entries[0].reference_type == JournalReferenceType.WRITE_OFF
        assert entries[0].description == f"Write-off of loan {loan.reference_no}: Borrower relocated"

    def test_backdated_write_off_with_approval(self):
        loan = self.disburse()
        written_off = self.service.write_off_loan(
            loan, "admin-1", "Court ruling", approval=GovernanceApproval("ceo-1", "ceo"),
            entry_date=date(2026, 2, 27)
        )
        assert written_off.status == LoanStatus.WRITTEN_OFF

    def test_write_off_requires_reason(self):
        with pytest.raises(InvalidInputError, match="reason"):
            self.service.write_off_loan(self.disburse(), "ceo-1", "")

    def test_written_off_loan_is_terminal(self):
        written_off = self.service.write_off_loan(self.disburse(), "ceo-1", "Fraud")
        with pytest.raises(InvalidInputError, match="not active"):
            self.service.write_off_loan(written_off, "ceo-1", "Again")

    def test_loan_to_dict(self):
        data = self.disburse().to_dict()
        assert data["reference_no"] == "JN26030001"
        assert data["interest_type"] == "flat"
        assert data["principal_outstanding"] == "100000"
        assert data["schedule"][0]["installment"] == "13333.33"

    def test_audit_chain_intact(self):
        loan = self.disburse()
        loan = self.service.record_repayment(loan, "13333.33", "acc-cash", "officer-1").loan
        self.service.write_off_loan(loan, "ceo-1", "Default")
        assert self.audit_trail.verify_integrity()["valid"]


class TestWriteOffAndRecovery:
    """Write-off clears balances; recoveries run principal -> interest -> penalty"""

    def setup_method(self):
        self.repository = InMemoryRepository()
        for account in (
            Account("acc-cash", "CASH", "Cash on hand", AccountType.ASSET),
            Account("acc-portfolio", "PORTFOLIO", "Loan portfolio", AccountType.ASSET),
            Account("acc-income", "INTEREST_INCOME", "Interest income", AccountType.REVENUE),
            Account("acc-overpay", "OVERPAYMENTS", "Borrower overpayments", AccountType.LIABILITY),
            Account("acc-provision", "PROVISION", "Loan loss provision", AccountType.EXPENSE),
            Account("acc-recovery", "RECOVERY_INCOME", "Recovered write-offs", AccountType.REVENUE),
        ):
            self.repository.save_account(account.to_dict())

        self.config = MicrofinanceConfig()
        self.audit_trail = AuditTrail(self.repository)
        self.poster = LedgerPoster(self.repository, self.config, self.audit_trail, clock=lambda: TODAY)
        self.service = LoanService(
            self.poster, ReferenceGenerator(self.repository, self.config, clock=lambda: TODAY),
            self.repository, self.config, self.audit_trail
        )
        loan = self.service.disburse_loan("borrower-1", "100000", "5", 12, "flat", "acc-cash", "officer-1")
        self.loan = replace(loan, penalty_outstanding=Decimal("500"))

    def write_off(self):
        return self.service.write_off_loan(self.loan, "ceo-1", "Borrower absconded")

    def test_write_off_clears_balances(self):
        written_off = self.write_off()

        assert written_off.principal_outstanding == Decimal("0")
        assert written_off.interest_outstanding == Decimal("0")
        assert written_off.penalty_outstanding == Decimal("0")
        assert written_off.total_outstanding == Decimal("0")

    def test_write_off_record(self):
        written_off = self.write_off()
        record = written_off.write_off

        assert record.principal_written_off == Decimal("100000")
        assert record.interest_written_off == Decimal("60000.00")
        assert record.penalty_written_off == Decimal("500")
        assert record.total_written_off == Decimal("160500.00")
        assert record.total_recovered == Decimal("0")
        assert record.recovery_status == RecoveryStatus.NONE
        assert record.reason == "Borrower absconded"

        entry = self.poster.get_journal_entry(record.journal_entry_id)
        assert entry.total_debits == Decimal("100000")

    def test_write_off_in_to_dict(self):
        data = self.write_off().to_dict()
        assert data["status"] == "written_off"
        assert data["principal_outstanding"] == "0"
        assert data["write_off"]["total_written_off"] == "160500.00"
        assert data["write_off"]["recovery_status"] == "none"

    def test_recovery_applies_principal_first(self):
        written_off = self.write_off()
        outcome = self.service.record_recovery_payment(written_off, "100500", "acc-cash", "officer-1")

        assert outcome.allocation.principal_paid == Decimal("100000")
        assert outcome.allocation.interest_paid == Decimal("500")
        assert outcome.allocation.penalty_paid == Decimal("0")
        assert outcome.allocation.overpayment == Decimal("0")

        record = outcome.loan.write_off
        assert record.principal_recovered == Decimal("100000")
        assert record.interest_recovered == Decimal("500")
        assert record.penalty_recovered == Decimal("0")
        assert record.recovery_status == RecoveryStatus.PARTIAL
        assert outcome.loan.status == LoanStatus.WRITTEN_OFF
        assert outcome.loan.total_outstanding == Decimal("0")

    def test_recovery_posting(self):
        written_off = self.write_off()
        outcome = self.service.record_recovery_payment(
            written_off, "100500", "acc-cash", "officer-1",
            recovery_type="collateral_sale", description="Motorbike sold"
        )

        entry = self.poster.get_journal_entry(outcome.posting.id)
        assert entry.reference_type == JournalReferenceType.RECOVERY
        assert entry.reference_id == written_off.id
        assert entry.description == (
            f"Recovery payment for written-off loan {written_off.reference_no}: Motorbike sold"
        )
        assert entry.total_debits == entry.total_credits == Decimal("100500")

        assert self.poster.account_balance("acc-cash") == Decimal("500")
        assert self.poster.account_balance("acc-provision") == Decimal("0")
        assert self.poster.account_balance("acc-recovery") == Decimal("-500")
        assert self.poster.account_balance("acc-portfolio") == Decimal("0")

    def test_recoveries_accumulate_to_full(self):
        written_off = self.write_off()
        partial = self.service.record_recovery_payment(written_off, "100500", "acc-cash", "officer-1").loan
        outcome = self.service.record_recovery_payment(partial, "60000", "acc-cash", "officer-1")

        assert outcome.allocation.interest_paid == Decimal("59500.00")
        assert outcome.allocation.penalty_paid == Decimal("500")
        record = outcome.loan.write_off
        assert record.total_recovered == Decimal("160500.00")
        assert record.recovery_status == RecoveryStatus.FULL
        assert len(record.recovery_entry_ids) == 2
        assert self.poster.account_balance("acc-recovery") == Decimal("-60500.00")

        with pytest.raises(InvalidInputError, match="fully recovered"):
            self.service.record_recovery_payment(outcome.loan, "10", "acc-cash", "officer-1")

    def test_recovery_excess_held_as_overpayment(self):
        written_off = self.write_off()
        outcome = self.service.record_recovery_payment(written_off, "160600", "acc-cash", "officer-1")

        assert outcome.allocation.overpayment == Decimal("100.00")
        assert outcome.loan.write_off.recovery_status == RecoveryStatus.FULL
        assert self.poster.account_balance("acc-overpay") == Decimal("-100.00")

    def test_recovery_needs_written_off_loan(self):
        with pytest.raises(InvalidInputError, match="not written off"):
            self.service.record_recovery_payment(self.loan, "1000", "acc-cash", "officer-1")

    def test_unknown_recovery_type(self):
        written_off = self.write_off()
        with pytest.raises(InvalidInputError, match="Unknown recovery type"):
            self.service.record_recovery_payment(written_off, "1000", "acc-cash", "officer-1",
                                                 recovery_type="lottery")
        assert self.poster.account_balance("acc-provision") == Decimal("100000")

    def test_recovery_audited(self):
        written_off = self.write_off()
        outcome = self.service.record_recovery_payment(written_off, "2500", "acc-cash", "officer-1")

        events = self.audit_trail.get_events_for_entity("loan", written_off.id)
        assert events[-1].event_type == AuditEventType.LOAN_RECOVERY_RECORDED
        assert events[-1].metadata["journal_entry_id"] == outcome.posting.id
        assert self.audit_trail.verify_integrity()["valid"]


class TestRepaymentReversal:
    """Reversing a repayment restores the balances it retired"""

    def setup_method(self):
        self.repository = InMemoryRepository()
        for account in (
            Account("acc-cash", "CASH", "Cash on hand", AccountType.ASSET),
            Account("acc-portfolio", "PORTFOLIO", "Loan portfolio", AccountType.ASSET),
            Account("acc-income", "INTEREST_INCOME", "Interest income", AccountType.REVENUE),
            Account("acc-overpay", "OVERPAYMENTS", "Borrower overpayments", AccountType.LIABILITY),
            Account("acc-provision", "PROVISION", "Loan loss provision", AccountType.EXPENSE),
        ):
            self.repository.save_account(account.to_dict())

        self.config = MicrofinanceConfig()
        self.audit_trail = AuditTrail(self.repository)
        self.poster = LedgerPoster(self.repository, self.config, self.audit_trail, clock=lambda: TODAY)
        self.service = LoanService(
            self.poster, ReferenceGenerator(self.repository, self.config, clock=lambda: TODAY),
            self.repository, self.config, self.audit_trail
        )
        self.loan = self.service.disburse_loan("borrower-1", "100000", "5", 12, "flat",
                                               "acc-cash", "officer-1")

    def test_repayment_recorded_on_loan(self):
        loan = replace(self.loan, principal_outstanding=Decimal("10000"),
                       interest_outstanding=Decimal("2000"), penalty_outstanding=Decimal("1000"))
        outcome = self.service.record_repayment(loan, "5000", "acc-cash", "officer-1")

        assert len(outcome.loan.repayments) == 1
        record = outcome.loan.repayments[0]
        assert record.journal_entry_id == outcome.posting.id
        assert record.payment_date == TODAY
        assert record.penalty_paid == Decimal("1000")
        assert record.principal_paid == Decimal("2000")
        assert not record.reversed
        assert loan.repayments == []

    def test_reversal_restores_balances(self):
        loan = replace(self.loan, principal_outstanding=Decimal("10000"),
                       interest_outstanding=Decimal("2000"), penalty_outstanding=Decimal("1000"))
        paid = self.service.record_repayment(loan, "5000", "acc-cash", "officer-1")

        restored = self.service.reverse_repayment(paid.loan, paid.posting.id, "officer-2", "Cheque bounced")

        assert restored.principal_outstanding == Decimal("10000")
        assert restored.interest_outstanding == Decimal("2000")
        assert restored.penalty_outstanding == Decimal("1000")
        assert restored.status == LoanStatus.ACTIVE
        assert restored.repayments[0].reversed

        assert self.poster.account_balance("acc-income") == Decimal("0")
        assert self.poster.account_balance("acc-portfolio") == Decimal("100000")
        assert self.poster.account_balance("acc-cash") == Decimal("-100000")

        original = self.poster.get_journal_entry(paid.posting.id)
        assert original.reversed_by is not None

    def test_completed_loan_becomes_active(self):
        paid = self.service.record_repayment(self.loan, "160100", "acc-cash", "officer-1")
        assert paid.loan.status == LoanStatus.COMPLETED

        restored = self.service.reverse_repayment(paid.loan, paid.posting.id, "officer-2", "Wrong borrower")

        assert restored.status == LoanStatus.ACTIVE
        assert restored.principal_outstanding == Decimal("100000")
        assert restored.interest_outstanding == Decimal("60000.00")
        assert self.poster.account_balance("acc-overpay") == Decimal("0")

        again = self.service.record_repayment(restored, "1000", "acc-cash", "officer-1")
        assert again.loan.interest_outstanding == Decimal("59000.00")

    def test_cannot_reverse_twice(self):
        paid = self.service.record_repayment(self.loan, "1000", "acc-cash", "officer-1")
        restored = self.service.reverse_repayment(paid.loan, paid.posting.id, "officer-2", "Duplicate")

        with pytest.raises(InvalidInputError, match="already reversed"):
            self.service.reverse_repayment(restored, paid.posting.id, "officer-2", "Again")

    def test_unknown_repayment(self):
        with pytest.raises(InvalidInputError, match="not found"):
            self.service.reverse_repayment(self.loan, self.loan.disbursement_entry_id, "officer-2", "Typo")
        assert self.poster.get_journal_entry(self.loan.disbursement_entry_id).reversed_by is None

    def test_reason_required(self):
        paid = self.service.record_repayment(self.loan, "1000", "acc-cash", "officer-1")
        with pytest.raises(InvalidInputError, match="reason"):
            self.service.reverse_repayment(paid.loan, paid.posting.id, "officer-2", "")
        assert not paid.loan.repayments[0].reversed

    def test_written_off_loan_rejected(self):
        paid = self.service.record_repayment(self.loan, "1000", "acc-cash", "officer-1")
        written_off = self.service.write_off_loan(paid.loan, "ceo-1", "Default")

        with pytest.raises(InvalidInputError, match="written off"):
            self.service.reverse_repayment(written_off, paid.posting.id, "officer-2", "Late bounce")

    def test_reversal_audited(self):
        paid = self.service.record_repayment(self.loan, "1000", "acc-cash", "officer-1")
        self.service.reverse_repayment(paid.loan, paid.posting.id, "officer-2", "Cheque bounced")

        events = self.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert events[-1].event_type == AuditEventType.REPAYMENT_REVERSED
        assert events[-1].metadata["reason"] == "Cheque bounced"
        assert events[-1].metadata["journal_entry_id"] == paid.posting.id
