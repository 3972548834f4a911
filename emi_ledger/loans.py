"""
Loan Lifecycle Module

Application, approval, rejection and deletion of daily-installment loans, and
the borrower/operator read queries over them. Approval generates the schedule
in the same transaction that moves the loan to approved.
"""

import uuid
from datetime import date
from typing import List, Optional, Any

from .ledger import InstallmentLedger, UNPAID_STATUSES
from .schedule import ScheduleGenerator
from .models import Loan, Installment, LoanStatus
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent, RecipientScope
from .config import LedgerConfig, get_config
from .exceptions import InvalidApplicationError, InvalidLoanStateError, AccessDeniedError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.loans")


class LoanManager(EventPublisherMixin):
    """Manages loan applications and their approval lifecycle"""

    def __init__(
        self,
        ledger: InstallmentLedger,
        schedule_generator: ScheduleGenerator,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.ledger = ledger
        self.clock = ledger.clock
        self.schedule_generator = schedule_generator
        self.audit_trail = audit_trail
        self.events = events
        self.config = config or get_config()

    def _validate_amount(self, amount: Any) -> int:
        try:
            value = int(amount)
        except (TypeError, ValueError):
            raise InvalidApplicationError(f"Loan amount must be a whole number, got {amount!r}")
        if value < self.config.min_loan_amount or value > self.config.max_loan_amount:
            raise InvalidApplicationError(
                f"Loan amount must be between {self.config.min_loan_amount} "
                f"and {self.config.max_loan_amount}"
            )
        return value

    def _validate_days(self, total_days: Any) -> int:
        try:
            value = int(total_days)
        except (TypeError, ValueError):
            raise InvalidApplicationError(f"Total days must be a whole number, got {total_days!r}")
        if value < self.config.min_total_days or value > self.config.max_total_days:
            raise InvalidApplicationError(
                f"Total days must be between {self.config.min_total_days} "
                f"and {self.config.max_total_days}"
            )
        return value

    def apply_for_loan(
        self,
        borrower_id: str,
        amount: Any,
        name: str,
        mobile: str,
        address: str,
        aadhaar_number: str,
        pan_number: str,
        total_days: Optional[int] = None
    ) -> Loan:
        """
        Submit a loan application.

        Raises:
            InvalidApplicationError: missing applicant details, amount out of
                range, or the borrower already has a pending application
        """
        applicant = {
            'name': name,
            'mobile': mobile,
            'address': address,
            'aadhaar_number': aadhaar_number,
            'pan_number': pan_number,
        }
        missing = [key for key, value in applicant.items() if not value or not str(value).strip()]
        if not borrower_id or missing:
            raise InvalidApplicationError(
                f"All applicant fields are required, missing: {', '.join(missing) or 'borrower_id'}"
            )
        value = self._validate_amount(amount)
        days = self._validate_days(total_days) if total_days is not None else self.config.default_total_days

        with self.ledger.atomic():
            pending = self.ledger.find_loans({"borrower_id": borrower_id, "status": LoanStatus.PENDING.value})
            if pending:
                raise InvalidApplicationError(f"Borrower {borrower_id} already has a pending loan application")

            now = self.clock.now()
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                borrower_id=borrower_id,
                amount=value,
                applicant_name=name.strip(),
                applicant_mobile=mobile.strip(),
                applicant_address=address.strip(),
                applicant_aadhaar=aadhaar_number.strip(),
                applicant_pan=pan_number.strip(),
                total_days=days,
                interest_rate=self.config.default_interest_rate,
            )
            self.ledger.save_loan(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_APPLIED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"amount": value, "total_days": days},
                    actor=borrower_id
                )

        log_action(logger, "info", f"Loan application {loan.id} for {value}", action="apply_loan",
                   loan_id=loan.id, actor=borrower_id)
        self.publish_event(EventPayload(
            event_type=DomainEvent.LOAN_REQUESTED,
            loan_id=loan.id,
            borrower_id=borrower_id,
            recipient_scope=RecipientScope.ADMIN,
            amount=value,
            data={"applicant_name": loan.applicant_name}
        ))
        return loan

    def approve_loan(self, loan_id: str, amount: Optional[Any] = None,
                     total_days: Optional[Any] = None, admin_id: Optional[str] = None) -> Loan:
        """
        Approve a pending loan and generate its schedule.

        The operator may override amount and term; the interest rate is always
        the configured flat rate.
        """
        with self.ledger.atomic():
            loan = self.ledger.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidLoanStateError(f"Loan {loan_id} is not pending, is {loan.status.value}")

            if amount is not None:
                loan.amount = self._validate_amount(amount)
            if total_days is not None:
                loan.total_days = self._validate_days(total_days)
            loan.interest_rate = self.config.default_interest_rate

            loan.transition_to(LoanStatus.APPROVED)
            self.schedule_generator.generate(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_APPROVED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "amount": loan.amount,
                        "total_days": loan.total_days,
                        "daily_installment": loan.daily_installment,
                    },
                    actor=admin_id
                )

        log_action(logger, "info", f"Loan {loan.id} approved", action="approve_loan",
                   loan_id=loan.id, actor=admin_id,
                   extra={"amount": loan.amount, "total_days": loan.total_days})
        self.publish_event(EventPayload(
            event_type=DomainEvent.LOAN_APPROVED,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            recipient_scope=RecipientScope.BORROWER,
            amount=loan.amount,
            data={"daily_installment": loan.daily_installment, "total_days": loan.total_days}
        ))
        return loan

    def reject_loan(self, loan_id: str, reason: Optional[str] = None,
                    admin_id: Optional[str] = None) -> Loan:
        with self.ledger.atomic():
            loan = self.ledger.require_loan(loan_id)
            loan.transition_to(LoanStatus.REJECTED)
            loan.rejection_reason = reason
            self.ledger.save_loan(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_REJECTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"reason": reason},
                    actor=admin_id
                )

        log_action(logger, "info", f"Loan {loan.id} rejected", action="reject_loan",
                   loan_id=loan.id, actor=admin_id)
        self.publish_event(EventPayload(
            event_type=DomainEvent.LOAN_REJECTED,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            recipient_scope=RecipientScope.BORROWER,
            amount=loan.amount,
            data={"reason": reason}
        ))
        return loan

    def delete_loan(self, loan_id: str, admin_id: Optional[str] = None) -> int:
        """Delete a loan with all of its installments; returns installments removed"""
        with self.ledger.atomic():
            loan = self.ledger.require_loan(loan_id)
            removed = self.ledger.delete_loan(loan_id)
            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_DELETED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={"status": loan.status.value, "installments_removed": removed},
                    actor=admin_id
                )

        log_action(logger, "warning", f"Loan {loan_id} deleted with {removed} installments",
                   action="delete_loan", loan_id=loan_id, actor=admin_id)
        return removed

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.ledger.get_loan(loan_id)

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        loans = self.ledger.find_loans({"borrower_id": borrower_id})
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_pending_loans(self) -> List[Loan]:
        loans = self.ledger.loans_with_status(LoanStatus.PENDING)
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_installments(self, loan_id: str, borrower_id: Optional[str] = None) -> List[Installment]:
        loan = self.ledger.require_loan(loan_id)
        if borrower_id is not None and loan.borrower_id != borrower_id:
            raise AccessDeniedError(f"Loan {loan_id} does not belong to {borrower_id}")
        return self.ledger.get_installments(loan_id)

    def get_installment(self, installment_id: str, borrower_id: Optional[str] = None) -> Installment:
        installment = self.ledger.require_installment(installment_id)
        if borrower_id is not None and installment.borrower_id != borrower_id:
            raise AccessDeniedError(f"Installment {installment_id} does not belong to {borrower_id}")
        return installment

    def get_pending_installments(self, borrower_id: str) -> List[Installment]:
        """Every unpaid installment of a borrower, earliest due first"""
        unpaid = []
        for status in UNPAID_STATUSES:
            unpaid.extend(self.ledger.installments_with_status(status, borrower_id=borrower_id))
        unpaid.sort(key=lambda i: (i.due_date, i.day_number))
        return unpaid

    def get_installments_due_on(self, day: Optional[date] = None,
                                borrower_id: Optional[str] = None) -> List[Installment]:
        """Installments due on ``day`` (today by default), overdue first, then pending, then paid"""
        day = day or self.clock.today()
        order = {"overdue": 0, "pending": 1, "paid": 2}
        installments = self.ledger.installments_due_on(day, borrower_id=borrower_id)
        installments.sort(key=lambda i: (order[i.status.value], i.day_number))
        return installments
