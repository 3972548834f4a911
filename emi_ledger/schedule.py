"""
Schedule Generator Module

Turns an approved loan into its fixed sequence of daily installments. Principal
and interest per day are both rounded up, so the schedule collects at least the
contract total; the small over-collection is accepted.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from .ledger import InstallmentLedger
from .models import Loan, Installment, LoanStatus
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidScheduleParameters, InvalidLoanStateError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.schedule")


@dataclass(frozen=True)
class LoanTerms:
    """Derived daily terms of a loan"""
    amount: int
    total_days: int
    interest_rate: Decimal
    total_interest: int
    daily_principal: int
    daily_interest: int

    @property
    def daily_installment(self) -> int:
        return self.daily_principal + self.daily_interest

    @property
    def contract_total(self) -> int:
        return self.amount + self.total_interest

    @property
    def scheduled_total(self) -> int:
        """What the full schedule collects before penalties"""
        return self.daily_installment * self.total_days


class ScheduleGenerator:
    """Builds and persists the installment schedule of an approved loan"""

    def __init__(self, ledger: InstallmentLedger, audit_trail: Optional[AuditTrail] = None):
        self.ledger = ledger
        self.clock = ledger.clock
        self.audit_trail = audit_trail

    @staticmethod
    def compute_terms(amount: int, total_days: int, interest_rate: Decimal) -> LoanTerms:
        """
        Compute the daily split of a loan.

        Args:
            amount: Principal in currency units
            total_days: Number of daily installments
            interest_rate: Flat percentage over the whole term, e.g. Decimal("20")

        Returns:
            LoanTerms with ceiling-rounded daily principal and interest

        Raises:
            InvalidScheduleParameters: amount or total_days not positive
        """
        if total_days is None or total_days <= 0:
            raise InvalidScheduleParameters(f"total_days must be positive, got {total_days}")
        if amount is None or amount <= 0:
            raise InvalidScheduleParameters(f"amount must be positive, got {amount}")
        rate = Decimal(str(interest_rate))
        if rate < 0:
            raise InvalidScheduleParameters(f"interest_rate cannot be negative, got {rate}")

        principal = Decimal(amount)
        days = Decimal(total_days)
        interest = principal * rate / Decimal(100)

        return LoanTerms(
            amount=amount,
            total_days=total_days,
            interest_rate=rate,
            total_interest=math.ceil(interest),
            daily_principal=math.ceil(principal / days),
            daily_interest=math.ceil(interest / days),
        )

    def build_schedule(self, loan: Loan, start_date: date,
                       terms: Optional[LoanTerms] = None) -> List[Installment]:
        """Installments for days 1..N, due on consecutive days from ``start_date``"""
        terms = terms or self.compute_terms(loan.amount, loan.total_days, loan.interest_rate)
        now = self.clock.now()
        return [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                borrower_id=loan.borrower_id,
                day_number=day,
                principal_amount=terms.daily_principal,
                interest_amount=terms.daily_interest,
                due_date=start_date + timedelta(days=day - 1),
            )
            for day in range(1, terms.total_days + 1)
        ]

    def generate(self, loan: Loan) -> List[Installment]:
        """
        Generate and persist the schedule for an approved loan.

        The first installment is due the day after approval in the clock's
        local timezone. Installments, derived terms and aggregates are written
        in one transaction.

        Raises:
            InvalidScheduleParameters: amount or total_days not positive
            InvalidLoanStateError: loan not approved or already scheduled
        """
        terms = self.compute_terms(loan.amount, loan.total_days, loan.interest_rate)

        with self.ledger.atomic():
            if loan.status != LoanStatus.APPROVED:
                raise InvalidLoanStateError(
                    f"Loan {loan.id} must be approved before scheduling, is {loan.status.value}"
                )
            if loan.installment_ids or self.ledger.get_installments(loan.id):
                raise InvalidLoanStateError(f"Loan {loan.id} already has a schedule")

            start_date = self.clock.today() + timedelta(days=1)
            installments = self.build_schedule(loan, start_date, terms)

            loan.interest_rate = terms.interest_rate
            loan.total_interest = terms.total_interest
            loan.daily_principal = terms.daily_principal
            loan.daily_interest = terms.daily_interest
            loan.daily_installment = terms.daily_installment
            loan.total_paid = 0
            loan.penalty_amount = 0
            loan.remaining_balance = terms.contract_total
            loan.approved_at = self.clock.now()
            loan.start_date = start_date
            loan.end_date = start_date + timedelta(days=terms.total_days - 1)
            loan.installment_ids = [i.id for i in installments]

            self.ledger.save_installments(installments)
            self.ledger.save_loan(loan)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.SCHEDULE_GENERATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "installments": len(installments),
                        "daily_installment": terms.daily_installment,
                        "start_date": start_date.isoformat(),
                        "end_date": loan.end_date.isoformat(),
                    }
                )

        log_action(logger, "info", f"Generated {len(installments)} installments for loan {loan.id}",
                   action="generate_schedule", loan_id=loan.id,
                   extra={"daily_installment": terms.daily_installment,
                          "start_date": start_date.isoformat()})
        return installments
