"""
Ledger Data Model

Loan and Installment records, their lifecycle enums and the allowed state
transitions. Amounts are integer currency units; the interest rate is a Decimal
percentage.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageRecord
from .exceptions import InvalidLoanStateError, AutopayStateError, InstallmentAlreadyPaidError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application submitted
    APPROVED = "approved"      # Schedule generated, repayments running
    REJECTED = "rejected"      # Terminal
    COMPLETED = "completed"    # Every installment paid


class InstallmentStatus(Enum):
    """Installment (EMI) payment states"""
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"              # Terminal


class AutopayStatus(Enum):
    """Recurring-billing sub-state of a loan, independent of LoanStatus"""
    NONE = "none"
    PENDING = "pending"        # Subscription created, awaiting mandate
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.COMPLETED},
    LoanStatus.REJECTED: set(),
    LoanStatus.COMPLETED: set(),
}

AUTOPAY_TRANSITIONS = {
    AutopayStatus.NONE: {AutopayStatus.PENDING},
    AutopayStatus.PENDING: {AutopayStatus.ACTIVE, AutopayStatus.CANCELLED},
    AutopayStatus.ACTIVE: {AutopayStatus.PAUSED, AutopayStatus.CANCELLED},
    AutopayStatus.PAUSED: {AutopayStatus.ACTIVE, AutopayStatus.CANCELLED},
    AutopayStatus.CANCELLED: {AutopayStatus.PENDING},
}


@dataclass
class Loan(StorageRecord):
    """Daily-installment loan with its denormalized repayment aggregates"""
    borrower_id: str
    amount: int

    # Applicant details captured with the application
    applicant_name: str = ""
    applicant_mobile: str = ""
    applicant_address: str = ""
    applicant_aadhaar: str = ""
    applicant_pan: str = ""

    # Principal terms
    total_days: int = 100
    interest_rate: Decimal = Decimal('20')
    status: LoanStatus = LoanStatus.PENDING

    # Derived terms, fixed at approval
    total_interest: int = 0
    daily_principal: int = 0
    daily_interest: int = 0
    daily_installment: int = 0

    # Aggregates, mutated only through the reconciler deltas
    total_paid: int = 0
    remaining_balance: int = 0
    penalty_amount: int = 0

    # Dates
    approved_at: Optional[datetime] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    rejection_reason: Optional[str] = None

    # Owned installments, in schedule order
    installment_ids: List[str] = field(default_factory=list)

    # Autopay
    autopay_enabled: bool = False
    autopay_status: AutopayStatus = AutopayStatus.NONE
    subscription_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            self.interest_rate = Decimal(str(self.interest_rate))

    @property
    def contract_total(self) -> int:
        """Principal plus total interest, the starting remaining balance"""
        return self.amount + self.total_interest

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.APPROVED

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    def transition_to(self, new_status: LoanStatus) -> None:
        """Move to ``new_status`` or raise InvalidLoanStateError"""
        if new_status not in LOAN_TRANSITIONS[self.status]:
            raise InvalidLoanStateError(
                f"Loan {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def transition_autopay(self, new_status: AutopayStatus) -> None:
        """Move the autopay sub-state or raise AutopayStateError"""
        if new_status not in AUTOPAY_TRANSITIONS[self.autopay_status]:
            raise AutopayStateError(
                f"Autopay for loan {self.id} cannot move from "
                f"{self.autopay_status.value} to {new_status.value}"
            )
        self.autopay_status = new_status
        self.autopay_enabled = new_status == AutopayStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        data['autopay_status'] = AutopayStatus(data.get('autopay_status', 'none'))
        data['interest_rate'] = Decimal(str(data['interest_rate']))
        if data.get('approved_at'):
            data['approved_at'] = datetime.fromisoformat(data['approved_at'])
        for key in ('start_date', 'end_date'):
            if data.get(key):
                data[key] = date.fromisoformat(data[key])
        return super().from_dict(data)


@dataclass
class Installment(StorageRecord):
    """
    One day's obligation within a loan.

    ``total_amount`` is always principal + interest + penalty; it is recomputed
    whenever the penalty changes and never stored independently of its parts.
    """
    loan_id: str
    borrower_id: str
    day_number: int
    principal_amount: int
    interest_amount: int
    due_date: date
    penalty_amount: int = 0
    total_amount: int = 0
    status: InstallmentStatus = InstallmentStatus.PENDING
    gateway_order_id: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        self.total_amount = self.principal_amount + self.interest_amount + self.penalty_amount

    @property
    def base_amount(self) -> int:
        """Principal plus interest, the part that reduces the remaining balance"""
        return self.principal_amount + self.interest_amount

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def apply_penalty(self, new_penalty: int) -> int:
        """
        Raise the penalty to ``new_penalty`` and mark the installment overdue.

        Returns:
            The increase, 0 when ``new_penalty`` is not above the current penalty
        """
        if self.is_paid:
            raise InstallmentAlreadyPaidError([self.id])
        if new_penalty <= self.penalty_amount:
            return 0
        delta = new_penalty - self.penalty_amount
        self.penalty_amount = new_penalty
        self.total_amount = self.principal_amount + self.interest_amount + self.penalty_amount
        self.status = InstallmentStatus.OVERDUE
        return delta

    def mark_paid(self, payment_reference: str, paid_at: datetime) -> None:
        if self.is_paid:
            raise InstallmentAlreadyPaidError([self.id])
        self.status = InstallmentStatus.PAID
        self.payment_reference = payment_reference
        self.paid_at = paid_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        data = dict(data)
        data['status'] = InstallmentStatus(data['status'])
        data['due_date'] = date.fromisoformat(data['due_date'])
        if data.get('paid_at'):
            data['paid_at'] = datetime.fromisoformat(data['paid_at'])
        return super().from_dict(data)
