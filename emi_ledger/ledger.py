"""
Installment Ledger Module

Repository over the ``loans`` and ``installments`` tables. This is the only
module that reads or writes those tables directly; the schedule generator,
payment applier, overdue processor and reconciler all go through it.
"""

from datetime import date
from typing import Dict, List, Optional, Any, Iterable

from .storage import StorageInterface
from .clock import Clock, SystemClock
from .models import Loan, Installment, LoanStatus, InstallmentStatus
from .exceptions import LoanNotFoundError, InstallmentNotFoundError


UNPAID_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)


class InstallmentLedger:
    """Persistence and lookups for loans and their installments"""

    loans_table = "loans"
    installments_table = "installments"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

    def atomic(self):
        """Unit of work spanning loan and installment writes"""
        return self.storage.atomic()

    # Loans

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = self.clock.now()
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def find_loans(self, filters: Optional[Dict[str, Any]] = None) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters or {})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def loans_with_status(self, status: LoanStatus) -> List[Loan]:
        return self.find_loans({"status": status.value})

    def delete_loan(self, loan_id: str) -> int:
        """
        Delete a loan and every installment it owns in one unit of work.

        Returns:
            Number of installments removed
        """
        with self.atomic():
            loan = self.require_loan(loan_id)
            owned = set(loan.installment_ids)
            owned.update(i.id for i in self.get_installments(loan_id))
            for installment_id in owned:
                self.storage.delete(self.installments_table, installment_id)
            self.storage.delete(self.loans_table, loan_id)
        return len(owned)

    # Installments

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = self.clock.now()
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def save_installments(self, installments: Iterable[Installment]) -> None:
        for installment in installments:
            self.save_installment(installment)

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.installments_table, installment_id)
        if data:
            return Installment.from_dict(data)
        return None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if installment is None:
            raise InstallmentNotFoundError(f"Installment {installment_id} not found")
        return installment

    def get_installments(self, loan_id: str) -> List[Installment]:
        """All installments of a loan in schedule order"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda i: i.day_number)
        return installments

    def unpaid_installments(self, loan_id: str, limit: Optional[int] = None) -> List[Installment]:
        """Unpaid installments of a loan, oldest ``day_number`` first"""
        unpaid = [i for i in self.get_installments(loan_id) if not i.is_paid]
        if limit is not None:
            unpaid = unpaid[:limit]
        return unpaid

    def count_unpaid(self, loan_id: str) -> int:
        return len(self.unpaid_installments(loan_id))

    def installments_with_status(self, status: InstallmentStatus,
                                 borrower_id: Optional[str] = None) -> List[Installment]:
        filters: Dict[str, Any] = {"status": status.value}
        if borrower_id:
            filters["borrower_id"] = borrower_id
        rows = self.storage.find(self.installments_table, filters)
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda i: (i.due_date, i.day_number))
        return installments

    def past_due_installments(self, cutoff: date) -> List[Installment]:
        """Unpaid installments whose due date is strictly before ``cutoff``"""
        past_due = []
        for status in UNPAID_STATUSES:
            past_due.extend(
                i for i in self.installments_with_status(status) if i.due_date < cutoff
            )
        past_due.sort(key=lambda i: (i.loan_id, i.day_number))
        return past_due

    def installments_due_on(self, day: date, borrower_id: Optional[str] = None) -> List[Installment]:
        filters: Dict[str, Any] = {"due_date": day.isoformat()}
        if borrower_id:
            filters["borrower_id"] = borrower_id
        rows = self.storage.find(self.installments_table, filters)
        return [Installment.from_dict(data) for data in rows]

    def all_installments(self) -> List[Installment]:
        return [Installment.from_dict(data) for data in self.storage.load_all(self.installments_table)]
