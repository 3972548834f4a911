"""
Loan Aggregate Reconciler Module

Keeps a loan's denormalized totals (total_paid, remaining_balance,
penalty_amount) and its completion status in step with its installments.

Settlement and penalty code paths never write loan totals themselves; they call
the delta functions here inside their own transaction. The recompute functions
(``compute``, ``check``, ``repair``) rebuild the same totals from the
installments and are used for drift detection and recovery.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable, Tuple

from .ledger import InstallmentLedger
from .models import Loan, Installment, LoanStatus
from .audit import AuditTrail, AuditEventType
from .exceptions import AggregateDriftError
from .logging_config import get_logger, log_action


logger = get_logger("emi_ledger.reconciler")


@dataclass
class LoanAggregates:
    """Loan totals as implied by its installments"""
    loan_id: str
    total_paid: int
    remaining_balance: int
    penalty_amount: int
    installment_count: int
    paid_count: int

    @property
    def unpaid_count(self) -> int:
        return self.installment_count - self.paid_count

    @property
    def fully_paid(self) -> bool:
        return self.installment_count > 0 and self.unpaid_count == 0


@dataclass
class DriftReport:
    """Differences between stored loan totals and the recomputed ones"""
    loan_id: str
    drifted_fields: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)  # field -> (stored, expected)
    violations: List[str] = field(default_factory=list)
    repaired: bool = False

    @property
    def is_consistent(self) -> bool:
        return not self.drifted_fields and not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'drifted_fields': {
                name: {'stored': stored, 'expected': expected}
                for name, (stored, expected) in self.drifted_fields.items()
            },
            'violations': list(self.violations),
            'repaired': self.repaired,
        }


class LoanAggregateReconciler:
    """Delta updates and recompute-based drift detection for loan totals"""

    def __init__(self, ledger: InstallmentLedger, audit_trail: Optional[AuditTrail] = None):
        self.ledger = ledger
        self.audit_trail = audit_trail

    # Delta functions, called inside the caller's transaction

    @staticmethod
    def apply_settlement(loan: Loan, installments: Iterable[Installment]) -> int:
        """
        Fold newly paid installments into the loan totals.

        Returns:
            Amount added to ``total_paid``
        """
        paid_total = 0
        base_total = 0
        for installment in installments:
            paid_total += installment.total_amount
            base_total += installment.base_amount
        loan.total_paid += paid_total
        loan.remaining_balance -= base_total
        return paid_total

    @staticmethod
    def apply_penalty(loan: Loan, delta: int) -> None:
        """Add a penalty increase to the loan; penalties never decrease"""
        if delta < 0:
            raise ValueError(f"Penalty delta cannot be negative: {delta}")
        loan.penalty_amount += delta

    def evaluate_completion(self, loan: Loan) -> bool:
        """
        Move an approved loan to completed when no installment is unpaid.

        Must run after the settled installments are saved in the current
        transaction. Returns True when this call completed the loan.
        """
        if loan.status != LoanStatus.APPROVED:
            return False
        if not loan.installment_ids:
            return False
        if self.ledger.count_unpaid(loan.id) > 0:
            return False
        loan.transition_to(LoanStatus.COMPLETED)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"total_paid": loan.total_paid, "penalty_amount": loan.penalty_amount}
            )
        return True

    # Recompute

    def compute(self, loan_id: str) -> LoanAggregates:
        """Recompute loan totals from its installments"""
        loan = self.ledger.require_loan(loan_id)
        installments = self.ledger.get_installments(loan_id)
        paid = [i for i in installments if i.is_paid]
        return LoanAggregates(
            loan_id=loan_id,
            total_paid=sum(i.total_amount for i in paid),
            remaining_balance=loan.contract_total - sum(i.base_amount for i in paid),
            penalty_amount=sum(i.penalty_amount for i in installments),
            installment_count=len(installments),
            paid_count=len(paid),
        )

    def check(self, loan_id: str) -> DriftReport:
        """Compare stored totals and invariants against the installments"""
        loan = self.ledger.require_loan(loan_id)
        installments = self.ledger.get_installments(loan_id)
        expected = self.compute(loan_id)
        report = DriftReport(loan_id=loan_id)

        if loan.status in (LoanStatus.PENDING, LoanStatus.REJECTED):
            if installments:
                report.violations.append(
                    f"{loan.status.value} loan owns {len(installments)} installments"
                )
            return report

        for name in ('total_paid', 'remaining_balance', 'penalty_amount'):
            stored = getattr(loan, name)
            wanted = getattr(expected, name)
            if stored != wanted:
                report.drifted_fields[name] = (stored, wanted)

        day_numbers = sorted(i.day_number for i in installments)
        if day_numbers != list(range(1, loan.total_days + 1)):
            report.violations.append(
                f"day numbers are not exactly 1..{loan.total_days}"
            )

        if expected.fully_paid and loan.status != LoanStatus.COMPLETED:
            report.drifted_fields['status'] = (loan.status.value, LoanStatus.COMPLETED.value)
        elif not expected.fully_paid and loan.status == LoanStatus.COMPLETED:
            report.drifted_fields['status'] = (loan.status.value, LoanStatus.APPROVED.value)

        if not report.is_consistent:
            log_action(logger, "warning", f"Aggregate drift on loan {loan_id}",
                       action="check_aggregates", loan_id=loan_id, extra=report.to_dict())
        return report

    def verify(self, loan_id: str) -> None:
        """Raise AggregateDriftError when the loan's totals have drifted"""
        report = self.check(loan_id)
        if report.drifted_fields:
            log_action(logger, "error", f"Loan {loan_id} aggregates drifted",
                       action="verify_aggregates", loan_id=loan_id, extra=report.to_dict())
            raise AggregateDriftError(loan_id, report.drifted_fields)

    def repair(self, loan_id: str, actor: Optional[str] = None) -> DriftReport:
        """
        Overwrite the stored totals and completion status with recomputed values.

        Returns:
            The drift found before repair, with ``repaired`` set when anything changed
        """
        with self.ledger.atomic():
            report = self.check(loan_id)
            if not report.drifted_fields:
                return report

            loan = self.ledger.require_loan(loan_id)
            expected = self.compute(loan_id)
            loan.total_paid = expected.total_paid
            loan.remaining_balance = expected.remaining_balance
            loan.penalty_amount = expected.penalty_amount
            if 'status' in report.drifted_fields:
                # Recovery only; normal flow never moves completed back
                loan.status = LoanStatus(report.drifted_fields['status'][1])
            self.ledger.save_loan(loan)
            report.repaired = True

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.AGGREGATES_REPAIRED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata=report.to_dict(),
                    actor=actor
                )

        log_action(logger, "warning", f"Repaired aggregates for loan {loan_id}",
                   action="repair_aggregates", loan_id=loan_id, actor=actor,
                   extra=report.to_dict())
        return report

    def check_all(self) -> List[DriftReport]:
        """Drift reports for every scheduled loan that is not consistent"""
        reports = []
        for status in (LoanStatus.APPROVED, LoanStatus.COMPLETED):
            for loan in self.ledger.loans_with_status(status):
                report = self.check(loan.id)
                if not report.is_consistent:
                    reports.append(report)
        return reports
