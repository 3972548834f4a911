"""
Reporting Module

Read-only operator views over the ledger: per-loan repayment stats, today's
collections, portfolio totals and the admin dashboard.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Any

from .ledger import InstallmentLedger
from .models import Installment, LoanStatus, InstallmentStatus


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    as_of: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'generated_at': self.generated_at.isoformat(),
            'as_of': self.as_of.isoformat(),
            'data': self.data,
            'totals': self.totals,
        }


def _installment_row(installment: Installment) -> Dict[str, Any]:
    return {
        'installment_id': installment.id,
        'loan_id': installment.loan_id,
        'borrower_id': installment.borrower_id,
        'day_number': installment.day_number,
        'due_date': installment.due_date.isoformat(),
        'status': installment.status.value,
        'total_amount': installment.total_amount,
        'penalty_amount': installment.penalty_amount,
    }


def summarize_installments(installments: List[Installment]) -> Dict[str, int]:
    """Counts and sums by status"""
    summary = {
        'total': len(installments),
        'paid': 0,
        'pending': 0,
        'overdue': 0,
        'total_amount': 0,
        'collected_amount': 0,
        'outstanding_amount': 0,
        'total_penalty': 0,
        'outstanding_penalty': 0,
    }
    for installment in installments:
        summary[installment.status.value] += 1
        summary['total_amount'] += installment.total_amount
        summary['total_penalty'] += installment.penalty_amount
        if installment.is_paid:
            summary['collected_amount'] += installment.total_amount
        else:
            summary['outstanding_amount'] += installment.total_amount
            summary['outstanding_penalty'] += installment.penalty_amount
    return summary


class LedgerReports:
    """Operator reporting over loans and installments"""

    def __init__(self, ledger: InstallmentLedger):
        self.ledger = ledger
        self.clock = ledger.clock

    def loan_stats(self, loan_id: str) -> Dict[str, Any]:
        """Repayment progress of one loan"""
        loan = self.ledger.require_loan(loan_id)
        installments = self.ledger.get_installments(loan_id)
        stats: Dict[str, Any] = summarize_installments(installments)
        unpaid = [i for i in installments if not i.is_paid]
        stats.update({
            'loan_id': loan.id,
            'status': loan.status.value,
            'total_paid': loan.total_paid,
            'remaining_balance': loan.remaining_balance,
            'penalty_amount': loan.penalty_amount,
            'next_due_date': unpaid[0].due_date.isoformat() if unpaid else None,
            'progress_percent': round(100 * stats['paid'] / stats['total'], 2) if installments else 0.0,
        })
        return stats

    def due_today_summary(self, day: Optional[date] = None) -> ReportResult:
        """Installments due on ``day``: overdue first, then pending, then paid"""
        day = day or self.clock.today()
        order = {InstallmentStatus.OVERDUE: 0, InstallmentStatus.PENDING: 1, InstallmentStatus.PAID: 2}
        installments = self.ledger.installments_due_on(day)
        installments.sort(key=lambda i: (order[i.status], i.loan_id))
        return ReportResult(
            report_id="due_today",
            generated_at=self.clock.now(),
            as_of=day,
            data=[_installment_row(i) for i in installments],
            totals=summarize_installments(installments),
        )

    def portfolio_totals(self) -> ReportResult:
        """Portfolio-wide installment and loan totals"""
        installments = self.ledger.all_installments()
        loans = self.ledger.find_loans()
        totals: Dict[str, Any] = summarize_installments(installments)

        by_status = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            by_status[loan.status.value] += 1
        totals.update({
            'total_loans': len(loans),
            'loans_by_status': by_status,
            'total_disbursed': sum(
                loan.amount for loan in loans
                if loan.status in (LoanStatus.APPROVED, LoanStatus.COMPLETED)
            ),
            'total_penalty_accrued': sum(loan.penalty_amount for loan in loans),
        })
        return ReportResult(
            report_id="portfolio_totals",
            generated_at=self.clock.now(),
            as_of=self.clock.today(),
            totals=totals,
        )

    def dashboard(self, day: Optional[date] = None, recent: int = 5) -> Dict[str, Any]:
        """Admin landing page: counts plus the most recent pending applications"""
        day = day or self.clock.today()
        due_today = self.ledger.installments_due_on(day)
        pending = self.ledger.loans_with_status(LoanStatus.PENDING)
        pending.sort(key=lambda loan: loan.created_at, reverse=True)

        return {
            'as_of': day.isoformat(),
            'stats': {
                'borrowers': len({loan.borrower_id for loan in self.ledger.find_loans()}),
                'pending_loans': len(pending),
                'active_loans': len(self.ledger.loans_with_status(LoanStatus.APPROVED)),
                'today_installments': len(due_today),
                'today_unpaid_installments': len([i for i in due_today if not i.is_paid]),
                'overdue_installments': len(self.ledger.installments_with_status(InstallmentStatus.OVERDUE)),
            },
            'recent_applications': [
                {
                    'loan_id': loan.id,
                    'borrower_id': loan.borrower_id,
                    'applicant_name': loan.applicant_name,
                    'amount': loan.amount,
                    'created_at': loan.created_at.isoformat(),
                }
                for loan in pending[:recent]
            ],
        }
