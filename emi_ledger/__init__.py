"""
EMI Ledger

Daily-installment loan ledger: schedule generation, payment settlement, overdue
penalties and loan aggregate reconciliation, with an audit trail and
notification events.
"""

__version__ = "1.0.0"
