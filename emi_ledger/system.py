"""
Ledger System Module

Wires storage, clock, ledger components, the event dispatcher and the
notification emitter together, and owns their startup/shutdown lifecycle.
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .clock import Clock, clock_for_timezone
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher
from .ledger import InstallmentLedger
from .schedule import ScheduleGenerator
from .reconciler import LoanAggregateReconciler
from .gateway import GatewaySignatureVerifier, WebhookProcessor
from .payments import PaymentApplier
from .overdue import OverdueProcessor, OverdueSweepScheduler
from .loans import LoanManager
from .autopay import AutopayManager
from .notifications import NotificationEmitter, Broadcaster, LogBroadcaster, HttpRelayBroadcaster
from .reporting import LedgerReports
from .logging_config import setup_logging, get_logger


logger = get_logger("emi_ledger.system")


class LedgerSystem:
    """Daily-installment ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        broadcaster: Optional[Broadcaster] = None
    ):
        self.config = config or get_config()
        self.clock = clock or clock_for_timezone(self.config.timezone)
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, self.clock, enabled=self.config.enable_audit_logging)
        self.events = EventDispatcher()
        self.verifier = GatewaySignatureVerifier(
            self.config.gateway_key_secret, self.config.gateway_webhook_secret
        )

        self.ledger = InstallmentLedger(self.storage, self.clock)
        self.schedule_generator = ScheduleGenerator(self.ledger, self.audit_trail)
        self.reconciler = LoanAggregateReconciler(self.ledger, self.audit_trail)
        self.payments = PaymentApplier(
            self.ledger, self.reconciler, self.verifier, self.audit_trail, self.events, self.config
        )
        self.overdue = OverdueProcessor(self.ledger, self.reconciler, self.audit_trail, self.events)
        self.loans = LoanManager(
            self.ledger, self.schedule_generator, self.audit_trail, self.events, self.config
        )
        self.autopay = AutopayManager(
            self.ledger, self.payments, self.verifier, self.audit_trail, self.events, self.config
        )
        self.webhooks = WebhookProcessor(self.verifier, self.payments, self.autopay)
        self.reports = LedgerReports(self.ledger)

        if broadcaster is None:
            if self.config.notification_relay_url:
                broadcaster = HttpRelayBroadcaster(
                    self.config.notification_relay_url, self.config.notification_timeout
                )
            else:
                broadcaster = LogBroadcaster()
        self.notifications = NotificationEmitter(self.storage, broadcaster, self.clock)
        self.notifications.attach(self.events)

        self.scheduler = OverdueSweepScheduler(
            self.overdue, self.clock, sweep_hour=self.config.overdue_sweep_hour
        )

    def startup(self, run_scheduler: bool = True) -> None:
        self.notifications.start()
        if run_scheduler:
            self.scheduler.start()
        logger.info("Ledger system started")

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.notifications.shutdown()
        self.storage.close()
        logger.info("Ledger system stopped")

    def __enter__(self) -> 'LedgerSystem':
        self.startup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


def create_system(config: Optional[LedgerConfig] = None, **kwargs) -> LedgerSystem:
    """Configure logging from ``config`` and build a LedgerSystem"""
    config = config or get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    return LedgerSystem(config=config, **kwargs)
