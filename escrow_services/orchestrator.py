"""
escrow_services.orchestrator -- Central DI container for escrow services.

Responsibility:
    Creates every escrow service exactly once, wires them together and
    parameterizes the engines from one ``EscrowEngineConfig``.  No
    service constructs another service internally.

Architecture position:
    Services -- top of the service layer; the only place where
    configuration, kernel services and escrow services meet.

Invariants enforced:
    - Single-instance lifecycle: one AuditorService, one QuorumService,
      one DisbursementScheduler per orchestrator.
    - All services share the same Session and Clock.
    - DI transparency: all wiring is visible in ``__init__``.

Failure modes:
    - ConfigurationError if the config cannot be turned into engine
      parameters (raised by the bridges).

Usage:
    from escrow_services.orchestrator import EscrowOrchestrator

    orchestrator = EscrowOrchestrator(
        session=session,
        config=get_active_config(),
        approver_directory=directory,
        verification=verification,
        transfer=transfer,
        contracts=contracts,
        businesses=businesses,
        clock=clock,
    )

    orchestrator.escrow.create(...)
    orchestrator.scheduler.process_pending()
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from escrow_config import EscrowEngineConfig, get_active_config
from escrow_config.bridges import (
    build_certificate_params,
    build_fee_schedule,
    build_leverage_params,
    build_risk_model,
    build_tax_engine,
    build_verification_params,
)
from escrow_engines.risk import RiskModel
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.ports import (
    ApproverDirectory,
    BusinessDirectory,
    ContractRegistry,
    FundTransferService,
    MarketAppetiteSignal,
    VerificationService,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.services.auditor_service import AuditorService
from escrow_services.certificate_service import CertificateService
from escrow_services.disbursement_service import DisbursementScheduler
from escrow_services.escrow_service import EscrowService
from escrow_services.quorum_service import QuorumService

logger = get_logger("services.orchestrator")


class EscrowOrchestrator:
    """Central factory for escrow services.

    Contract:
        Receives a Session, the external ports and optionally a config,
        Clock, market signal and risk model.  When ``config`` is omitted
        the active configuration is loaded through ``get_active_config()``.
        ``risk_model`` replaces the configured weighted model.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        approver_directory: ApproverDirectory,
        verification: VerificationService,
        transfer: FundTransferService,
        contracts: ContractRegistry,
        businesses: BusinessDirectory,
        config: EscrowEngineConfig | None = None,
        clock: Clock | None = None,
        market_signal: MarketAppetiteSignal | None = None,
        risk_model: RiskModel | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self.config = config or get_active_config()

        # Foundational
        self.auditor = AuditorService(session, self._clock)
        self.tax_engine = build_tax_engine(self.config)

        self.quorum = QuorumService(session, self.auditor, self._clock)

        self.scheduler = DisbursementScheduler(
            session=session,
            auditor=self.auditor,
            transfer=transfer,
            verification=verification,
            contracts=contracts,
            businesses=businesses,
            clock=self._clock,
            risk_model=risk_model or build_risk_model(self.config),
            verification_params=build_verification_params(self.config),
            settings=self.config.quickpay,
            history_window=self.config.risk.history_window,
            velocity_window_days=self.config.risk.velocity_window_days,
        )

        self.certificates = CertificateService(
            session=session,
            auditor=self.auditor,
            clock=self._clock,
            params=build_certificate_params(self.config),
            leverage_params=build_leverage_params(self.config),
            market_signal=market_signal,
        )

        # Escrow accounts (depends on everything above)
        self.escrow = EscrowService(
            session=session,
            auditor=self.auditor,
            quorum=self.quorum,
            scheduler=self.scheduler,
            approver_directory=approver_directory,
            clock=self._clock,
            tax_engine=self.tax_engine,
            certificates=self.certificates,
            settings=self.config.escrow,
            default_fee_schedule=build_fee_schedule(self.config),
        )

        logger.debug(
            "escrow_orchestrator_ready",
            extra={"config_id": self.config.config_id, "checksum": self.config.checksum},
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def session(self) -> Session:
        return self._session
