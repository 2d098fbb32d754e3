"""
Module: escrow_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the import surface for escrow_config
    bridges and escrow_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import escrow_kernel domain types, exceptions and logging.
    MUST NOT import escrow_services, escrow_kernel.models,
    escrow_kernel.db or SQLAlchemy.

Invariants enforced:
    - Purity: engines never read the clock.  Times and ages are inputs.
    - Decimal-only arithmetic: floats are rejected at the boundary.
    - Determinism: identical inputs always produce identical outputs.
"""

from escrow_engines.fees import (
    BondingAlternatives,
    ProcessingFee,
    ReleaseFees,
    bonding_alternatives,
    compute_processing_fee,
    compute_release_fees,
    effective_transaction_rate,
    validate_fee_schedule,
)
from escrow_engines.leverage import (
    CertificateTerms,
    CertificateTermsParams,
    LeverageEstimate,
    LeverageParams,
    certificate_terms,
    estimate_leverage,
    format_certificate_number,
    risk_rating,
)
from escrow_engines.quorum import QuorumEvaluation, evaluate_quorum, find_requirement
from escrow_engines.risk import (
    PaymentHistory,
    RiskAssessment,
    RiskBucket,
    RiskInputs,
    RiskModel,
    RiskParams,
    RiskWeights,
    TierTable,
    VerificationCheck,
    VerificationFacts,
    VerificationParams,
    VerificationResult,
    WeightedRiskModel,
    bucket_risk,
    verify,
)
from escrow_engines.tax import (
    DEFAULT_JURISDICTIONS,
    ExemptionFacts,
    ExemptionReason,
    JurisdictionRate,
    TaxBreakdown,
    TaxEngine,
    TaxNumberKind,
    TaxRegime,
    validate_tax_number,
)

__all__ = [
    "BondingAlternatives",
    "CertificateTerms",
    "CertificateTermsParams",
    "DEFAULT_JURISDICTIONS",
    "ExemptionFacts",
    "ExemptionReason",
    "JurisdictionRate",
    "LeverageEstimate",
    "LeverageParams",
    "PaymentHistory",
    "ProcessingFee",
    "QuorumEvaluation",
    "ReleaseFees",
    "RiskAssessment",
    "RiskBucket",
    "RiskInputs",
    "RiskModel",
    "RiskParams",
    "RiskWeights",
    "TaxBreakdown",
    "TaxEngine",
    "TaxNumberKind",
    "TaxRegime",
    "TierTable",
    "VerificationCheck",
    "VerificationFacts",
    "VerificationParams",
    "VerificationResult",
    "WeightedRiskModel",
    "bonding_alternatives",
    "bucket_risk",
    "certificate_terms",
    "compute_processing_fee",
    "compute_release_fees",
    "effective_transaction_rate",
    "estimate_leverage",
    "evaluate_quorum",
    "find_requirement",
    "format_certificate_number",
    "risk_rating",
    "validate_fee_schedule",
    "validate_tax_number",
    "verify",
]
