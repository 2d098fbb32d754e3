"""
Typed Exception Hierarchy for the Escrow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Money held in trust moves only when every precondition holds. Callers must be
able to tell a malformed request (fix and resubmit) from a state conflict
(re-fetch and decide) from a failed external transfer (reconcile by hand)
without parsing messages.

Every exception therefore has:
  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        escrow.fund(account_id, amount, reference)
    except ValidationError as e:
        return {"error": e.code, "detail": str(e)}
    except StateConflictError as e:
        return {"error": e.code, "state": e.current_state}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EscrowEngineError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- UnknownJurisdictionError
    |   +-- UnauthorizedApproverError
    |
    +-- NotFoundError
    |   +-- AccountNotFoundError
    |   +-- MilestoneNotFoundError
    |   +-- PaymentRequestNotFoundError
    |
    +-- StateConflictError
    +-- QuorumNotMetError
    +-- TransferFailure
    +-- DisputeRaised
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed or inconsistent input
                | INVALID_AMOUNT              | Zero/negative/over-precise amount
                | UNKNOWN_JURISDICTION        | No tax regime for jurisdiction code
                | UNAUTHORIZED_APPROVER       | Approver not on the contract's list
----------------|-----------------------------|-----------------------------------------
Lookup          | ACCOUNT_NOT_FOUND           | Escrow account id doesn't exist
                | MILESTONE_NOT_FOUND         | Milestone not on the account
                | PAYMENT_REQUEST_NOT_FOUND   | Payment request id doesn't exist
----------------|-----------------------------|-----------------------------------------
State           | STATE_CONFLICT              | Operation illegal in current state
                | QUORUM_NOT_MET              | Required approvals still missing
                | TRANSFER_FAILURE            | External disbursement failed
                | DISPUTE_RAISED              | Account frozen by a dispute
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only record
Audit           | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
Configuration   | CONFIGURATION_ERROR         | Invalid configuration set

===============================================================================
HANDLING PATTERNS
===============================================================================

1. TRANSFER FAILURES ARE NEVER RETRIED BLINDLY:

    The scheduler records ``provider_error`` verbatim on the payment request.
    Re-sending is an explicit caller decision (``redisburse``), reusing the
    same idempotency key unless the provider confirmed nothing was sent.

2. DISPUTES ARE A BUSINESS OUTCOME:

    except DisputeRaised as e:
        route_to_resolution(e.account_id, e.reason, e.frozen_amount)

3. CONCURRENCY ERRORS ARE RETRYABLE after re-reading the account.
"""

from decimal import Decimal


class EscrowEngineError(Exception):
    """
    Base exception for all escrow engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ESCROW_ENGINE_ERROR"


# Validation


class ValidationError(EscrowEngineError):
    """Malformed or inconsistent input. Always caller-fixable, never retried."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidAmountError(ValidationError):
    """Amount is non-positive, out of bounds, or has sub-cent precision."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, amount: Decimal, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid {field} {amount}: {reason}", field=field)


class UnknownJurisdictionError(ValidationError):
    """No tax regime is configured for the jurisdiction code."""

    code: str = "UNKNOWN_JURISDICTION"

    def __init__(self, jurisdiction: str):
        self.jurisdiction = jurisdiction
        super().__init__(
            f"Unknown tax jurisdiction: {jurisdiction}", field="jurisdiction"
        )


class UnauthorizedApproverError(ValidationError):
    """Approver is not authorized for the contract or milestone."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, approver_type: str, approver_id: str, contract_reference: str):
        self.approver_type = approver_type
        self.approver_id = approver_id
        self.contract_reference = contract_reference
        super().__init__(
            f"Approver {approver_type}:{approver_id} is not authorized "
            f"for contract {contract_reference}",
            field="approver_id",
        )


# Lookup


class NotFoundError(EscrowEngineError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    """Escrow account with given ID was not found."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Escrow account not found: {account_id}")


class MilestoneNotFoundError(NotFoundError):
    """Milestone was not found on the account."""

    code: str = "MILESTONE_NOT_FOUND"

    def __init__(self, milestone_id: str, account_id: str | None = None):
        self.milestone_id = milestone_id
        self.account_id = account_id
        where = f" on account {account_id}" if account_id else ""
        super().__init__(f"Milestone not found: {milestone_id}{where}")


class PaymentRequestNotFoundError(NotFoundError):
    """Payment request with given ID was not found."""

    code: str = "PAYMENT_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Payment request not found: {request_id}")


# State


class StateConflictError(EscrowEngineError):
    """
    Operation is illegal for the entity's current state.

    The caller must re-fetch state before deciding what to do next.
    """

    code: str = "STATE_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        operation: str,
        detail: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_state = current_state
        self.operation = operation
        self.detail = detail
        message = (
            f"Cannot {operation} {entity_type} {entity_id} "
            f"in state {current_state}"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class QuorumNotMetError(EscrowEngineError):
    """Required approvals are missing. Recoverable by submitting more."""

    code: str = "QUORUM_NOT_MET"

    def __init__(self, milestone_id: str, missing_approver_types: list[str]):
        self.milestone_id = milestone_id
        self.missing_approver_types = missing_approver_types
        super().__init__(
            f"Quorum not met for milestone {milestone_id}: missing "
            f"{', '.join(missing_approver_types)}"
        )


class TransferFailure(EscrowEngineError):
    """
    External disbursement failed.

    ``raw_error`` is the provider's error exactly as returned, kept for
    manual reconciliation. Never retried automatically.
    """

    code: str = "TRANSFER_FAILURE"

    def __init__(self, provider: str, raw_error: str, idempotency_key: str | None = None):
        self.provider = provider
        self.raw_error = raw_error
        self.idempotency_key = idempotency_key
        super().__init__(f"Transfer via {provider} failed: {raw_error}")


class DisputeRaised(EscrowEngineError):
    """
    The account is frozen by a dispute.

    Not a fault: a terminal business outcome. Remaining held funds stay
    frozen until external resolution.
    """

    code: str = "DISPUTE_RAISED"

    def __init__(self, account_id: str, reason: str, frozen_amount: Decimal):
        self.account_id = account_id
        self.reason = reason
        self.frozen_amount = frozen_amount
        super().__init__(
            f"Escrow account {account_id} is disputed ({reason}); "
            f"{frozen_amount} frozen"
        )


# Concurrency


class ConcurrencyError(EscrowEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability


class ImmutabilityError(EscrowEngineError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Approvals, escrow transactions and audit events are immutable after
    creation; payment certificates only allow the expiry transition.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditError(EscrowEngineError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Configuration


class ConfigurationError(EscrowEngineError):
    """Configuration set failed validation."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, section: str | None = None):
        self.section = section
        super().__init__(message)
