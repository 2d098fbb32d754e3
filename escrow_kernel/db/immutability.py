"""
ORM-level immutability enforcement for append-only escrow records.

SQLAlchemy fires mapper events before UPDATE/DELETE statements are sent.
Listeners registered here intercept those events and raise
ImmutabilityViolationError, aborting the flush before the database is
touched.

Protected entities:

Entity                  | Rule
------------------------|-------------------------------------------------
AuditEvent              | Never updated or deleted
MilestoneApprovalModel  | Never updated or deleted (approvals only append)
EscrowTransactionModel  | Never updated or deleted (ledger only appends)
PaymentCertificateModel | Only status active -> expired (with expired_at);
                        | never deleted

Usage::

    from escrow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that must violate the rules on purpose may call
``unregister_immutability_listeners()`` and register again afterwards.
"""

from sqlalchemy import event, inspect

from escrow_kernel.exceptions import ImmutabilityViolationError
from escrow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    insp = inspect(target)
    return [attr.key for attr in insp.attrs if attr.history.has_changes()]


def _append_only_update_guard(entity_type: str):
    def _check(mapper, connection, target):
        changed = _changed_fields(target)
        if changed:
            _block(
                entity_type,
                target,
                "UPDATE",
                f"{entity_type} records are append-only (attempted to change '{changed[0]}')",
                field=changed[0],
            )

    _check.__name__ = f"_check_{entity_type.lower()}_immutability"
    return _check


def _append_only_delete_guard(entity_type: str):
    def _check(mapper, connection, target):
        _block(entity_type, target, "DELETE", f"{entity_type} records cannot be deleted")

    _check.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check


_check_audit_event_immutability = _append_only_update_guard("AuditEvent")
_check_audit_event_delete = _append_only_delete_guard("AuditEvent")
_check_approval_immutability = _append_only_update_guard("MilestoneApproval")
_check_approval_delete = _append_only_delete_guard("MilestoneApproval")
_check_ledger_transaction_immutability = _append_only_update_guard("EscrowTransaction")
_check_ledger_transaction_delete = _append_only_delete_guard("EscrowTransaction")
_check_certificate_delete = _append_only_delete_guard("PaymentCertificate")


def _check_certificate_immutability(mapper, connection, target):
    """
    Allow exactly one mutation on an issued certificate: expiry.

    The status may move from ``active`` to ``expired`` and ``expired_at``
    may be stamped.  Every other field is frozen at issuance.
    """
    from escrow_kernel.models.certificate import CERTIFICATE_MUTABLE_FIELDS

    insp = inspect(target)
    for attr in insp.attrs:
        hist = attr.history
        if not hist.has_changes():
            continue
        if attr.key not in CERTIFICATE_MUTABLE_FIELDS:
            _block(
                "PaymentCertificate",
                target,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on issued certificate",
                field=attr.key,
            )
        if attr.key == "status":
            old = hist.deleted[0] if hist.deleted else None
            new = hist.added[0] if hist.added else None
            if not (old == "active" and new == "expired"):
                _block(
                    "PaymentCertificate",
                    target,
                    "UPDATE",
                    f"Certificate status cannot change from {old} to {new}",
                    field="status",
                )


def _listener_table():
    from escrow_kernel.models.approval import MilestoneApprovalModel
    from escrow_kernel.models.audit_event import AuditEvent
    from escrow_kernel.models.certificate import PaymentCertificateModel
    from escrow_kernel.models.ledger import EscrowTransactionModel

    return (
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (MilestoneApprovalModel, "before_update", _check_approval_immutability),
        (MilestoneApprovalModel, "before_delete", _check_approval_delete),
        (EscrowTransactionModel, "before_update", _check_ledger_transaction_immutability),
        (EscrowTransactionModel, "before_delete", _check_ledger_transaction_delete),
        (PaymentCertificateModel, "before_update", _check_certificate_immutability),
        (PaymentCertificateModel, "before_delete", _check_certificate_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call after the models are importable and before any database work.
    Registering twice is harmless.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate the rules.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
