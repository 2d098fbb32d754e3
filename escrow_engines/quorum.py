"""
escrow_engines.quorum -- Pure milestone quorum evaluation.

Responsibility:
    Decide whether the approvals collected on a milestone satisfy its
    required approver slots, and which slots are still missing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import escrow_kernel/domain types.

Invariants enforced:
    - Quorum holds iff every ``required=True`` slot has a matching approval
      (same approver type and approver id).
    - Optional slots never gate quorum.
    - Order of approvals is irrelevant; duplicates count once.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from escrow_kernel.domain.escrow import ApproverRequirement, ApproverType


class _Signature(Protocol):
    approver_type: ApproverType
    approver_id: str


@dataclass(frozen=True)
class QuorumEvaluation:
    satisfied: bool
    missing: tuple[ApproverRequirement, ...]
    matched_count: int

    @property
    def missing_approver_types(self) -> list[str]:
        return sorted({r.approver_type.value for r in self.missing})


def _key(approver_type: ApproverType | str, approver_id: str) -> tuple[str, str]:
    return ApproverType(approver_type).value, approver_id


def find_requirement(
    requirements: Iterable[ApproverRequirement],
    approver_type: ApproverType,
    approver_id: str,
) -> ApproverRequirement | None:
    """The slot an approver occupies on a milestone, if any."""
    wanted = _key(approver_type, approver_id)
    for requirement in requirements:
        if _key(requirement.approver_type, requirement.approver_id) == wanted:
            return requirement
    return None


def evaluate_quorum(
    requirements: Iterable[ApproverRequirement],
    approvals: Iterable[_Signature],
) -> QuorumEvaluation:
    """Given current approvals, determine whether the required slots are filled.

    Args:
        requirements: The milestone's approver slots.
        approvals: Recorded signatures (anything with ``approver_type`` and
            ``approver_id``).

    Returns:
        QuorumEvaluation with the satisfied flag, the required slots still
        missing, and how many required slots are filled.
    """
    signed = {_key(a.approver_type, a.approver_id) for a in approvals}
    required = [r for r in requirements if r.required]
    missing = tuple(
        r for r in required
        if _key(r.approver_type, r.approver_id) not in signed
    )
    return QuorumEvaluation(
        satisfied=not missing,
        missing=missing,
        matched_count=len(required) - len(missing),
    )
