"""Segment membership and reconciliation."""

from donorseg.subsystems.membership.membership_store import (
    MembershipStore,
    Qualification,
    ReconciliationPlan,
    SegmentQualifier,
)

__all__ = ["MembershipStore", "Qualification", "ReconciliationPlan", "SegmentQualifier"]
