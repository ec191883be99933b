"""Composite refresh: concurrent sections, progress and preserve-merge."""
from .scheduler import (
    RefreshMode,
    RefreshScheduler,
    Section,
    SectionState,
    SectionStatus,
    compute_eta_seconds,
    compute_percent,
    merge_preserve,
)
from .sections import AuditRefreshService, build_audit_sections, window_key

__all__ = [
    "AuditRefreshService",
    "RefreshMode",
    "RefreshScheduler",
    "Section",
    "SectionState",
    "SectionStatus",
    "build_audit_sections",
    "compute_eta_seconds",
    "compute_percent",
    "merge_preserve",
    "window_key",
]
