"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from relay_core.state.database import create_all, dispose, get_engine, get_session, get_session_factory
from relay_core.state.repository import (
    AuditRepository,
    IdempotencyKeyRepository,
    InvoiceArtifactRepository,
    InvoiceRepository,
    JobRepository,
    PdpSubmissionRepository,
    TenantRepository,
    TenantSecretRepository,
    find_stale_submissions,
)

__all__ = [
    "AuditRepository",
    "IdempotencyKeyRepository",
    "InvoiceArtifactRepository",
    "InvoiceRepository",
    "JobRepository",
    "PdpSubmissionRepository",
    "TenantRepository",
    "TenantSecretRepository",
    "create_all",
    "dispose",
    "find_stale_submissions",
    "get_engine",
    "get_session",
    "get_session_factory",
]
