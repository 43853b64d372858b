"""
SQLAlchemy Models
=================

Central import point for all ORM models. Import ``Base`` from here for
the ``create_all`` convenience in tests.

Usage::

    from src.models import Base, Job, JobStatus
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Jobs --
from .job import AuthCode, BillingMode, BillingRecord, Job, JobStatus, Quote

__all__ = [
    "AuthCode",
    "Base",
    "BillingMode",
    "BillingRecord",
    "Job",
    "JobStatus",
    "Quote",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
]
