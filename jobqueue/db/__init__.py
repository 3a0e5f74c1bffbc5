"""
Database module.
Contains database connection, models, and the SQL store implementations.
"""

from jobqueue.db.connection import Database
from jobqueue.db.models import Base, DeliveryAttemptRecord, JobRecord
from jobqueue.db.repository import SqlDeliveryAttemptStore, SqlJobStore

__all__ = [
    "Database",
    "Base",
    "JobRecord",
    "DeliveryAttemptRecord",
    "SqlJobStore",
    "SqlDeliveryAttemptStore",
]
