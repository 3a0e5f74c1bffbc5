"""
Storage module.
Contains the job and delivery-attempt store contracts and the in-memory
implementations. The SQL implementations live in jobqueue.db.
"""

from jobqueue.store.base import DeliveryAttemptStore, JobStore
from jobqueue.store.memory import MemoryDeliveryAttemptStore, MemoryJobStore

__all__ = [
    "JobStore",
    "DeliveryAttemptStore",
    "MemoryJobStore",
    "MemoryDeliveryAttemptStore",
]
