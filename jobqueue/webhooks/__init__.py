"""
Webhook delivery: signed HTTP POSTs with an attempt audit trail.
"""

from jobqueue.webhooks.executor import WebhookDeliveryExecutor, WebhookPayload
from jobqueue.webhooks.signing import compute_signature, sign_payload, verify_signature

__all__ = [
    "WebhookDeliveryExecutor",
    "WebhookPayload",
    "compute_signature",
    "sign_payload",
    "verify_signature",
]
