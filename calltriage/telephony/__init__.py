"""
CallTriage - Telephony Integration Module

Boundary with the call platform and phone numbers.

Components:
- router: HTTP webhook endpoints
- models: Webhook payload normalization
- signature: Webhook authenticity checks
- privacy: Phone number masking and normalization

Phone numbers are masked in logs and never stored in cleartext outside the
tenant directory.
"""

from .privacy import mask_phone_number, normalize_phone_number
from .signature import WebhookVerifier, compute_signature

__all__ = [
    "WebhookVerifier",
    "compute_signature",
    "mask_phone_number",
    "normalize_phone_number",
]
