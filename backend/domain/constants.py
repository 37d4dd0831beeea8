"""
Domain constants used across services/routers.
"""

# Webhook / confirmation wire format
WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"
WEBHOOK_EVENT_CAPTURED = "payment.captured"
WEBHOOK_EVENT_FAILED = "payment.failed"
CONFIRMATION_SEPARATOR = "|"

# Gateway provider tag stored on Payment rows
PAYMENT_PROVIDER = "RAZORPAY"

# Timeline actor used for checkout, reconciliation and sweeps
SYSTEM_ACTOR = "SYSTEM"

# Short delay applied when the notifications limiter holds a job back
RATE_LIMITED_RETRY_MS = 5_000
