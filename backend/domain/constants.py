"""
Domain constants used across services/routers.
"""

# Payment references look like ORDER-<order id>-<ns timestamp>-<random hex>
REFERENCE_PREFIX = "ORDER"
REFERENCE_RANDOM_BYTES = 8

PAYMENT_METHOD_PAYSTACK = "paystack"

# Webhook events that carry a charge verdict
EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_CHARGE_FAILED = "charge.failed"

# Paystack payment channels we recognise as a payment_method
KNOWN_CHANNELS = ("card", "bank", "ussd", "qr", "mobile_money", "bank_transfer")
