"""Webhook inbound system.

Receives Stripe checkout webhooks. Each delivery is signature-verified,
decoded into a typed event and reconciled against the order store.
"""
