"""Storefront order fulfillment: Stripe checkout webhooks -> Printful orders."""
