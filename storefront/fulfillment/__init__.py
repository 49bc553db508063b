"""Dropship fulfillment providers."""
