"""Orders: models, persistence, reconciliation and the confirmation read path."""
