"""HTTP transport for the billing engine."""
