"""Operator CLI for the billing engine."""
