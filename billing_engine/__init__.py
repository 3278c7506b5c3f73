"""Subscription billing reconciliation engine.

Turns the payment provider's asynchronous event stream into a consistent,
locally-owned record of customers, subscriptions, invoices, and license
keys, and converges that record with the provider through periodic
reconciliation.
"""

__version__ = "0.4.0"
