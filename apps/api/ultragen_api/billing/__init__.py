"""
Billing: Kiwify entitlement reconciliation, profiles store, delivery ledger.
"""
