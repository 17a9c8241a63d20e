"""
LedgerSync

Bidirectional sync between the business database and Xero accounting:
contacts, invoices and payments, with field ownership rules, conflict
detection and manual resolution.
"""
__version__ = "1.0.0"
