"""
Core modules for the usage ledger.

This package contains pricing, usage record compilation, report
generation, ledger reconciliation and billing queries.
"""
