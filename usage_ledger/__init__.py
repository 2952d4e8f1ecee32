"""
Usage Ledger.

Turns workspace instance runtime into credit usage entries, keeps draft
ledger entries in line with live instances, and serves billing queries.
"""
