"""
conflictkeys: conflicting keys reporting workload

A randomized two-transaction workload that checks a transactional
key-value store reports exactly the key ranges that caused a conflict.
"""

__version__ = "0.1.0"
