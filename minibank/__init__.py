"""
Minibank

A minimal banking backend: accounts, token authentication and atomic
money transfers with ordered row locking.
"""

__version__ = "1.0.0"
