"""
Account Compliance Core

Business account management with per-field encryption at rest,
an immutable audit trail, role- and grant-based access control and
a cycle-free account relationship graph.
"""

__version__ = "1.0.0"
