"""
Event Request Workflow Module

This module provides the event request approval workflow including:
- Request lifecycle state machine with legacy status normalization
- Per-actor action resolution (relationship, claim, RBAC, turn gating)
- Broadcast claim leases with atomic acquisition
- Reschedule negotiation tracking
- Document stores (in-memory and PostgreSQL) with optimistic concurrency
"""

__version__ = "1.0.0"
