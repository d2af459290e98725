"""
Approval Kernel

The persistence-backed core of the approval orchestration system:
- Per action-type approval configurations
- Approver seats with eligibility constraints
- Time-bounded delegation of approval authority
- Solicitation lifecycle with optimistic concurrency
- Append-only decision history
"""

__version__ = "0.1.0"
