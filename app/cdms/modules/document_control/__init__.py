"""
Document Control module.

- Controlled documents move draft -> in_review -> approved only through approval workflows
- Every upload creates a new immutable version; version numbers are never reused
- Meaningful actions are recorded to the append-only audit trail
"""
