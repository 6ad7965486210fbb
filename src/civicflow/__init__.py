"""Workflow orchestration for AI-assisted civic complaint processing.

This package drives citizen-submitted issues through a configurable
sequence of agent steps:
- Issue intake and tracking identifiers
- Domain classification and priority scoring
- Duplicate detection via composite similarity
- Emerging-issue insights over persisted issues
- Append-only audit trail with crash-consistent resumption
"""
