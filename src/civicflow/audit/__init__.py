"""Append-only audit trail.

- models: ProcessingStepRecord, RecordKind and OverrideRequest
- log: ExecutionLog, the read and append facade over a WorkflowStore
"""
