"""Workflow state and persistence.

- models: WorkflowStatus, StepState, WorkflowState and VALID_TRANSITIONS
- machine: WorkflowStore protocol, record application and audit replay
- memory: In-memory WorkflowStore
- repository: PostgreSQL WorkflowStore (asyncpg)

State changes only by applying audit records, so replaying a workflow's
trail reconstructs its state exactly.
"""
