"""
Access Service package for the Facility Access Layer.

This package decides whether a user may pass a door of a tenant's
facility, records every attempt, and drives door hardware. It provides:

- app.main: API surface for access checks, door actions and audit logs.
- app.rules: Door/rule models, time windows and the access evaluator.
- app.audit: Append-only access log, export, statistics and detection.
- app.doors: Unlock/lock orchestration with proximity checks.
- app.persistence: Storage backends (in-memory, PostgreSQL).

Guidelines:
- Evaluation is read-only; only audit and door actions write.
- Every evaluation produces a verdict; collaborator failures deny.
- Keep decisions observable (metrics + logs + audit trace).
"""
