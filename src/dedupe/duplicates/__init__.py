"""Contact dedupe workflow -- run state machine, duplicate groups, merges and quota.

Provides SQLAlchemy models (ProcessRun, Contact, DuplicateGroup, MergeRecord,
Plan, PlanMergeUsage), Pydantic schemas, DedupeRepository for async CRUD,
the ProcessRunner that drives runs, the MergeResolver that applies merges to
the CRM, and the QuotaGate that enforces per-tenant plan limits.
"""
