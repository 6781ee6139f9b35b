from orchestrator.models.audit_event import AuditCategory, AuditEvent  # noqa: F401
