from __future__ import annotations

import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.schemas.deployments import Environment, utcnow


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


class ApprovalRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    approval_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    deployment_execution_id: uuid.UUID
    module_name: str
    module_version: str
    target_environment: Environment
    requester_email: str
    approver_emails: tuple[str, ...] = ()
    status: ApprovalStatus = ApprovalStatus.pending
    requested_at: datetime = Field(default_factory=utcnow)
    timeout_at: datetime
    responded_at: datetime | None = None
    responded_by_email: str | None = None
    response_reason: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalStatus.pending

    def is_timed_out(self, now: datetime | None = None) -> bool:
        return self.status == ApprovalStatus.pending and (now or utcnow()) >= self.timeout_at

    def is_authorized(self, approver_email: str) -> bool:
        if not self.approver_emails:
            return True
        wanted = approver_email.strip().lower()
        return any(email.strip().lower() == wanted for email in self.approver_emails)


class ApprovalDecisionRequest(BaseModel):
    approver_email: str = Field(min_length=3, max_length=254)
    reason: str | None = Field(default=None, max_length=2000)
