from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class RejectionDetails:
    reason: str
    allow_resubmission: bool = False
    resubmission_deadline: str | None = None


@dataclass(frozen=True, slots=True)
class PendingApproval:
    id: int
    type: str  # organization|student
    name: str = ""
    applicant: str = ""
    date: str = ""
    status: str = "pending"  # pending|approved|rejected|suspended
    org_id: int | None = None
    registration_data: Mapping[str, Any] = field(default_factory=dict)
    rejection_details: RejectionDetails | None = None
