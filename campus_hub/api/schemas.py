"""Wire schemas for the campus REST API.

The server speaks camelCase JSON wrapped in a ``{success, message, ...}``
envelope.  These pydantic models parse that shape, tolerate ``null`` for
any field with a default, and convert to the frozen domain dataclasses in
``campus_hub.models``.  ``UserPayload`` also runs the other way: the
persisted session record is written in the same camelCase shape the
server sends, so a stored user round-trips through the same parser.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from campus_hub.models.approval import PendingApproval, RejectionDetails
from campus_hub.models.event import Event
from campus_hub.models.organization import Organization, SocialMedia
from campus_hub.models.user import User


class _WirePayload(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # A null from the server means "use the default", not "invalid"
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ApiEnvelope(BaseModel):
    """``{success, message, data|events|organization|user, token}``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = False
    message: str | None = None
    data: Any = None
    events: Any = None
    organization: Any = None
    user: Any = None
    token: str | None = None
    pending_approvals: Any = Field(default=None, alias="pendingApprovals")

    def items(self, *keys: str) -> list[dict[str, Any]] | None:
        """First list-valued payload among ``keys``, falling back to ``data``."""
        for key in (*keys, "data"):
            value = getattr(self, key, None)
            if isinstance(value, list):
                return value
        return None


class SocialMediaPayload(_WirePayload):
    facebook: str | None = None
    instagram: str | None = None
    twitter: str | None = None


class OrganizationPayload(_WirePayload):
    id: int
    name: str = ""
    type: str = ""
    description: str = ""
    founded: str = ""
    president: str = ""
    email: str = ""
    website: str | None = None
    social_media: SocialMediaPayload = Field(
        default_factory=SocialMediaPayload, alias="socialMedia"
    )
    profile_image: str | None = Field(default=None, alias="profileImage")
    status: str = "active"
    followers: int = 0
    members: int = 0

    def to_model(self) -> Organization:
        return Organization(
            id=self.id,
            name=self.name,
            type=self.type,
            description=self.description,
            founded=self.founded,
            president=self.president,
            email=self.email,
            website=self.website,
            social_media=SocialMedia(**self.social_media.model_dump()),
            profile_image=self.profile_image,
            status=self.status,
            followers=max(0, self.followers),
            members=self.members,
        )


class EventPayload(_WirePayload):
    id: int
    title: str = ""
    date: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")
    org_id: int | None = Field(default=None, alias="orgId")
    org_name: str = Field(default="", alias="orgName")
    type: str = ""
    location: str = ""
    venue: str = ""
    description: str = ""
    organizer: str = ""
    media: list[str] = Field(default_factory=list)
    capacity: int = 0
    registered: int = 0
    participants: list[int] = Field(default_factory=list)
    status: str = "active"

    @field_validator("media", mode="before")
    @classmethod
    def _media_urls(cls, value: Any) -> Any:
        # Server sends [{type, url, filename}]; only the urls matter here
        if isinstance(value, list):
            return [m.get("url", "") if isinstance(m, dict) else m for m in value]
        return value

    def to_model(self) -> Event:
        return Event(
            id=self.id,
            title=self.title,
            date=self.date,
            start_time=self.start_time,
            end_time=self.end_time,
            org_id=self.org_id,
            org_name=self.org_name,
            type=self.type,
            location=self.location,
            venue=self.venue,
            description=self.description,
            organizer=self.organizer,
            media=tuple(url for url in self.media if url),
            capacity=self.capacity,
            registered=max(0, self.registered),
            participants=tuple(self.participants),
            status=self.status,
        )


class UserPayload(_WirePayload):
    id: int = 0
    object_id: str | None = Field(default=None, alias="_id")
    name: str = ""
    email: str = ""
    role: str = "student"
    status: str = "active"
    joined: str = ""
    followed_orgs: list[int] = Field(default_factory=list, alias="followedOrgs")
    joined_events: list[int] = Field(default_factory=list, alias="joinedEvents")
    faculty: str | None = None
    student_id: str | None = Field(default=None, alias="studentId")
    org_id: int | None = Field(default=None, alias="orgId")
    org_name: str | None = Field(default=None, alias="orgName")
    org_type: str | None = Field(default=None, alias="orgType")
    president: str | None = None
    bio: str | None = None
    interests: list[str] | None = None
    profile_image: str | None = Field(default=None, alias="profileImage")
    year_of_study: str | None = Field(default=None, alias="yearOfStudy")
    phone: str | None = None
    website: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _string_id_is_object_id(cls, data: Any) -> Any:
        # Some endpoints put the database object id in ``id``
        if isinstance(data, dict):
            raw_id = data.get("id")
            if isinstance(raw_id, str) and not raw_id.isdigit():
                data = {k: v for k, v in data.items() if k != "id"}
                data.setdefault("_id", raw_id)
        return data

    def to_model(self) -> User:
        return User(
            id=self.id,
            object_id=self.object_id,
            name=self.name,
            email=self.email,
            role=self.role,
            status=self.status,
            joined=self.joined,
            followed_orgs=tuple(self.followed_orgs),
            joined_events=tuple(self.joined_events),
            faculty=self.faculty,
            student_id=self.student_id,
            org_id=self.org_id,
            org_name=self.org_name,
            org_type=self.org_type,
            president=self.president,
            bio=self.bio,
            interests=tuple(self.interests) if self.interests is not None else None,
            profile_image=self.profile_image,
            year_of_study=self.year_of_study,
            phone=self.phone,
            website=self.website,
        )

    @classmethod
    def from_model(cls, user: User) -> UserPayload:
        return cls(
            id=user.id,
            object_id=user.object_id,
            name=user.name,
            email=user.email,
            role=user.role,
            status=user.status,
            joined=user.joined,
            followed_orgs=list(user.followed_orgs),
            joined_events=list(user.joined_events),
            faculty=user.faculty,
            student_id=user.student_id,
            org_id=user.org_id,
            org_name=user.org_name,
            org_type=user.org_type,
            president=user.president,
            bio=user.bio,
            interests=list(user.interests) if user.interests is not None else None,
            profile_image=user.profile_image,
            year_of_study=user.year_of_study,
            phone=user.phone,
            website=user.website,
        )


class RejectionDetailsPayload(_WirePayload):
    reason: str = ""
    allow_resubmission: bool = Field(default=False, alias="allowResubmission")
    resubmission_deadline: str | None = Field(
        default=None, alias="resubmissionDeadline"
    )


class PendingApprovalPayload(_WirePayload):
    id: int
    type: str = "organization"
    name: str = ""
    applicant: str = ""
    date: str = ""
    status: str = "pending"
    org_id: int | None = Field(default=None, alias="orgId")
    registration_data: dict[str, Any] = Field(
        default_factory=dict, alias="registrationData"
    )
    rejection_details: RejectionDetailsPayload | None = Field(
        default=None, alias="rejectionDetails"
    )

    def to_model(self) -> PendingApproval:
        details = self.rejection_details
        return PendingApproval(
            id=self.id,
            type=self.type,
            name=self.name,
            applicant=self.applicant,
            date=self.date,
            status=self.status,
            org_id=self.org_id,
            registration_data=dict(self.registration_data),
            rejection_details=(
                RejectionDetails(
                    reason=details.reason,
                    allow_resubmission=details.allow_resubmission,
                    resubmission_deadline=details.resubmission_deadline,
                )
                if details is not None
                else None
            ),
        )


def dump_user(user: User) -> dict[str, Any]:
    """camelCase dict for persistence and signals; ``None`` fields omitted."""
    return UserPayload.from_model(user).model_dump(by_alias=True, exclude_none=True)


def parse_user(data: dict[str, Any]) -> User:
    return UserPayload.model_validate(data).to_model()
