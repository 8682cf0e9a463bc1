from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class SocialMedia:
    facebook: str | None = None
    instagram: str | None = None
    twitter: str | None = None


@dataclass(frozen=True, slots=True)
class Organization:
    id: int
    name: str
    type: str = ""
    description: str = ""
    founded: str = ""
    president: str = ""
    email: str = ""
    website: str | None = None
    social_media: SocialMedia = field(default_factory=SocialMedia)
    profile_image: str | None = None
    status: str = "active"  # pending|active|suspended|rejected
    followers: int = 0  # denormalized; reconciled on reload
    members: int = 0  # self-reported by the organization
