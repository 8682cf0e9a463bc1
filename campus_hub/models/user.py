from __future__ import annotations

from dataclasses import dataclass

# Callers hold either the numeric ``id`` or the string ``_id``.
UserRef = int | str


@dataclass(frozen=True, slots=True)
class User:
    id: int
    object_id: str | None = None  # ``_id`` on the wire
    name: str = ""
    email: str = ""
    role: str = "student"  # student|organization|admin
    status: str = "active"  # active|suspended|pending
    joined: str = ""
    followed_orgs: tuple[int, ...] = ()
    joined_events: tuple[int, ...] = ()  # secondary; may lag event participants
    faculty: str | None = None
    student_id: str | None = None
    # Organization accounts awaiting approval carry org-shaped fields
    org_id: int | None = None
    org_name: str | None = None
    org_type: str | None = None
    president: str | None = None
    # Presentation preferences cached client-side
    bio: str | None = None
    interests: tuple[str, ...] | None = None
    profile_image: str | None = None
    year_of_study: str | None = None
    phone: str | None = None
    website: str | None = None

    @property
    def refs(self) -> tuple[str, ...]:
        """Every string form this user can be referred to by."""
        if self.object_id:
            return (self.object_id, str(self.id))
        return (str(self.id),)

    def matches(self, ref: UserRef) -> bool:
        return str(ref) in self.refs
