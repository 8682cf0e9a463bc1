from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Event:
    id: int
    title: str
    date: str  # YYYY-MM-DD, local wall clock
    start_time: str  # HH:MM[:SS]
    end_time: str
    org_id: int | None = None
    org_name: str = ""
    type: str = ""
    location: str = ""
    venue: str = ""
    description: str = ""
    organizer: str = ""
    media: tuple[str, ...] = ()  # uploaded image/video urls
    capacity: int = 0
    registered: int = 0  # denormalized; mirrors len(participants)
    participants: tuple[int, ...] = ()  # numeric user ids, authoritative
    status: str = "active"  # draft|active|cancelled|completed

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participants
