"""Emergency contact directory and availability resolution."""
import json
import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pytz

from careline.shared.models import (
    AlertSeverity,
    AvailabilityWindow,
    ContactAvailability,
    EmergencyContact,
)
from careline.shared.utils import hash_pii

logger = logging.getLogger(__name__)

_MINUTES_PER_DAY = 24 * 60


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _window_contains(window: AvailabilityWindow, day_of_week: int, minute: int) -> bool:
    start, end = _minutes(window.start), _minutes(window.end)
    if end > start:
        return day_of_week == window.day_of_week and start <= minute < end

    # wraps past midnight into the next day
    if day_of_week == window.day_of_week and minute >= start:
        return True
    return day_of_week == (window.day_of_week + 1) % 7 and minute < end


class ContactAvailabilityResolver:
    """Decides whether a contact can be notified at a given moment."""

    def resolve(self, contact: EmergencyContact, at: datetime) -> ContactAvailability:
        """Availability of `contact` at `at` (naive UTC or tz-aware)."""
        availability = contact.availability
        if availability.always_available:
            return ContactAvailability.AVAILABLE

        local = self._to_local(contact, at)
        # 0=Sunday .. 6=Saturday
        day_of_week = (local.weekday() + 1) % 7
        minute = local.hour * 60 + local.minute

        if any(_window_contains(w, day_of_week, minute) for w in availability.schedule):
            return ContactAvailability.AVAILABLE
        if availability.emergency_only:
            return ContactAvailability.EMERGENCY_ONLY
        return ContactAvailability.UNAVAILABLE

    def is_eligible(
        self,
        contact: EmergencyContact,
        at: datetime,
        severity: AlertSeverity,
    ) -> bool:
        """Emergency-only contacts are eligible only for urgent alerts."""
        state = self.resolve(contact, at)
        if state == ContactAvailability.AVAILABLE:
            return True
        return state == ContactAvailability.EMERGENCY_ONLY and severity.is_urgent

    @staticmethod
    def _to_local(contact: EmergencyContact, at: datetime) -> datetime:
        if at.tzinfo is None:
            at = pytz.utc.localize(at)
        try:
            zone = pytz.timezone(contact.availability.timezone)
        except pytz.UnknownTimeZoneError:
            logger.warning(
                "CONTACT_TIMEZONE_INVALID",
                extra={
                    "contact_id_hash": hash_pii(contact.id),
                    "timezone": contact.availability.timezone,
                    "fallback": "UTC",
                }
            )
            zone = pytz.utc
        return at.astimezone(zone)


class ContactDirectory:
    """Thread-safe in-memory registry of emergency contacts per user."""

    def __init__(self, contacts: Iterable[EmergencyContact] = ()):
        self._lock = threading.Lock()
        self._contacts: Dict[str, EmergencyContact] = {}
        for contact in contacts:
            self.add(contact)

    @classmethod
    def from_file(cls, path: str) -> "ContactDirectory":
        """Load contacts from a JSON list of contact records."""
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        directory = cls(EmergencyContact.from_dict(r) for r in records)
        logger.info(
            "CONTACT_DIRECTORY_LOADED",
            extra={"path": path, "contact_count": len(directory)}
        )
        return directory

    def __len__(self) -> int:
        with self._lock:
            return len(self._contacts)

    def add(self, contact: EmergencyContact) -> None:
        """Add or replace a contact."""
        with self._lock:
            self._contacts[contact.id] = contact

    def remove(self, contact_id: str) -> Optional[EmergencyContact]:
        with self._lock:
            return self._contacts.pop(contact_id, None)

    def get(self, contact_id: str) -> Optional[EmergencyContact]:
        with self._lock:
            return self._contacts.get(contact_id)

    def contacts_for(self, user_id: str) -> List[EmergencyContact]:
        """A user's contacts in escalation priority order."""
        with self._lock:
            contacts = [c for c in self._contacts.values() if c.user_id == user_id]
        return sorted(contacts, key=lambda c: (c.priority, c.id))
