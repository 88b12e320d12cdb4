import json
import os
from dataclasses import replace

from xraylink.errors import ValidationError
from xraylink.events import EventHub
from xraylink.log import get_logger
from xraylink.profile import ServerProfile
from xraylink.settings import write_json_atomic


class ProfileStore:
    """Ordered profile list with change notification.

    Events: ``inserted(row, profile)``, ``updated(row, profile)``,
    ``removed(row, profile)``, ``reset()``.
    """

    def __init__(self, profiles=None):
        self.events = EventHub()
        self._profiles = [p for p in (profiles or []) if p.is_valid()]

    def __len__(self):
        return len(self._profiles)

    def __iter__(self):
        return iter(list(self._profiles))

    @property
    def profiles(self):
        return list(self._profiles)

    def profile_at(self, row):
        if row < 0 or row >= len(self._profiles):
            return None
        return self._profiles[row]

    def index_of_id(self, profile_id):
        profile_id = str(profile_id or "").strip()
        if not profile_id:
            return -1
        for i, profile in enumerate(self._profiles):
            if profile.id == profile_id:
                return i
        return -1

    def find_equivalent(self, candidate):
        for i, existing in enumerate(self._profiles):
            same_endpoint = (
                existing.protocol.lower() == candidate.protocol.lower()
                and existing.address.lower() == candidate.address.lower()
                and existing.user_id.lower() == candidate.user_id.lower()
                and existing.port == candidate.port
            )
            if same_endpoint:
                return i
            if candidate.original_link and existing.original_link == candidate.original_link:
                return i
            if candidate.id and existing.id == candidate.id:
                return i
        return -1

    def add_profile(self, profile):
        if not profile.is_valid():
            return False

        existing = self.find_equivalent(profile)
        if existing >= 0:
            previous = self._profiles[existing]
            profile = replace(
                profile,
                id=previous.id or profile.id,
                ping_in_progress=previous.ping_in_progress,
                last_ping_ms=previous.last_ping_ms,
            )
            self._profiles[existing] = profile
            self.events.emit("updated", existing, profile)
            return True

        self._profiles.append(profile)
        self.events.emit("inserted", len(self._profiles) - 1, profile)
        return True

    def remove_at(self, row):
        if row < 0 or row >= len(self._profiles):
            return False
        profile = self._profiles.pop(row)
        self.events.emit("removed", row, profile)
        return True

    def set_profiles(self, profiles):
        self._profiles = [p for p in profiles if p.is_valid()]
        self.events.emit("reset")

    def set_pinging(self, row, pinging):
        profile = self.profile_at(row)
        if profile is None:
            return False
        if profile.ping_in_progress != bool(pinging):
            profile.ping_in_progress = bool(pinging)
            self.events.emit("updated", row, profile)
        return True

    def set_ping_result(self, row, ping_ms):
        profile = self.profile_at(row)
        if profile is None:
            return False
        normalized = int(ping_ms) if ping_ms is not None and ping_ms >= 0 else -1
        if profile.last_ping_ms == normalized and not profile.ping_in_progress:
            return True
        profile.last_ping_ms = normalized
        profile.ping_in_progress = False
        self.events.emit("updated", row, profile)
        return True

    # ===============================
    # PERSISTENCE
    # ===============================

    def load(self, path):
        """Replace the contents from a JSON array file; invalid entries are skipped."""
        logger = get_logger()
        if not os.path.exists(path):
            self.set_profiles([])
            return 0
        try:
            with open(path, "r", encoding="utf8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("[Profiles] Failed to load %s: %s", path, e)
            self.set_profiles([])
            return 0

        profiles = []
        for entry in data if isinstance(data, list) else []:
            try:
                profiles.append(ServerProfile.from_json(entry))
            except ValidationError as e:
                logger.warning("[Profiles] Skipped stored profile: %s", e)
        self.set_profiles(profiles)
        return len(profiles)

    def save(self, path):
        write_json_atomic(path, [p.to_json() for p in self._profiles])
