import logging
from typing import Dict, Iterable, List, Mapping, Optional

from common.config import (
    DEFAULT_COOLDOWN_MS,
    DEVICE_COOLDOWNS_MS,
    INTENSITY_COOLDOWN_KEY,
    INTENSITY_COOLDOWN_MS,
    RATE_LIMIT_COOLDOWN_MS,
    VENDOR_COOLDOWN_KEY,
    VENDOR_COOLDOWN_MS,
)
from common.models import Action, CooldownEntry


class CooldownStore:
    """
    Last-invocation bookkeeping per cooldown key.

    One store belongs to one controller instance and lives as long as it does.
    Create it empty (or seed it in tests), hand it to `execute()`, and call
    `clear()` to drop all state. Only the executor records into it.
    """

    def __init__(
        self,
        device_cooldowns_ms: Optional[Mapping[str, int]] = None,
        default_ms: int = DEFAULT_COOLDOWN_MS,
        intensity_ms: int = INTENSITY_COOLDOWN_MS,
        extended_ms: int = RATE_LIMIT_COOLDOWN_MS,
        vendor_ms: int = VENDOR_COOLDOWN_MS,
    ):
        self._logger = logging.getLogger("CooldownStore")
        self._entries: Dict[str, CooldownEntry] = {}
        self.device_cooldowns_ms = dict(device_cooldowns_ms or DEVICE_COOLDOWNS_MS)
        self.default_ms = default_ms
        self.intensity_ms = intensity_ms
        self.extended_ms = extended_ms
        self.vendor_ms = vendor_ms

    @staticmethod
    def key_for(action: Action) -> str:
        return action.key

    def base_duration_ms(self, key: str) -> int:
        if key == INTENSITY_COOLDOWN_KEY:
            return self.intensity_ms
        if key == VENDOR_COOLDOWN_KEY:
            return self.vendor_ms
        for device, duration in self.device_cooldowns_ms.items():
            if key.startswith(f"{device}_"):
                return duration
        return self.default_ms

    def get(self, key: str) -> Optional[CooldownEntry]:
        return self._entries.get(key)

    def is_active(self, key: str, now: float) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_active(now)

    def remaining_s(self, key: str, now: float) -> float:
        entry = self._entries.get(key)
        if entry is None:
            return 0.0
        return max(0.0, entry.expires_at() - now)

    def record(self, key: str, now: float, duration_ms: Optional[int] = None) -> CooldownEntry:
        """
        Start a new cooldown window for `key` at `now`.

        An active window that ends later than the new one is kept, so an
        extended (rate-limit) cooldown is never shortened by a base record.
        """
        if duration_ms is None:
            duration_ms = self.base_duration_ms(key)
        entry = CooldownEntry(key=key, last_invoked_at=now, duration_ms=int(duration_ms))

        existing = self._entries.get(key)
        if existing is not None and existing.is_active(now) and existing.expires_at() > entry.expires_at():
            return existing

        self._entries[key] = entry
        return entry

    def extend(self, key: str, now: float) -> CooldownEntry:
        entry = self.record(key, now, self.extended_ms)
        self._logger.warning(f"Extended cooldown for {key} to {entry.duration_ms / 1000:.0f}s")
        return entry

    def seed(self, entries: Iterable[CooldownEntry]) -> None:
        for entry in entries:
            self._entries[entry.key] = entry

    def entries(self) -> List[CooldownEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
