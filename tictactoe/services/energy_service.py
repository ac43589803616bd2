from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tictactoe.core.config import get_settings
from tictactoe.db.models import User


@dataclass
class EnergyStatus:
    current: int
    maximum: int
    next_regen_at: datetime | None
    seconds_until_next: int
    can_play: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _regen_interval() -> timedelta:
    return timedelta(minutes=get_settings().energy_regen_minutes)


def _regenerated(energy: int, max_energy: int, updated_at: datetime | None, now: datetime) -> tuple[int, int]:
    """Returns (energy after regeneration, whole intervals elapsed)."""
    if updated_at is None:
        return max_energy, 0
    elapsed = (now - _as_aware(updated_at)).total_seconds()
    if elapsed <= 0:
        return min(energy, max_energy), 0
    intervals = int(elapsed // _regen_interval().total_seconds())
    return min(max_energy, energy + intervals), intervals


def compute_energy_status(
    energy: int,
    max_energy: int,
    updated_at: datetime | None,
    now: datetime | None = None,
) -> EnergyStatus:
    now = now or _utc_now()
    current, intervals = _regenerated(energy, max_energy, updated_at, now)
    per_game = get_settings().energy_per_game
    if current >= max_energy or updated_at is None:
        return EnergyStatus(current, max_energy, None, 0, current >= per_game)

    next_regen_at = _as_aware(updated_at) + _regen_interval() * (intervals + 1)
    seconds_until_next = max(0, int((next_regen_at - now).total_seconds()))
    return EnergyStatus(current, max_energy, next_regen_at, seconds_until_next, current >= per_game)


def refresh_energy(user: User, now: datetime | None = None) -> EnergyStatus:
    now = now or _utc_now()
    current, intervals = _regenerated(user.energy, user.max_energy, user.energy_updated_at, now)
    if current >= user.max_energy or user.energy_updated_at is None:
        user.energy = user.max_energy
        user.energy_updated_at = now
    elif intervals > 0:
        user.energy = current
        # keep the partial interval counting
        user.energy_updated_at = _as_aware(user.energy_updated_at) + _regen_interval() * intervals
    return compute_energy_status(user.energy, user.max_energy, user.energy_updated_at, now)


def consume_energy(user: User, amount: int | None = None, now: datetime | None = None) -> EnergyStatus:
    now = now or _utc_now()
    cost = get_settings().energy_per_game if amount is None else amount
    refresh_energy(user, now)
    if user.energy < cost:
        raise ValueError("Insufficient energy")
    was_full = user.energy >= user.max_energy
    user.energy -= cost
    if was_full:
        # regeneration starts counting from the first spend
        user.energy_updated_at = now
    return compute_energy_status(user.energy, user.max_energy, user.energy_updated_at, now)


def ensure_can_play(user: User, now: datetime | None = None) -> EnergyStatus:
    status = refresh_energy(user, now)
    if not status.can_play:
        raise ValueError("Insufficient energy")
    return status


def set_energy(user: User, energy: int, now: datetime | None = None) -> EnergyStatus:
    now = now or _utc_now()
    user.energy = max(0, min(int(energy), user.max_energy))
    user.energy_updated_at = now
    return compute_energy_status(user.energy, user.max_energy, user.energy_updated_at, now)
