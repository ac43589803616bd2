import math

from tictactoe.core.config import get_settings

# cap on xp granted by a single award
MAX_XP_GAIN = 10_000


def xp_required_for_level(level: int) -> int:
    """XP needed to go from `level` to `level + 1`."""
    settings = get_settings()
    return math.floor(settings.leveling_base_xp * settings.leveling_multiplier ** (max(1, level) - 1))


def level_for_xp(xp: int) -> int:
    max_level = get_settings().leveling_max_level
    remaining = max(0, int(xp))
    level = 1
    required = xp_required_for_level(level)
    while required <= remaining and level < max_level:
        remaining -= required
        level += 1
        required = xp_required_for_level(level)
    return level


def xp_progress(xp: int) -> dict:
    total = max(0, int(xp))
    level = level_for_xp(total)
    spent = sum(xp_required_for_level(step) for step in range(1, level))
    return {
        "level": level,
        "xp": total,
        "xp_into_level": total - spent,
        "xp_for_next_level": xp_required_for_level(level),
        "is_max_level": level >= get_settings().leveling_max_level,
    }


def xp_for_outcome(outcome: str) -> int:
    """outcome: win, draw, loss or forfeit (the forfeiting player)."""
    settings = get_settings()
    awards = {
        "win": settings.xp_per_win,
        "draw": settings.xp_per_draw,
        "loss": settings.xp_per_loss,
        "forfeit": 0,
    }
    if outcome not in awards:
        raise ValueError(f"Unknown outcome: {outcome}")
    return awards[outcome]


def add_xp(user, amount: int) -> int:
    """Add xp to a user row and recompute its level; returns the new level."""
    if amount < 0:
        raise ValueError("XP amount must be positive")
    user.xp = max(0, (user.xp or 0) + min(amount, MAX_XP_GAIN))
    user.level = level_for_xp(user.xp)
    return user.level
