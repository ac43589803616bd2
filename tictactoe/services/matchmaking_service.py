from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import secrets
import threading
import time

from tictactoe.core.config import get_settings

logger = logging.getLogger(__name__)

GAME_MODES = ("classic", "blitz", "ranked", "custom")
MAX_RATING = 3000
# fixed wait estimates, seconds
EMPTY_QUEUE_WAIT_SECONDS = 60
COMPATIBLE_WAIT_SECONDS = 5
BASE_WAIT_SECONDS = 10
WAIT_SECONDS_PER_LEVEL = 2


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_room_id() -> str:
    return f"room_{int(time.time() * 1000):x}_{secrets.token_hex(6)}"


@dataclass
class QueueEntry:
    user_id: str
    username: str
    level: int
    rating: int | None = None
    game_mode: str = "classic"
    socket_id: str | None = None
    joined_at: datetime = field(default_factory=_utc_now)

    def waited_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.joined_at).total_seconds())


@dataclass
class MatchResult:
    player1: QueueEntry
    player2: QueueEntry
    room_id: str
    quality: float


class MatchmakingService:
    def __init__(self, clock=_utc_now) -> None:
        self._queue: dict[str, QueueEntry] = {}
        self._action_history: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def _tolerance(self) -> int:
        return get_settings().matchmaking_level_tolerance

    @property
    def _max_wait(self) -> int:
        return get_settings().matchmaking_max_wait_seconds

    def reset(self) -> None:
        with self._lock:
            self._queue.clear()
            self._action_history.clear()

    def _is_rate_limited_locked(self, user_id: str) -> bool:
        now_epoch = self._clock().timestamp()
        recent = [stamp for stamp in self._action_history.get(user_id, []) if now_epoch - stamp < 60]
        if len(recent) >= get_settings().matchmaking_actions_per_minute:
            self._action_history[user_id] = recent
            return True
        recent.append(now_epoch)
        self._action_history[user_id] = recent
        return False

    def join(
        self,
        user_id: str,
        username: str,
        level: int,
        *,
        rating: int | None = None,
        game_mode: str = "classic",
        socket_id: str | None = None,
    ) -> QueueEntry:
        if not user_id:
            raise ValueError("Player must have a valid user id")
        if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 100:
            raise ValueError("Player level must be between 1 and 100")
        if rating is not None and not 0 <= rating <= MAX_RATING:
            raise ValueError(f"Player rating must be between 0 and {MAX_RATING}")
        if game_mode not in GAME_MODES:
            raise ValueError(f"Unknown game mode: {game_mode}")

        with self._lock:
            if self._is_rate_limited_locked(user_id):
                raise ValueError("Too many queue actions. Please wait a moment.")
            if user_id in self._queue:
                raise ValueError("Player already in queue")
            entry = QueueEntry(
                user_id=user_id,
                username=username.strip(),
                level=level,
                rating=rating,
                game_mode=game_mode,
                socket_id=socket_id,
                joined_at=self._clock(),
            )
            self._queue[user_id] = entry
        logger.debug("Player %s joined the matchmaking queue", username)
        return entry

    def leave(self, user_id: str) -> QueueEntry | None:
        with self._lock:
            return self._queue.pop(user_id, None)

    def is_queued(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._queue

    def get_entry(self, user_id: str) -> QueueEntry | None:
        with self._lock:
            return self._queue.get(user_id)

    def entries(self) -> list[QueueEntry]:
        with self._lock:
            return sorted(self._queue.values(), key=lambda entry: entry.joined_at)

    def position(self, user_id: str) -> int | None:
        ordered = self.entries()
        for index, entry in enumerate(ordered, start=1):
            if entry.user_id == user_id:
                return index
        return None

    def match_score(self, a: QueueEntry, b: QueueEntry, now: datetime | None = None) -> float:
        now = now or self._clock()
        level_diff = abs(a.level - b.level)
        score = max(0.0, 0.5 - (level_diff / self._tolerance) * 0.5)

        average_wait = (a.waited_seconds(now) + b.waited_seconds(now)) / 2
        score += min(0.3, (average_wait / self._max_wait) * 0.3)

        if a.rating and b.rating:
            rating_diff = abs(a.rating - b.rating)
            score += max(0.0, 0.2 - (rating_diff / 500) * 0.2)
        return min(1.0, score)

    def is_acceptable(self, seeker: QueueEntry, opponent: QueueEntry, now: datetime | None = None) -> bool:
        now = now or self._clock()
        level_diff = abs(seeker.level - opponent.level)
        if seeker.waited_seconds(now) > self._max_wait:
            return level_diff <= self._tolerance * 2
        return level_diff <= self._tolerance

    def _find_match_locked(self, user_id: str, now: datetime) -> MatchResult | None:
        seeker = self._queue.get(user_id)
        if seeker is None:
            return None

        best: QueueEntry | None = None
        best_score = -1.0
        for candidate in sorted(self._queue.values(), key=lambda entry: entry.joined_at):
            if candidate.user_id == user_id or candidate.game_mode != seeker.game_mode:
                continue
            if not self.is_acceptable(seeker, candidate, now):
                continue
            score = self.match_score(seeker, candidate, now)
            if score > best_score:
                best, best_score = candidate, score

        if best is None:
            return None
        self._queue.pop(seeker.user_id, None)
        self._queue.pop(best.user_id, None)
        return MatchResult(player1=seeker, player2=best, room_id=generate_room_id(), quality=best_score)

    def find_match(self, user_id: str) -> MatchResult | None:
        with self._lock:
            match = self._find_match_locked(user_id, self._clock())
        if match:
            logger.info(
                "Matched %s with %s (quality %.2f)",
                match.player1.username,
                match.player2.username,
                match.quality,
            )
        return match

    def run_pairing(self) -> list[MatchResult]:
        matches: list[MatchResult] = []
        with self._lock:
            now = self._clock()
            for entry in sorted(self._queue.values(), key=lambda item: item.joined_at):
                if entry.user_id not in self._queue:
                    continue
                match = self._find_match_locked(entry.user_id, now)
                if match:
                    matches.append(match)
        return matches

    def estimated_wait_seconds(self, entry: QueueEntry) -> int:
        others = [item for item in self.entries() if item.user_id != entry.user_id]
        if not others:
            return EMPTY_QUEUE_WAIT_SECONDS
        if any(abs(item.level - entry.level) <= self._tolerance for item in others):
            return COMPATIBLE_WAIT_SECONDS
        average_level = sum(item.level for item in others) / len(others)
        level_diff = abs(entry.level - average_level)
        return int(min(self._max_wait, BASE_WAIT_SECONDS + level_diff * WAIT_SECONDS_PER_LEVEL))

    def stats(self) -> dict:
        entries = self.entries()
        now = self._clock()
        total = len(entries)
        average_wait = sum(entry.waited_seconds(now) for entry in entries) / total if total else 0.0
        return {
            "total_players": total,
            "average_wait_seconds": round(average_wait, 2),
            "level_distribution": dict(Counter(entry.level for entry in entries)),
            "modes": dict(Counter(entry.game_mode for entry in entries)),
        }

    def cleanup(self, max_age_seconds: int | None = None) -> list[QueueEntry]:
        max_age = max_age_seconds
        if max_age is None:
            max_age = get_settings().matchmaking_entry_max_age_seconds
        with self._lock:
            now = self._clock()
            stale = [entry for entry in self._queue.values() if entry.waited_seconds(now) > max_age]
            for entry in stale:
                self._queue.pop(entry.user_id, None)
        if stale:
            logger.info("Removed %d stale matchmaking entries", len(stale))
        return stale

    def force_match(self, first_user_id: str, second_user_id: str) -> MatchResult | None:
        with self._lock:
            first = self._queue.get(first_user_id)
            second = self._queue.get(second_user_id)
            if first is None or second is None or first_user_id == second_user_id:
                return None
            self._queue.pop(first_user_id, None)
            self._queue.pop(second_user_id, None)
        return MatchResult(player1=first, player2=second, room_id=generate_room_id(), quality=1.0)


matchmaking_service = MatchmakingService()
