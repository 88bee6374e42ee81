"""
cmdgate - Rate Limiting

Per-client sliding-window throttling (burst and sustained windows) with
anomaly detection. Clients that look automated or abusive are blocked for
a configured duration; blocks expire on their own.
"""

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..core.config import RateLimitConfig

logger = logging.getLogger(__name__)

CLIENT_BLOCKED = "CLIENT_BLOCKED"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
BURST_LIMIT_EXCEEDED = "BURST_LIMIT_EXCEEDED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

WINDOW_CLEANUP_INTERVAL_S = 60
BLOCK_CLEANUP_INTERVAL_S = 300
TRACKER_CLEANUP_INTERVAL_S = 600


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None
    reset_time: Optional[float] = None
    retry_after: Optional[float] = None
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass
class BlockRecord:
    """Active block on a client."""
    block_end_time: float
    reason: str
    blocked_at: float


@dataclass
class AnomalyTracker:
    """Per-client behavioural counters."""
    last_request: Optional[float] = None
    last_seen: float = 0.0
    rapid_fire_count: int = 0
    error_count: int = 0
    recent_commands: Deque[Tuple[str, float]] = field(default_factory=deque)
    command_log: Deque[Tuple[str, float]] = field(default_factory=deque)

    def command_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for command_type, _ in self.command_log:
            counts[command_type] = counts.get(command_type, 0) + 1
        return counts


def _command_key(command_type: str, metadata: Dict[str, Any]) -> str:
    return f"{command_type}_{json.dumps(metadata, sort_keys=True, default=str)}"


class RateLimiter:
    """
    Sliding-window rate limiter with anomaly blocking.

    All times are tracked in milliseconds derived from ``clock``, which
    returns seconds and defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock or time.monotonic

        self._windows: Dict[str, Deque[float]] = {}
        self._blocked: Dict[str, BlockRecord] = {}
        self._trackers: Dict[str, AnomalyTracker] = {}

        self._cleanup_tasks: List[asyncio.Task] = []

        self._stats = {
            "total_requests": 0,
            "allowed": 0,
            "denied": 0,
            "blocks_issued": 0,
        }

    def _now(self) -> float:
        return self._clock() * 1000.0

    def is_allowed(
        self,
        client_id: str,
        command_type: str = "default",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RateLimitResult:
        """
        Check whether a request from a client may proceed.

        Checks, in order: active block, anomaly detection, burst window,
        sustained window. Allowed requests are recorded.

        Args:
            client_id: Client identifier
            command_type: Request type used for anomaly analysis
            metadata: Request metadata used for repetition analysis

        Returns:
            RateLimitResult
        """
        metadata = metadata or {}
        now = self._now()
        self._stats["total_requests"] += 1

        if self._is_blocked(client_id, now):
            block = self._blocked[client_id]
            return self._deny(
                CLIENT_BLOCKED,
                retry_after=max(0.0, block.block_end_time - now),
                message=f"Client is blocked: {block.reason}",
                metadata={"block_reason": block.reason},
            )

        anomaly = self._detect_anomaly(client_id, command_type, metadata, now)
        if anomaly:
            self.block_client(client_id, anomaly)
            return self._deny(
                SUSPICIOUS_ACTIVITY,
                retry_after=float(self.config.block_duration_ms),
                message=f"Suspicious activity detected: {anomaly}",
                metadata={"pattern": anomaly},
            )

        window = self._windows.get(client_id, deque())

        burst_count = sum(1 for ts in window if now - ts < self.config.burst_window_ms)
        if burst_count >= self.config.burst_limit:
            return self._deny(
                BURST_LIMIT_EXCEEDED,
                retry_after=float(self.config.burst_window_ms),
                message=(
                    f"Burst limit of {self.config.burst_limit} requests per "
                    f"{self.config.burst_window_ms}ms exceeded"
                ),
                metadata={
                    "burst_limit": self.config.burst_limit,
                    "window": self.config.burst_window_ms,
                },
            )

        sustained_count = sum(1 for ts in window if now - ts < self.config.window_ms)
        if sustained_count >= self.config.max_requests:
            reset_time = self._reset_time(client_id, now)
            return self._deny(
                RATE_LIMIT_EXCEEDED,
                retry_after=max(1000.0, reset_time - now),
                message=(
                    f"Rate limit of {self.config.max_requests} requests per "
                    f"{self.config.window_ms}ms exceeded"
                ),
                metadata={
                    "rate_limit": self.config.max_requests,
                    "window": self.config.window_ms,
                },
            )

        self._record(client_id, now)
        self._stats["allowed"] += 1

        return RateLimitResult(
            allowed=True,
            remaining=self._remaining(client_id, now),
            reset_time=self._reset_time(client_id, now),
            metadata={
                "rate_limit": self.config.max_requests,
                "window": self.config.window_ms,
            },
        )

    def _deny(self, reason: str, **kwargs) -> RateLimitResult:
        self._stats["denied"] += 1
        return RateLimitResult(allowed=False, reason=reason, remaining=0, **kwargs)

    def _detect_anomaly(
        self,
        client_id: str,
        command_type: str,
        metadata: Dict[str, Any],
        now: float,
    ) -> Optional[str]:
        """Return the name of the first anomaly rule crossed, if any."""
        if not self.config.enable_anomaly_detection:
            return None

        tracker = self._trackers.setdefault(client_id, AnomalyTracker())
        tracker.last_seen = now

        # Rapid fire
        if (
            tracker.last_request is not None
            and now - tracker.last_request < self.config.rapid_fire_interval_ms
        ):
            tracker.rapid_fire_count += 1
            if tracker.rapid_fire_count > self.config.rapid_fire_limit:
                return "rapid_fire"
        else:
            tracker.rapid_fire_count = 0

        # Identical commands in succession
        key = _command_key(command_type, metadata)
        tracker.recent_commands.append((key, now))
        while (
            tracker.recent_commands
            and now - tracker.recent_commands[0][1] >= self.config.identical_command_window_ms
        ):
            tracker.recent_commands.popleft()
        identical = sum(1 for k, _ in tracker.recent_commands if k == key)
        if identical > self.config.identical_command_limit:
            return "identical_commands"

        # Error rate
        if metadata.get("is_error"):
            tracker.error_count += 1
            if tracker.error_count > self.config.error_limit:
                return "error_rate"

        # Command type distribution over the sustained window
        tracker.command_log.append((command_type, now))
        while tracker.command_log and now - tracker.command_log[0][1] >= self.config.window_ms:
            tracker.command_log.popleft()
        if len(tracker.command_log) > self.config.suspicious_threshold:
            return "command_volume"

        tracker.last_request = now
        return None

    def _record(self, client_id: str, now: float) -> None:
        window = self._windows.setdefault(client_id, deque())
        window.append(now)
        horizon = max(self.config.window_ms, self.config.burst_window_ms)
        while window and now - window[0] >= horizon:
            window.popleft()

    def _is_blocked(self, client_id: str, now: float) -> bool:
        block = self._blocked.get(client_id)
        if block is None:
            return False
        if now >= block.block_end_time:
            del self._blocked[client_id]
            logger.info(f"Block expired for client {client_id}")
            return False
        return True

    def _remaining(self, client_id: str, now: float) -> int:
        window = self._windows.get(client_id, ())
        used = sum(1 for ts in window if now - ts < self.config.window_ms)
        return max(0, self.config.max_requests - used)

    def _reset_time(self, client_id: str, now: float) -> float:
        window = self._windows.get(client_id)
        if not window:
            return now
        return window[0] + self.config.window_ms

    def block_client(self, client_id: str, reason: str) -> None:
        """Block a client for the configured duration."""
        now = self._now()
        self._blocked[client_id] = BlockRecord(
            block_end_time=now + self.config.block_duration_ms,
            reason=reason,
            blocked_at=now,
        )
        self._stats["blocks_issued"] += 1
        logger.warning(
            f"Client {client_id} blocked for {self.config.block_duration_ms}ms: {reason}"
        )

    def unblock_client(self, client_id: str) -> bool:
        """Lift a block early. Returns True if a block existed."""
        if self._blocked.pop(client_id, None) is not None:
            logger.info(f"Client {client_id} unblocked")
            return True
        return False

    def reset_client(self, client_id: str) -> None:
        """Forget all state for a client."""
        self._windows.pop(client_id, None)
        self._blocked.pop(client_id, None)
        self._trackers.pop(client_id, None)

    def get_client_status(self, client_id: str) -> Dict[str, Any]:
        """Get current limiter state for one client."""
        now = self._now()
        blocked = self._is_blocked(client_id, now)
        block = self._blocked.get(client_id)
        tracker = self._trackers.get(client_id)
        return {
            "client_id": client_id,
            "blocked": blocked,
            "block_reason": block.reason if block else None,
            "block_remaining_ms": max(0.0, block.block_end_time - now) if block else 0.0,
            "remaining": self._remaining(client_id, now),
            "reset_time": self._reset_time(client_id, now),
            "command_counts": tracker.command_counts() if tracker else {},
            "error_count": tracker.error_count if tracker else 0,
        }

    def cleanup(self) -> Dict[str, int]:
        """
        Prune stale state.

        Drops empty windows, expired blocks and anomaly trackers that have
        been idle longer than the inactivity limit.

        Returns:
            Number of entries removed per kind
        """
        now = self._now()
        removed = {"windows": 0, "blocks": 0, "trackers": 0}

        horizon = max(self.config.window_ms, self.config.burst_window_ms)
        for client_id in list(self._windows):
            window = self._windows[client_id]
            while window and now - window[0] >= horizon:
                window.popleft()
            if not window:
                del self._windows[client_id]
                removed["windows"] += 1

        for client_id in list(self._blocked):
            if now >= self._blocked[client_id].block_end_time:
                del self._blocked[client_id]
                removed["blocks"] += 1

        for client_id in list(self._trackers):
            if now - self._trackers[client_id].last_seen > self.config.inactive_tracker_ms:
                del self._trackers[client_id]
                removed["trackers"] += 1

        if any(removed.values()):
            logger.debug(f"Rate limiter cleanup removed {removed}")
        return removed

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Rate limiter cleanup error: {e}")

    def start_cleanup(self) -> None:
        """Start background cleanup tasks on the running event loop."""
        if self._cleanup_tasks:
            return
        loop = asyncio.get_running_loop()
        for interval in (
            WINDOW_CLEANUP_INTERVAL_S,
            BLOCK_CLEANUP_INTERVAL_S,
            TRACKER_CLEANUP_INTERVAL_S,
        ):
            self._cleanup_tasks.append(loop.create_task(self._cleanup_loop(interval)))
        logger.debug("Rate limiter cleanup tasks started")

    async def stop_cleanup(self) -> None:
        """Cancel background cleanup tasks."""
        tasks, self._cleanup_tasks = self._cleanup_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiting statistics."""
        blocked_by_reason: Dict[str, int] = {}
        for block in self._blocked.values():
            blocked_by_reason[block.reason] = blocked_by_reason.get(block.reason, 0) + 1

        return {
            **self._stats,
            "active_clients": len(self._windows),
            "blocked_clients": len(self._blocked),
            "tracked_clients": len(self._trackers),
            "blocked_by_reason": blocked_by_reason,
            "config": {
                "max_requests": self.config.max_requests,
                "window_ms": self.config.window_ms,
                "burst_limit": self.config.burst_limit,
                "burst_window_ms": self.config.burst_window_ms,
            },
        }


__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "BlockRecord",
    "CLIENT_BLOCKED",
    "SUSPICIOUS_ACTIVITY",
    "BURST_LIMIT_EXCEEDED",
    "RATE_LIMIT_EXCEEDED",
]
