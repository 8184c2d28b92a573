"""Service layer exports.

Expose the streaming, ranking, and analysis services for easy importing.
"""

from .backfill import BackfillSweep
from .fanout import FanoutCoordinator, encode_sse
from .jobs import Event, JobRuntime, LeaseLostError, NonRetriableError, StepContext
from .judge import JudgeClient, JudgePipeline, session_completed_event
from .keys import KeyRing, MissingCredentialsError
from .rate_limit import InMemoryRateLimiter, RateLimitDecision, RedisRateLimiter, build_rate_limiter
from .sessions import SessionService
from .upstream import UpstreamClient

__all__ = [
    "BackfillSweep",
    "FanoutCoordinator",
    "encode_sse",
    "Event",
    "JobRuntime",
    "LeaseLostError",
    "NonRetriableError",
    "StepContext",
    "JudgeClient",
    "JudgePipeline",
    "session_completed_event",
    "KeyRing",
    "MissingCredentialsError",
    "InMemoryRateLimiter",
    "RateLimitDecision",
    "RedisRateLimiter",
    "build_rate_limiter",
    "SessionService",
    "UpstreamClient",
]
