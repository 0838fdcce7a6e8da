import logging
from functools import wraps
from typing import Callable, Iterable

import pybreaker

from app.core.config import settings
from app.core.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)


class CircuitBreakerError(ServiceUnavailableError):
    """Raised when a call is rejected because the circuit is open."""

    default_message = "Dependency temporarily unavailable"


# --- Circuit Breaker Listener ---
class BreakerListener(pybreaker.CircuitBreakerListener):
    """Logs circuit breaker state changes."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state):
        old_name = old_state.name if old_state is not None else None
        if old_name == new_state.name:
            return
        logger.warning(
            f"⚡ CIRCUIT BREAKER: '{cb.name}' changed from "
            f"'{old_name}' → '{new_state.name}' "
            f"(Reset in {cb.reset_timeout}s)"
        )

    def before_call(self, cb: pybreaker.CircuitBreaker, func: Callable, *args, **kwargs):
        logger.debug(f"🔍 Circuit breaker '{cb.name}' calling {func.__name__}")

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException):
        logger.error(
            f"❌ Circuit breaker '{cb.name}' failure: {exc!r} "
            f"(Failures: {cb.fail_counter}/{cb.fail_max})"
        )

    def success(self, cb: pybreaker.CircuitBreaker):
        logger.debug(f"✅ Circuit breaker '{cb.name}' call succeeded")


def create_breaker(
    name: str, fail_max: int, reset_timeout: float, exclude: Iterable = ()
) -> pybreaker.CircuitBreaker:
    """
    Build a breaker that re-raises the failing call's own exception when it
    trips, so callers keep mapping database errors the usual way.
    """
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        exclude=list(exclude),
        name=name,
        listeners=[BreakerListener()],
        throw_new_error_on_trip=False,
    )


# --- Global Circuit Breaker Instances ---

# MongoDB Breaker (template registry and query execution)
mongo_breaker = create_breaker(
    name="MongoDB",
    fail_max=settings.CIRCUIT_BREAKER_MAX_FAILURES,
    reset_timeout=settings.CIRCUIT_BREAKER_RESET_TIMEOUT,
)

# Redis Breaker (for cache operations)
redis_breaker = create_breaker(
    name="Redis",
    fail_max=5,
    reset_timeout=20,  # Shorter timeout for cache
)

ALL_BREAKERS = {
    "mongo": mongo_breaker,
    "redis": redis_breaker,
}


# --- Async Circuit Breaker Wrapper ---
def async_circuit_breaker(breaker: pybreaker.CircuitBreaker, exclude=()):
    """
    Decorator to apply circuit breaker pattern to async functions.

    Exceptions listed in `exclude` are registered on the breaker, so they
    propagate without counting as failures.

    Usage:
        @async_circuit_breaker(mongo_breaker)
        async def find_template(name: str):
            ...
    """
    for exception in exclude:
        if exception not in breaker.excluded_exceptions:
            breaker.add_excluded_exception(exception)

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                with breaker.calling():
                    return await func(*args, **kwargs)
            except pybreaker.CircuitBreakerError as e:
                logger.warning(
                    f"⚡ Circuit breaker '{breaker.name}' is OPEN, rejecting call"
                )
                raise CircuitBreakerError(
                    f"Circuit breaker '{breaker.name}' is open"
                ) from e

        return wrapper

    return decorator


# --- Helper Functions ---


def get_breaker_status(breaker: pybreaker.CircuitBreaker) -> dict:
    """Get current status of a circuit breaker."""
    return {
        "name": breaker.name,
        "state": breaker.current_state,
        "fail_counter": breaker.fail_counter,
        "fail_max": breaker.fail_max,
        "reset_timeout": breaker.reset_timeout,
    }


def get_all_breakers_status() -> dict:
    """Get status of all circuit breakers."""
    return {name: get_breaker_status(b) for name, b in ALL_BREAKERS.items()}


def reset_all_breakers():
    """Manually reset all circuit breakers."""
    for breaker in ALL_BREAKERS.values():
        try:
            breaker.close()
            logger.info(f"🔄 Circuit breaker '{breaker.name}' manually reset")
        except Exception as e:
            logger.error(f"❌ Failed to reset circuit breaker '{breaker.name}': {e}")
