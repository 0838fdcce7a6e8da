import pytest

from app.core.circuit_breaker import (
    CircuitBreakerError,
    async_circuit_breaker,
    create_breaker,
    get_breaker_status,
)
from app.core.exceptions import QueryAlreadyExistsError


@pytest.mark.asyncio
async def test_breaker_opens_after_max_failures():
    breaker = create_breaker("test", fail_max=2, reset_timeout=60)

    @async_circuit_breaker(breaker)
    async def flaky():
        raise ConnectionError("down")

    # The tripping call still surfaces its own error
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await flaky()

    assert breaker.current_state == "open"
    with pytest.raises(CircuitBreakerError) as exc_info:
        await flaky()
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_half_open_success_closes():
    breaker = create_breaker("test", fail_max=1, reset_timeout=0)

    @async_circuit_breaker(breaker)
    async def operation(fail: bool):
        if fail:
            raise ConnectionError("down")
        return "ok"

    with pytest.raises(ConnectionError):
        await operation(True)
    assert breaker.current_state == "open"

    # reset_timeout of 0 lets the next call through as a trial
    assert await operation(False) == "ok"
    assert breaker.current_state == "closed"
    assert breaker.fail_counter == 0


@pytest.mark.asyncio
async def test_excluded_errors_do_not_count():
    breaker = create_breaker("test", fail_max=1, reset_timeout=60)

    @async_circuit_breaker(breaker, exclude=(QueryAlreadyExistsError,))
    async def create():
        raise QueryAlreadyExistsError("findByUni")

    with pytest.raises(QueryAlreadyExistsError):
        await create()
    assert breaker.current_state == "closed"
    assert breaker.fail_counter == 0


def test_breaker_status():
    breaker = create_breaker("test", fail_max=3, reset_timeout=10)
    assert get_breaker_status(breaker) == {
        "name": "test",
        "state": "closed",
        "fail_counter": 0,
        "fail_max": 3,
        "reset_timeout": 10,
    }
