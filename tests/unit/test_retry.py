"""
Retry decorator and error normalization.
"""
from unittest.mock import AsyncMock, patch

import pytest

from agent_mirror.exceptions import (
    AuthenticationError,
    DataError,
    GatewayError,
    OrderExecutionError,
    describe_error,
)
from agent_mirror.utils.retry import retry_on_transient_errors


@pytest.fixture(autouse=True)
def sleep():
    with patch("agent_mirror.utils.retry.asyncio.sleep", new=AsyncMock()) as mock:
        yield mock


class TestRetry:

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, sleep):
        func = AsyncMock(side_effect=[GatewayError("timeout"), GatewayError("timeout"), "ok"])
        wrapped = retry_on_transient_errors(max_retries=3, base_delay=0.5)(func)

        assert await wrapped() == "ok"
        assert func.await_count == 3
        assert sleep.await_count == 2
        assert sleep.await_args_list[0].args[0] == 0.5

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise(self):
        func = AsyncMock(side_effect=GatewayError("down"))
        wrapped = retry_on_transient_errors(max_retries=1)(func)

        with pytest.raises(GatewayError, match="down"):
            await wrapped()
        assert func.await_count == 2

    @pytest.mark.parametrize("error", [
        AuthenticationError("bad key"),
        OrderExecutionError("rejected"),
        DataError("malformed"),
        ValueError("bad arg"),
    ])
    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, error, sleep):
        func = AsyncMock(side_effect=error)
        wrapped = retry_on_transient_errors(max_retries=5)(func)

        with pytest.raises(type(error)):
            await wrapped()
        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_transient_errors(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])
        wrapped = retry_on_transient_errors(transient_errors=(ConnectionError,))(func)
        assert await wrapped() == "ok"

    @pytest.mark.asyncio
    async def test_unlisted_errors_propagate(self):
        func = AsyncMock(side_effect=KeyError("missing"))
        wrapped = retry_on_transient_errors()(func)
        with pytest.raises(KeyError):
            await wrapped()
        assert func.await_count == 1


class TestDescribeError:

    def test_exception_message(self):
        assert describe_error(GatewayError("Connection refused")) == "Connection refused"

    def test_empty_message_uses_class_name(self):
        assert describe_error(TimeoutError()) == "TimeoutError"

    def test_non_exception_values(self):
        assert describe_error(None) == "Unknown error"
        assert describe_error("plain text") == "plain text"
        assert describe_error(42) == "42"
