"""
Tests for the rotation executors.

Tests:
1. Request executor: fairness, sticky affinity, all-fail aggregation
2. Stream executor: rotation during establishment only
3. Endpoint override scoping across success and failure paths
"""

import pytest
from unittest.mock import AsyncMock

from gemchat.core.credential_rotator import CredentialRotator
from gemchat.core.endpoint_override import EndpointOverride
from gemchat.core.errors import (
    AllCredentialsFailedError,
    NoCredentialsError,
    StreamInterruptedError,
)
from gemchat.core.executor import execute_stream_with_rotation, execute_with_rotation


PROXY = "https://proxy.example.com"


async def _collect(stream):
    return [item async for item in stream]


def _stream_factory(behaviour):
    """
    Build a stream operation from {credential: list of items}.

    An Exception instance in the list is raised at that point.
    """
    calls = []

    def operation(credential, transport):
        calls.append(credential)

        async def generate():
            for item in behaviour[credential]:
                if isinstance(item, Exception):
                    raise item
                yield item

        return generate()

    return operation, calls


# =============================================================================
# REQUEST EXECUTOR TESTS
# =============================================================================

class TestExecuteWithRotation:

    @pytest.mark.asyncio
    async def test_no_credentials_raises_without_calling(self):
        operation = AsyncMock()
        with pytest.raises(NoCredentialsError):
            await execute_with_rotation([], operation)
        operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_tries_each_credential_once_until_success(self):
        rotator = CredentialRotator(["bad1", "bad2", "good"])
        tried = []

        async def operation(credential, transport):
            tried.append(credential)
            if credential != "good":
                raise RuntimeError(f"{credential} rejected")
            return "ok"

        assert await execute_with_rotation(rotator, operation) == "ok"
        assert tried == ["bad1", "bad2", "good"]
        assert rotator.position == 2

    @pytest.mark.asyncio
    async def test_next_call_starts_at_last_success(self):
        rotator = CredentialRotator(["bad1", "bad2", "good"])
        tried = []

        async def operation(credential, transport):
            tried.append(credential)
            if credential != "good":
                raise RuntimeError("rejected")
            return credential

        await execute_with_rotation(rotator, operation)
        tried.clear()
        await execute_with_rotation(rotator, operation)
        assert tried == ["good"]

    @pytest.mark.asyncio
    async def test_all_fail_raises_with_last_error(self):
        rotator = CredentialRotator(["a", "b", "c"])
        operation = AsyncMock(side_effect=[ValueError("1"), ValueError("2"), ValueError("3")])

        with pytest.raises(AllCredentialsFailedError) as exc_info:
            await execute_with_rotation(rotator, operation)

        assert exc_info.value.attempts == 3
        assert str(exc_info.value.last_error) == "3"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_plain_list_is_accepted(self):
        operation = AsyncMock(return_value=42)
        assert await execute_with_rotation(["only"], operation) == 42
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_override_active_during_call_and_released_after(self):
        seen = []

        async def operation(credential, transport):
            seen.append(transport)
            assert transport.active
            if credential == "bad":
                raise RuntimeError("rejected")
            return "ok"

        await execute_with_rotation(["bad", "good"], operation, EndpointOverride(PROXY))
        assert len(seen) == 2
        assert all(not t.active for t in seen)

    @pytest.mark.asyncio
    async def test_override_released_when_all_fail(self):
        seen = []

        async def operation(credential, transport):
            seen.append(transport)
            raise RuntimeError("rejected")

        with pytest.raises(AllCredentialsFailedError):
            await execute_with_rotation(["a", "b"], operation, PROXY)
        assert all(not t.active for t in seen)


# =============================================================================
# STREAM EXECUTOR TESTS
# =============================================================================

class TestExecuteStreamWithRotation:

    @pytest.mark.asyncio
    async def test_rotates_until_first_fragment(self):
        rotator = CredentialRotator(["bad1", "bad2", "good"])
        operation, calls = _stream_factory({
            "bad1": [RuntimeError("401")],
            "bad2": [RuntimeError("403")],
            "good": ["Hel", "lo!"],
        })

        fragments = await _collect(execute_stream_with_rotation(rotator, operation))

        assert fragments == ["Hel", "lo!"]
        assert calls == ["bad1", "bad2", "good"]
        assert rotator.position == 2

    @pytest.mark.asyncio
    async def test_operation_raising_synchronously_rotates(self):
        calls = []

        def operation(credential, transport):
            calls.append(credential)
            if credential == "bad":
                raise RuntimeError("cannot open")

            async def generate():
                yield "ok"

            return generate()

        assert await _collect(execute_stream_with_rotation(["bad", "good"], operation)) == ["ok"]
        assert calls == ["bad", "good"]

    @pytest.mark.asyncio
    async def test_awaitable_operation_is_resolved(self):
        async def generate():
            yield "x"

        async def operation(credential, transport):
            return generate()

        assert await _collect(execute_stream_with_rotation(["k"], operation)) == ["x"]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_does_not_rotate(self):
        rotator = CredentialRotator(["first", "second"])
        operation, calls = _stream_factory({
            "first": ["a", "b", ConnectionError("reset")],
            "second": ["never"],
        })

        received = []
        with pytest.raises(StreamInterruptedError) as exc_info:
            async for fragment in execute_stream_with_rotation(rotator, operation):
                received.append(fragment)

        assert received == ["a", "b"]
        assert calls == ["first"]
        assert exc_info.value.fragments_forwarded == 2
        assert isinstance(exc_info.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_empty_stream_counts_as_established(self):
        rotator = CredentialRotator(["a", "b"])
        operation, calls = _stream_factory({"a": [], "b": ["unused"]})

        assert await _collect(execute_stream_with_rotation(rotator, operation)) == []
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_all_fail_to_establish(self):
        operation, calls = _stream_factory({
            "a": [RuntimeError("1")],
            "b": [RuntimeError("2")],
        })

        with pytest.raises(AllCredentialsFailedError) as exc_info:
            await _collect(execute_stream_with_rotation(["a", "b"], operation))
        assert calls == ["a", "b"]
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        operation, calls = _stream_factory({})
        with pytest.raises(NoCredentialsError):
            await _collect(execute_stream_with_rotation([], operation))
        assert calls == []

    @pytest.mark.asyncio
    async def test_transport_released_when_consumer_stops_early(self):
        seen = []

        def operation(credential, transport):
            seen.append(transport)

            async def generate():
                for i in range(10):
                    yield i

            return generate()

        stream = execute_stream_with_rotation(["k"], operation, PROXY)
        async for fragment in stream:
            assert seen[0].active
            break
        await stream.aclose()

        assert seen[0].active is False

    @pytest.mark.asyncio
    async def test_underlying_stream_closed_after_failed_establishment(self):
        closed = []

        def operation(credential, transport):
            async def generate():
                try:
                    if credential == "bad":
                        raise RuntimeError("handshake failed")
                    yield "ok"
                finally:
                    closed.append(credential)

            return generate()

        assert await _collect(execute_stream_with_rotation(["bad", "good"], operation)) == ["ok"]
        assert closed == ["bad", "good"]
