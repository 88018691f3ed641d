"""
Gemchat Rotation Executors
==========================

Run an operation against the remote service, failing over across API keys.

Both executors try every credential at most once per call, in rotation
order, starting from the rotator's pinned position:

- execute_with_rotation: the operation returns one value
- execute_stream_with_rotation: the operation returns an async iterator of
  fragments; rotation happens only while the stream is being established
  (getting the iterator and its first fragment). Once a fragment has been
  forwarded, a failure is terminal and surfaces as StreamInterruptedError,
  because forwarded output cannot be taken back from the caller.

Operations receive (credential, transport). The transport is scoped to the
attempt and carries the optional endpoint override.
"""

import inspect
import logging
import time
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from gemchat.core.credential_rotator import CredentialRotator, mask_credential
from gemchat.core.endpoint_override import EndpointOverride, Transport
from gemchat.core.errors import (
    AllCredentialsFailedError,
    ErrorType,
    NoCredentialsError,
    StreamInterruptedError,
    classify_exception,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Credentials = Union[CredentialRotator, Sequence[str]]
Endpoint = Union[EndpointOverride, str, None]
Operation = Callable[[str, Transport], Awaitable[T]]
StreamOperation = Callable[[str, Transport], Any]


def _as_rotator(credentials: Credentials) -> CredentialRotator:
    if isinstance(credentials, CredentialRotator):
        return credentials
    return CredentialRotator(credentials)


def _as_override(endpoint: Endpoint) -> EndpointOverride:
    if isinstance(endpoint, EndpointOverride):
        return endpoint
    return EndpointOverride(endpoint)


def _log_attempt_failure(credential: str, attempt: int, total: int, error: BaseException) -> None:
    kind = classify_exception(error)
    logger.warning(
        f"⚠️ API call failed with key {mask_credential(credential)} "
        f"(attempt {attempt}/{total}, kind={kind.value}): {error}"
    )
    if kind == ErrorType.BAD_REQUEST:
        logger.warning(
            "400 response: request body may be too large (history or attachments), "
            "rejected by a proxy, or malformed after history truncation"
        )


async def _aclose(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug(f"Ignoring error while closing stream: {e}")


# =============================================================================
# REQUEST EXECUTOR
# =============================================================================

async def execute_with_rotation(
    credentials: Credentials,
    operation: Operation,
    endpoint: Endpoint = None,
) -> T:
    """
    Await operation(credential, transport) until one credential succeeds.

    Args:
        credentials: A CredentialRotator (keeps affinity across calls) or a
            plain list of keys
        operation: Coroutine function performing the request
        endpoint: Optional override base URL or EndpointOverride

    Returns:
        The first successful result

    Raises:
        NoCredentialsError: If there is no credential to try
        AllCredentialsFailedError: If every credential failed
    """
    rotator = _as_rotator(credentials)
    override = _as_override(endpoint)
    total = rotator.total_credentials()
    if total == 0:
        raise NoCredentialsError("No API key provided")

    last_error: Optional[BaseException] = None
    for attempt in range(1, total + 1):
        credential = rotator.next()
        with override.scoped() as transport:
            try:
                result = await operation(credential, transport)
            except Exception as e:
                last_error = e
                _log_attempt_failure(credential, attempt, total, e)
                continue

        rotator.record_success()
        return result

    logger.error(f"❌ All {total} API keys failed")
    raise AllCredentialsFailedError(total, last_error) from last_error


# =============================================================================
# STREAM EXECUTOR
# =============================================================================

async def execute_stream_with_rotation(
    credentials: Credentials,
    operation: StreamOperation,
    endpoint: Endpoint = None,
) -> AsyncIterator[Any]:
    """
    Forward the fragments of the first stream that can be established.

    The operation may return an async iterator directly or an awaitable
    resolving to one. Establishment covers obtaining the iterator and
    pulling its first fragment; a stream that ends without any fragment
    counts as established.

    Yields:
        Fragments in the order the underlying stream produced them

    Raises:
        NoCredentialsError: If there is no credential to try
        AllCredentialsFailedError: If no credential could establish a stream
        StreamInterruptedError: If the stream failed after forwarding began
    """
    rotator = _as_rotator(credentials)
    override = _as_override(endpoint)
    total = rotator.total_credentials()
    if total == 0:
        raise NoCredentialsError("No API key provided")

    last_error: Optional[BaseException] = None
    for attempt in range(1, total + 1):
        credential = rotator.next()
        with override.scoped() as transport:
            started = time.monotonic()
            iterator = None
            try:
                stream = operation(credential, transport)
                if inspect.isawaitable(stream):
                    stream = await stream
                iterator = stream.__aiter__()
                try:
                    first = await iterator.__anext__()
                except StopAsyncIteration:
                    rotator.record_success()
                    logger.info(f"Stream with key {mask_credential(credential)} ended without output")
                    return
            except Exception as e:
                last_error = e
                _log_attempt_failure(credential, attempt, total, e)
                await _aclose(iterator)
                continue

            rotator.record_success()
            logger.info(
                f"✅ Stream established with key {mask_credential(credential)} "
                f"in {time.monotonic() - started:.2f}s (attempt {attempt}/{total})"
            )

            forwarded = 1
            try:
                yield first
                async for fragment in iterator:
                    forwarded += 1
                    yield fragment
            except Exception as e:
                logger.error(
                    f"❌ Stream failed mid-flight after {forwarded} fragments "
                    f"with key {mask_credential(credential)}; not rotating: {e}"
                )
                raise StreamInterruptedError(forwarded, e) from e
            finally:
                await _aclose(iterator)
            return

    logger.error(f"❌ All {total} API keys failed to open a stream")
    raise AllCredentialsFailedError(total, last_error) from last_error
