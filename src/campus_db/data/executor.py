"""
Resilient Operation Executor

Generic retry and timeout wrapper for single asynchronous data operations, plus typed
helpers for the common collection calls. Every attempt first checks the connection
state, then races the operation against the per-attempt timeout. Failures are
classified: terminal errors propagate immediately, transient ones are retried with
exponential backoff until the attempt budget is spent.

Usage:
    executor = OperationExecutor(manager)
    courses = manager.get_collection('courses')
    course = await executor.find_by_id(courses, course_id)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from campus_db.config.settings import RetryPolicy
from campus_db.data.classifier import ErrorClassifier
from campus_db.data.events import ConnectionState
from campus_db.data.exceptions import (
    CastException,
    ConcurrencyConflictException,
    ConnectionNotReadyException,
    DatabaseOperationType,
    ShutdownException,
    TimeoutException,
)
from campus_db.monitoring.logging import DatabaseLogger, get_logger
from campus_db.monitoring.metrics import (
    operation_attempts_total,
    operation_duration_seconds,
    operation_retries_total,
)

T = TypeVar('T')


@dataclass
class OperationContext:
    """Per-call diagnostics record."""
    name: str
    attempt: int = 0
    max_attempts: int = 1
    retryable: bool = False


def entity_name(handle: Any) -> str:
    """
    Name used in operation names: the handle's ``model_name``, else its collection name.

    Motor collections resolve unknown attributes to sub-collections, so ``model_name``
    is only read from the instance dict or the class.
    """
    model_name = getattr(handle, '__dict__', {}).get('model_name')
    if model_name is None:
        model_name = getattr(type(handle), 'model_name', None)
    if isinstance(model_name, str) and model_name:
        return model_name
    return handle.name


def _is_id_conflict(error: DuplicateKeyError) -> bool:
    key_pattern = (error.details or {}).get('keyPattern') or {}
    if key_pattern:
        return list(key_pattern) == ['_id']
    return '_id_' in str(error)


class OperationExecutor:
    """
    Runs data operations against the connection owned by a ``ConnectionManager``.

    Args:
        manager: Connection manager whose state gates every attempt
        policy: Default operation retry policy
        classifier: Retry classifier
        logger: Logger collaborator
        sleep: Awaitable sleep used between attempts
    """

    def __init__(self, manager, policy: Optional[RetryPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 logger: Optional[DatabaseLogger] = None,
                 sleep: Callable = asyncio.sleep):
        self.manager = manager
        self.policy = policy or manager.settings.operation_policy
        self.logger = logger or get_logger(__name__)
        self.classifier = classifier or ErrorClassifier(self.logger)
        self._sleep = sleep

    def _ensure_ready(self, context: OperationContext) -> None:
        if self.manager.shutting_down:
            raise ShutdownException(
                f"{context.name} rejected: database connection closed by shutdown",
                operation_name=context.name,
            )
        state = self.manager.state
        if state is not ConnectionState.CONNECTED:
            raise ConnectionNotReadyException(
                state=state.value,
                operation_name=context.name,
            )

    async def _attempt(self, operation: Callable[[], Awaitable[T]],
                       context: OperationContext, policy: RetryPolicy) -> T:
        self._ensure_ready(context)
        try:
            return await asyncio.wait_for(operation(), timeout=policy.operation_timeout)
        except asyncio.TimeoutError as error:
            raise TimeoutException(
                f"{context.name} timed out",
                timeout_duration=policy.operation_timeout,
                operation_name=context.name,
                original_error=error,
            ) from error

    async def execute_with_retry(self, operation: Callable[[], Awaitable[T]],
                                 operation_name: str = 'Database Operation',
                                 policy: Optional[RetryPolicy] = None) -> T:
        """
        Execute an operation with connection gating, timeout and bounded retries.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per call
            operation_name: Name used in logs and metrics
            policy: Retry policy, the executor default when omitted

        Returns:
            The operation result

        Raises:
            Exception: The terminal error, or the last transient error once
                ``policy.max_retries`` attempts are spent
        """
        policy = policy or self.policy
        context = OperationContext(operation_name, max_attempts=max(policy.max_retries, 1))

        def log_retry(retry_state):
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            operation_retries_total.labels(
                operation=operation_name,
                error_type=type(error).__name__,
            ).inc()
            self.logger.info(
                f"Retrying {operation_name} in {delay}s "
                f"(attempt {retry_state.attempt_number + 1}/{context.max_attempts})",
                delay=delay,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(context.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
            retry=retry_if_exception(
                lambda error: isinstance(error, Exception) and context.retryable
            ),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

        started = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    context.attempt = attempt.retry_state.attempt_number
                    result = await self._run_attempt(operation, context, policy)
            return result
        finally:
            operation_duration_seconds.labels(operation=operation_name).observe(
                time.perf_counter() - started
            )

    async def _run_attempt(self, operation, context: OperationContext, policy: RetryPolicy):
        context.retryable = False
        try:
            result = await self._attempt(operation, context, policy)
        except Exception as error:
            operation_attempts_total.labels(operation=context.name, outcome='failure').inc()
            message = str(error)
            lowered = message.lower()
            self.logger.warning(
                f"{context.name} failed on attempt {context.attempt}",
                error=message,
                attempt=context.attempt,
                max_retries=context.max_attempts,
                is_timeout=isinstance(error, TimeoutException) or 'timeout' in lowered
                or 'timed out' in lowered,
                is_connection_error=isinstance(error, ConnectionNotReadyException)
                or 'connection' in lowered or 'econnreset' in lowered,
                error_type=type(error).__name__,
            )
            context.retryable = not self.classifier.is_non_retryable(error)
            if not context.retryable:
                self.logger.error(
                    f"Non-retryable error encountered: {message}",
                    operation=context.name,
                    error_type=type(error).__name__,
                )
            elif context.attempt >= context.max_attempts:
                self.logger.error(
                    f"{context.name} failed after {context.max_attempts} attempts",
                    final_error=message,
                    error_type=type(error).__name__,
                )
            raise

        operation_attempts_total.labels(operation=context.name, outcome='success').inc()
        if context.attempt > 1:
            self.logger.info(
                f"{context.name} succeeded on attempt {context.attempt}",
                attempt=context.attempt,
            )
        return result

    # Typed wrappers

    async def find_one(self, handle, query: Mapping[str, Any],
                       projection: Optional[Any] = None, **options) -> Optional[Dict[str, Any]]:
        return await self.execute_with_retry(
            lambda: handle.find_one(query, projection, **options),
            f"{entity_name(handle)}.find_one",
        )

    async def find_by_id(self, handle, document_id: Any,
                         projection: Optional[Any] = None, **options) -> Optional[Dict[str, Any]]:
        """
        Find a document by ``_id``.

        Raises:
            CastException: If ``document_id`` is not a valid ObjectId; raised before
                any attempt is made
        """
        name = entity_name(handle)
        if isinstance(document_id, ObjectId):
            object_id = document_id
        else:
            try:
                object_id = ObjectId(document_id)
            except (InvalidId, TypeError) as error:
                raise CastException(
                    f'Cast to ObjectId failed for value "{document_id}" '
                    f'at path "_id" for model "{name}"',
                    value=document_id,
                    operation=DatabaseOperationType.READ,
                    operation_name=f"{name}.find_by_id",
                    original_error=error,
                ) from error

        return await self.execute_with_retry(
            lambda: handle.find_one({'_id': object_id}, projection, **options),
            f"{name}.find_by_id",
        )

    async def find(self, handle, query: Mapping[str, Any],
                   projection: Optional[Any] = None,
                   sort: Optional[List[Any]] = None,
                   skip: Optional[int] = None,
                   limit: Optional[int] = None,
                   **options) -> List[Dict[str, Any]]:
        if sort is not None:
            options['sort'] = sort
        if skip is not None:
            options['skip'] = skip
        if limit is not None:
            options['limit'] = limit

        async def run():
            cursor = handle.find(query, projection, **options)
            return await cursor.to_list(length=None)

        return await self.execute_with_retry(run, f"{entity_name(handle)}.find")

    async def save(self, handle, document: Mapping[str, Any],
                   version_field: Optional[str] = None) -> Dict[str, Any]:
        """
        Insert a new document or replace an existing one.

        Documents without ``_id`` are inserted; documents with ``_id`` are upserted with
        ``replace_one``. With ``version_field`` the replace only matches the stored
        version the caller loaded and bumps it; a mismatch (the document changed or
        vanished since it was read) raises ``ConcurrencyConflictException``.

        An insert can fail ambiguously after the server committed it. The retry reuses
        the assigned ``_id``, so a duplicate key on ``_id`` during a retry is taken as
        that earlier attempt's success.

        Returns:
            The stored document, including its ``_id`` and version
        """
        name = entity_name(handle)
        stored = dict(document)

        if '_id' not in stored:
            if version_field:
                stored.setdefault(version_field, 0)

            attempts = 0

            async def insert():
                nonlocal attempts
                attempts += 1
                # insert_one assigns _id in place, so retries reuse the same id
                try:
                    await handle.insert_one(stored)
                except DuplicateKeyError as error:
                    # an earlier attempt committed before its reply was lost
                    if attempts > 1 and _is_id_conflict(error):
                        return stored
                    raise
                return stored

            return await self.execute_with_retry(insert, f"{name}.save")

        query = {'_id': stored['_id']}
        if not version_field:
            async def replace():
                await handle.replace_one(query, stored, upsert=True)
                return stored

            return await self.execute_with_retry(replace, f"{name}.save")

        expected = stored.get(version_field, 0)
        query[version_field] = expected
        stored[version_field] = expected + 1

        async def replace_versioned():
            result = await handle.replace_one(query, stored)
            if result.matched_count == 0:
                raise ConcurrencyConflictException(
                    f'No matching document found for id "{stored["_id"]}" '
                    f'version {expected} in {name}',
                    expected_version=expected,
                    operation=DatabaseOperationType.WRITE,
                    operation_name=f"{name}.save",
                )
            return stored

        return await self.execute_with_retry(replace_versioned, f"{name}.save")

    async def update_one(self, handle, query: Mapping[str, Any],
                         update: Any, **options):
        return await self.execute_with_retry(
            lambda: handle.update_one(query, update, **options),
            f"{entity_name(handle)}.update_one",
        )

    async def find_one_and_update(self, handle, query: Mapping[str, Any], update: Any,
                                  return_new: bool = True, **options):
        options.setdefault(
            'return_document', ReturnDocument.AFTER if return_new else ReturnDocument.BEFORE
        )
        return await self.execute_with_retry(
            lambda: handle.find_one_and_update(query, update, **options),
            f"{entity_name(handle)}.find_one_and_update",
        )

    async def delete_one(self, handle, query: Mapping[str, Any], **options):
        return await self.execute_with_retry(
            lambda: handle.delete_one(query, **options),
            f"{entity_name(handle)}.delete_one",
        )

    async def count_documents(self, handle, query: Mapping[str, Any], **options) -> int:
        return await self.execute_with_retry(
            lambda: handle.count_documents(query, **options),
            f"{entity_name(handle)}.count_documents",
        )

    async def aggregate(self, handle, pipeline: List[Mapping[str, Any]],
                        **options) -> List[Dict[str, Any]]:
        async def run():
            cursor = handle.aggregate(pipeline, **options)
            return await cursor.to_list(length=None)

        return await self.execute_with_retry(run, f"{entity_name(handle)}.aggregate")


__all__ = [
    'OperationContext',
    'OperationExecutor',
    'entity_name',
]
