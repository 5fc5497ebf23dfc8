"""
Operation Executor Unit Tests

Retry loop semantics (terminal vs transient errors, exhaustion, success after
failures), timeout enforcement, connection-state gating and the typed collection
wrappers.
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError
from structlog.testing import capture_logs

from campus_db.config.settings import RetryPolicy
from campus_db.data.events import ConnectionState
from campus_db.data.exceptions import (
    CastException,
    ConcurrencyConflictException,
    ConnectionNotReadyException,
    ShutdownException,
    TimeoutException,
    ValidationException,
)
from campus_db.data.executor import OperationExecutor, entity_name
from tests.conftest import FakeCollection, SleepRecorder, never_resolves


OPERATION_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0,
                               operation_timeout=5.0)


class ScriptedOperation:
    """Zero-argument operation raising or returning scripted outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def executor(stub_manager, sleep_recorder, db_logger):
    return OperationExecutor(stub_manager, policy=OPERATION_POLICY,
                             logger=db_logger, sleep=sleep_recorder)


class TestRetryLoop:

    @pytest.mark.unit
    async def test_first_attempt_success_is_quiet(self, executor, sleep_recorder):
        operation = ScriptedOperation({'_id': 1})

        with capture_logs() as logs:
            result = await executor.execute_with_retry(operation, 'Course.find_one')

        assert result == {'_id': 1}
        assert operation.calls == 1
        assert sleep_recorder.delays == []
        assert not any('succeeded on attempt' in entry['event'] for entry in logs)

    @pytest.mark.unit
    async def test_terminal_error_is_not_retried(self, executor, sleep_recorder):
        error = ValidationException("Course validation failed: title is required")
        operation = ScriptedOperation(error, {'_id': 1})

        with pytest.raises(ValidationException) as excinfo:
            await executor.execute_with_retry(operation, 'Course.save')

        assert excinfo.value is error
        assert operation.calls == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_odm_kind_name_is_not_retried(self, executor):
        class CastError(Exception):
            pass

        operation = ScriptedOperation(CastError("bad value"))
        with pytest.raises(CastError):
            await executor.execute_with_retry(operation, 'Course.find')
        assert operation.calls == 1

    @pytest.mark.unit
    async def test_retry_exhaustion_reraises_last_error(self, executor, sleep_recorder):
        errors = [AutoReconnect(f"reset {n}") for n in range(3)]
        operation = ScriptedOperation(*errors)

        with capture_logs() as logs:
            with pytest.raises(AutoReconnect) as excinfo:
                await executor.execute_with_retry(operation, 'Course.find')

        assert excinfo.value is errors[2]
        assert operation.calls == 3
        assert sleep_recorder.delays == [1, 2]
        exhausted = [entry for entry in logs if entry['event'] == "Course.find failed after 3 attempts"]
        assert len(exhausted) == 1

    @pytest.mark.unit
    async def test_success_after_transient_failures(self, executor, sleep_recorder):
        operation = ScriptedOperation(AutoReconnect("reset"), AutoReconnect("reset"), ['a', 'b'])

        with capture_logs() as logs:
            result = await executor.execute_with_retry(operation, 'Course.find')

        assert result == ['a', 'b']
        assert operation.calls == 3
        assert sleep_recorder.delays == [1, 2]
        succeeded = [entry for entry in logs if entry['event'] == "Course.find succeeded on attempt 3"]
        assert len(succeeded) == 1

    @pytest.mark.unit
    async def test_message_fallback_is_classified_once_per_failure(self, executor):
        operation = ScriptedOperation(Exception("E11000 duplicate key error collection: campus.courses"))

        with capture_logs() as logs:
            with pytest.raises(Exception, match="duplicate key error"):
                await executor.execute_with_retry(operation, 'Course.save')

        fallback = [entry for entry in logs
                    if entry['event'] == "Error classified as non-retryable by message pattern"]
        assert len(fallback) == 1
        assert operation.calls == 1

    @pytest.mark.unit
    async def test_each_failed_attempt_is_logged(self, executor):
        operation = ScriptedOperation(AutoReconnect("connection reset"), 42)

        with capture_logs() as logs:
            await executor.execute_with_retry(operation, 'Course.count_documents')

        failed = [entry for entry in logs if entry['log_level'] == 'warning']
        assert failed[0]['event'] == "Course.count_documents failed on attempt 1"
        assert failed[0]['is_connection_error'] is True
        assert failed[0]['error_type'] == 'AutoReconnect'

    @pytest.mark.unit
    async def test_delay_is_capped(self, stub_manager, sleep_recorder, db_logger):
        policy = RetryPolicy(max_retries=6, base_delay=1.0, max_delay=10.0, operation_timeout=5.0)
        executor = OperationExecutor(stub_manager, policy=policy, logger=db_logger,
                                     sleep=sleep_recorder)
        operation = ScriptedOperation(*[AutoReconnect("reset")] * 6)

        with pytest.raises(AutoReconnect):
            await executor.execute_with_retry(operation, 'Course.find')

        assert sleep_recorder.delays == [1, 2, 4, 8, 10]

    @pytest.mark.unit
    async def test_policy_override_per_call(self, executor, sleep_recorder):
        operation = ScriptedOperation(AutoReconnect("reset"))
        single = RetryPolicy(max_retries=1, operation_timeout=5.0)

        with pytest.raises(AutoReconnect):
            await executor.execute_with_retry(operation, 'Course.find', policy=single)

        assert operation.calls == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_concurrent_calls_back_off_independently(self, stub_manager, db_logger):
        first_sleep, second_sleep = SleepRecorder(), SleepRecorder()
        first = OperationExecutor(stub_manager, policy=OPERATION_POLICY, logger=db_logger,
                                  sleep=first_sleep)
        second = OperationExecutor(stub_manager, policy=OPERATION_POLICY, logger=db_logger,
                                   sleep=second_sleep)

        results = await asyncio.gather(
            first.execute_with_retry(ScriptedOperation(AutoReconnect("x"), 'a'), 'A.find'),
            second.execute_with_retry(ScriptedOperation(AutoReconnect("x"), AutoReconnect("x"), 'b'),
                                      'B.find'),
        )

        assert results == ['a', 'b']
        assert first_sleep.delays == [1]
        assert second_sleep.delays == [1, 2]


class TestTimeout:

    @pytest.mark.unit
    async def test_never_resolving_operation_times_out(self, stub_manager, sleep_recorder, db_logger):
        policy = RetryPolicy(max_retries=1, operation_timeout=0.05)
        executor = OperationExecutor(stub_manager, policy=policy, logger=db_logger,
                                     sleep=sleep_recorder)

        started = time.monotonic()
        with pytest.raises(TimeoutException) as excinfo:
            await executor.execute_with_retry(never_resolves, 'Course.aggregate')
        elapsed = time.monotonic() - started

        assert 0.04 <= elapsed < 1.0
        assert excinfo.value.timeout_duration == 0.05
        assert str(excinfo.value) == "Course.aggregate timed out"

    @pytest.mark.unit
    async def test_timeouts_are_retried(self, stub_manager, sleep_recorder, db_logger):
        policy = RetryPolicy(max_retries=2, base_delay=1.0, operation_timeout=0.05)
        executor = OperationExecutor(stub_manager, policy=policy, logger=db_logger,
                                     sleep=sleep_recorder)
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await never_resolves()
            return 'done'

        assert await executor.execute_with_retry(slow_then_fast, 'Course.find') == 'done'
        assert sleep_recorder.delays == [1]


class TestCancellation:

    @pytest.mark.unit
    async def test_cancellation_raised_in_attempt_is_not_retried(self, executor, sleep_recorder):
        operation = ScriptedOperation(asyncio.CancelledError(), 'late-result')

        with pytest.raises(asyncio.CancelledError):
            await executor.execute_with_retry(operation, 'Course.find_one')

        assert operation.calls == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_cancelling_the_caller_stops_retrying(self, executor, sleep_recorder):
        started = asyncio.Event()
        calls = []

        async def slow_lookup():
            calls.append(1)
            started.set()
            await never_resolves()

        task = asyncio.create_task(executor.execute_with_retry(slow_lookup, 'Course.find_one'))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_caller_deadline_is_honoured(self, executor, sleep_recorder):
        calls = []

        async def slow_lookup():
            calls.append(1)
            await never_resolves()

        started = time.monotonic()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                executor.execute_with_retry(slow_lookup, 'Course.find_one'), timeout=0.05
            )
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert len(calls) == 1
        assert sleep_recorder.delays == []


class TestConnectionGating:

    @pytest.mark.unit
    async def test_not_ready_exhausts_without_calling_operation(self, executor, stub_manager):
        stub_manager.state = ConnectionState.CONNECTING
        operation = ScriptedOperation('never')

        with pytest.raises(ConnectionNotReadyException) as excinfo:
            await executor.execute_with_retry(operation, 'Course.find')

        assert operation.calls == 0
        assert excinfo.value.state == 'connecting'

    @pytest.mark.unit
    async def test_not_ready_is_retried_until_connected(self, stub_manager, db_logger):
        stub_manager.state = ConnectionState.DISCONNECTED

        def reconnect(count):
            stub_manager.state = ConnectionState.CONNECTED

        sleep = SleepRecorder(on_sleep=reconnect)
        executor = OperationExecutor(stub_manager, policy=OPERATION_POLICY, logger=db_logger,
                                     sleep=sleep)
        operation = ScriptedOperation({'_id': 7})

        with capture_logs() as logs:
            result = await executor.execute_with_retry(operation, 'Course.find_one')

        assert result == {'_id': 7}
        assert operation.calls == 1
        assert sleep.delays == [1]
        assert any(entry['event'] == "Course.find_one succeeded on attempt 2" for entry in logs)

    @pytest.mark.unit
    async def test_shutdown_fails_fast(self, executor, stub_manager, sleep_recorder):
        stub_manager.shutting_down = True
        stub_manager.state = ConnectionState.DISCONNECTING
        operation = ScriptedOperation('never')

        with pytest.raises(ShutdownException):
            await executor.execute_with_retry(operation, 'Course.update_one')

        assert operation.calls == 0
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_default_policy_comes_from_manager_settings(self, stub_manager):
        executor = OperationExecutor(stub_manager)
        assert executor.policy == stub_manager.settings.operation_policy


class TestEntityName:

    @pytest.mark.unit
    def test_model_name_wins(self):
        assert entity_name(FakeCollection('courses', model_name='Course')) == 'Course'

    @pytest.mark.unit
    def test_falls_back_to_collection_name(self):
        assert entity_name(FakeCollection('assignments')) == 'assignments'


class TestTypedWrappers:

    @pytest.mark.unit
    async def test_find_one(self, executor, fake_collection):
        fake_collection.find_one.return_value = {'_id': 1, 'title': 'Python 101'}

        result = await executor.find_one(fake_collection, {'slug': 'python-101'}, {'title': 1},
                                         max_time_ms=500)

        assert result['title'] == 'Python 101'
        fake_collection.find_one.assert_awaited_once_with(
            {'slug': 'python-101'}, {'title': 1}, max_time_ms=500
        )

    @pytest.mark.unit
    async def test_find_by_id(self, executor, fake_collection):
        object_id = ObjectId()

        await executor.find_by_id(fake_collection, str(object_id))

        fake_collection.find_one.assert_awaited_once_with({'_id': object_id}, None)

    @pytest.mark.unit
    async def test_find_by_id_rejects_invalid_ids_before_any_attempt(self, executor, fake_collection):
        with pytest.raises(CastException) as excinfo:
            await executor.find_by_id(fake_collection, 'not-an-id')

        assert excinfo.value.value == 'not-an-id'
        assert 'Cast to ObjectId failed' in str(excinfo.value)
        fake_collection.find_one.assert_not_awaited()

    @pytest.mark.unit
    async def test_find_collects_cursor(self, executor, fake_collection):
        fake_collection.cursor.to_list.return_value = [{'_id': 1}, {'_id': 2}]

        result = await executor.find(fake_collection, {'published': True},
                                     sort=[('created_at', -1)], limit=2)

        assert result == [{'_id': 1}, {'_id': 2}]
        fake_collection.find.assert_called_once_with(
            {'published': True}, None, sort=[('created_at', -1)], limit=2
        )
        fake_collection.cursor.to_list.assert_awaited_once_with(length=None)

    @pytest.mark.unit
    async def test_save_inserts_new_documents(self, executor, fake_collection):
        document = {'title': 'Python 101'}

        stored = await executor.save(fake_collection, document, version_field='version')

        fake_collection.insert_one.assert_awaited_once()
        assert stored['version'] == 0
        assert 'version' not in document

    @pytest.mark.unit
    async def test_save_retry_after_committed_insert_succeeds(self, executor, fake_collection,
                                                              sleep_recorder):
        fake_collection.insert_one.side_effect = [
            AutoReconnect("connection reset"),
            DuplicateKeyError("E11000 duplicate key error index: _id_", 11000,
                              {'keyPattern': {'_id': 1}}),
        ]

        stored = await executor.save(fake_collection, {'title': 'Python 101'})

        assert stored['title'] == 'Python 101'
        assert fake_collection.insert_one.await_count == 2
        assert sleep_recorder.delays == [1]

    @pytest.mark.unit
    async def test_save_duplicate_on_first_insert_is_terminal(self, executor, fake_collection):
        fake_collection.insert_one.side_effect = DuplicateKeyError(
            "E11000 duplicate key error index: _id_", 11000, {'keyPattern': {'_id': 1}}
        )

        with pytest.raises(DuplicateKeyError):
            await executor.save(fake_collection, {'title': 'Python 101'})

        assert fake_collection.insert_one.await_count == 1

    @pytest.mark.unit
    async def test_save_retry_duplicate_on_other_index_is_terminal(self, executor, fake_collection):
        fake_collection.insert_one.side_effect = [
            AutoReconnect("connection reset"),
            DuplicateKeyError("E11000 duplicate key error index: slug_1", 11000,
                              {'keyPattern': {'slug': 1}}),
        ]

        with pytest.raises(DuplicateKeyError):
            await executor.save(fake_collection, {'slug': 'python-101'})

        assert fake_collection.insert_one.await_count == 2

    @pytest.mark.unit
    async def test_save_upserts_existing_documents(self, executor, fake_collection):
        document = {'_id': 5, 'title': 'Python 102'}

        await executor.save(fake_collection, document)

        fake_collection.replace_one.assert_awaited_once_with({'_id': 5}, document, upsert=True)

    @pytest.mark.unit
    async def test_versioned_save_bumps_version(self, executor, fake_collection):
        stored = await executor.save(fake_collection, {'_id': 5, 'version': 3},
                                     version_field='version')

        assert stored['version'] == 4
        fake_collection.replace_one.assert_awaited_once_with(
            {'_id': 5, 'version': 3}, {'_id': 5, 'version': 4}
        )

    @pytest.mark.unit
    async def test_versioned_save_conflict_is_terminal(self, executor, fake_collection, sleep_recorder):
        fake_collection.replace_one.return_value = MagicMock(matched_count=0)

        with pytest.raises(ConcurrencyConflictException) as excinfo:
            await executor.save(fake_collection, {'_id': 5, 'version': 3}, version_field='version')

        assert excinfo.value.expected_version == 3
        assert fake_collection.replace_one.await_count == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    async def test_update_one(self, executor, fake_collection):
        await executor.update_one(fake_collection, {'_id': 1}, {'$set': {'title': 'x'}}, upsert=True)
        fake_collection.update_one.assert_awaited_once_with(
            {'_id': 1}, {'$set': {'title': 'x'}}, upsert=True
        )

    @pytest.mark.unit
    @pytest.mark.parametrize('return_new, expected', [
        (True, ReturnDocument.AFTER),
        (False, ReturnDocument.BEFORE),
    ])
    async def test_find_one_and_update(self, executor, fake_collection, return_new, expected):
        await executor.find_one_and_update(fake_collection, {'_id': 1}, {'$inc': {'seats': -1}},
                                           return_new=return_new)
        fake_collection.find_one_and_update.assert_awaited_once_with(
            {'_id': 1}, {'$inc': {'seats': -1}}, return_document=expected
        )

    @pytest.mark.unit
    async def test_delete_one(self, executor, fake_collection):
        await executor.delete_one(fake_collection, {'_id': 1})
        fake_collection.delete_one.assert_awaited_once_with({'_id': 1})

    @pytest.mark.unit
    async def test_count_documents(self, executor, fake_collection):
        fake_collection.count_documents.return_value = 12
        assert await executor.count_documents(fake_collection, {'published': True}) == 12

    @pytest.mark.unit
    async def test_aggregate(self, executor, fake_collection):
        pipeline = [{'$group': {'_id': '$category', 'total': {'$sum': 1}}}]
        fake_collection.cursor.to_list.return_value = [{'_id': 'data', 'total': 3}]

        result = await executor.aggregate(fake_collection, pipeline)

        assert result == [{'_id': 'data', 'total': 3}]
        fake_collection.aggregate.assert_called_once_with(pipeline)

    @pytest.mark.unit
    async def test_wrappers_name_operations_after_entity(self, executor):
        collection = FakeCollection('courses', model_name='Course')
        collection.count_documents = AsyncMock(side_effect=[AutoReconnect("reset"), 1])

        with capture_logs() as logs:
            await executor.count_documents(collection, {})

        assert logs[0]['event'] == "Course.count_documents failed on attempt 1"
