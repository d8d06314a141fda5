# ═══════════════════════════════════════════════════════════════
# DevPoll - Operation Executor Tests
# Retry budgets, session expiry, dependent chains and batches
# ═══════════════════════════════════════════════════════════════

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import SecretStr

from devpoll.core.exceptions import (
    AuthenticationFailed,
    OperationFailed,
    SessionNotReadyError,
    TransportError,
)
from devpoll.engine.classifier import ErrorClassification
from devpoll.engine.executor import OperationExecutor
from devpoll.engine.session import AuthStrategy, Session, SessionManager
from devpoll.transports.models import BackoffPolicy, Operation, SuccessPredicate, TransportKind


class CountingTokenAuth(AuthStrategy):
    """Each login hands out the next token: t1, t2, ..."""

    name = "counting"

    def __init__(self):
        super().__init__(expiry_statuses=(401,))
        self.logins = 0

    async def login(self, session, send):
        self.logins += 1
        session.token = SecretStr(f"t{self.logins}")
        session.token_header = "Authorization"
        session.token_scheme = "Bearer"


class SlowTokenAuth(CountingTokenAuth):
    """Login takes a while; logins after ``fail_after`` are rejected."""

    def __init__(self, fail_after=None):
        super().__init__()
        self.fail_after = fail_after

    async def login(self, session, send):
        if self.logins:
            await asyncio.sleep(0.02)
        if self.fail_after is not None and self.logins >= self.fail_after:
            raise AuthenticationFailed("password changed")
        await super().login(session, send)


async def start(transport, strategy=None, max_concurrency=None):
    manager = SessionManager(transport, strategy)
    session = await manager.login()
    return OperationExecutor(manager, max_concurrency), session


def ok(output="ok"):
    return {"output": output, "status_code": 200}


# ═══════════════════════════════════════════════════════════════
# Retry Budget
# ═══════════════════════════════════════════════════════════════

class TestRetryBudget:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retry_count", [0, 1, 3])
    async def test_attempts_are_retry_count_plus_one(self, make_scripted_transport, retry_count):
        transport = make_scripted_transport([TransportError("boom", transport="http")])
        executor, session = await start(transport)

        with pytest.raises(OperationFailed) as exc_info:
            await executor.execute(session, Operation(name="status", target="/", retry_count=retry_count))

        assert len(transport.sent) == retry_count + 1
        assert exc_info.value.attempts == retry_count + 1
        assert exc_info.value.classification == ErrorClassification.GENERIC_ERROR

    @pytest.mark.asyncio
    async def test_success_after_retries(self, make_scripted_transport):
        error = TransportError("reset", transport="http")
        transport = make_scripted_transport([error, error, ok("up")])
        executor, session = await start(transport)

        result = await executor.execute(session, Operation(target="/", retry_count=2))

        assert result.output == "up"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_predicate_failure_consumes_attempts(self, make_scripted_transport):
        transport = make_scripted_transport([{"status_code": 500, "output": "oops"}])
        executor, session = await start(transport)

        with pytest.raises(OperationFailed) as exc_info:
            await executor.execute(session, Operation(target="/", retry_count=1))

        assert len(transport.sent) == 2
        assert exc_info.value.classification == ErrorClassification.GENERIC_ERROR
        assert "unexpected status 500" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response, expected", [
        ({"status_code": 503}, ErrorClassification.RESOURCE_UNAVAILABLE),
        ({"status_code": 403}, ErrorClassification.AUTHENTICATION_ERROR),
        (TransportError("down", unreachable=True), ErrorClassification.RESOURCE_UNAVAILABLE),
        (TransportError("slow", timed_out=True), ErrorClassification.RESOURCE_UNAVAILABLE),
        (TransportError("slow", timed_out=True, partial_output="half a table"), ErrorClassification.GENERIC_ERROR),
    ])
    async def test_final_signal_is_classified(self, make_scripted_transport, response, expected):
        executor, session = await start(make_scripted_transport([response]))

        with pytest.raises(OperationFailed) as exc_info:
            await executor.execute(session, Operation(target="/"))

        assert exc_info.value.classification == expected

    @pytest.mark.asyncio
    async def test_custom_predicate(self, make_scripted_transport):
        transport = make_scripted_transport([
            {"exit_code": 0, "output": "partial"},
            {"exit_code": 0, "output": "Total: 4"},
        ])
        executor, session = await start(transport)

        result = await executor.execute(session, Operation(
            target="df",
            retry_count=1,
            success=SuccessPredicate(output_pattern=r"Total: \d+"),
        ))

        assert result.output == "Total: 4"

    @pytest.mark.asyncio
    async def test_executor_timeout(self, make_scripted_transport):
        transport = make_scripted_transport([ok()], delay=5)
        executor, session = await start(transport)

        with patch("devpoll.engine.executor.TIMEOUT_GRACE", 0.0):
            with pytest.raises(OperationFailed) as exc_info:
                await executor.execute(session, Operation(target="/", timeout=0.05, retry_count=1))

        assert len(transport.sent) == 2
        assert exc_info.value.classification == ErrorClassification.RESOURCE_UNAVAILABLE


class TestBackoff:

    @pytest.mark.asyncio
    async def test_fixed_backoff_sleeps_between_attempts(self, make_scripted_transport):
        executor, session = await start(make_scripted_transport([TransportError("boom")]))

        with patch("devpoll.engine.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(OperationFailed):
                await executor.execute(session, Operation(
                    target="/",
                    retry_count=2,
                    backoff=BackoffPolicy.FIXED,
                    retry_delay=0.5,
                ))

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_no_backoff(self, make_scripted_transport):
        executor, session = await start(make_scripted_transport([TransportError("boom")]))

        with patch("devpoll.engine.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(OperationFailed):
                await executor.execute(session, Operation(target="/", retry_count=2, retry_delay=0.5))

        sleep.assert_not_awaited()


# ═══════════════════════════════════════════════════════════════
# Session Expiry
# ═══════════════════════════════════════════════════════════════

class TestSessionExpiry:

    @pytest.mark.asyncio
    async def test_single_relogin_does_not_consume_budget(self, make_scripted_transport):
        transport = make_scripted_transport([{"status_code": 401}, ok("fresh")])
        strategy = CountingTokenAuth()
        executor, session = await start(transport, strategy)

        result = await executor.execute(session, Operation(target="/", retry_count=0))

        assert result.output == "fresh"
        assert result.attempts == 1
        assert strategy.logins == 2
        assert session.login_count == 2
        assert transport.sent[1].headers["Authorization"] == "Bearer t2"

    @pytest.mark.asyncio
    async def test_second_expiry_is_authentication_error(self, make_scripted_transport):
        transport = make_scripted_transport([{"status_code": 401}])
        strategy = CountingTokenAuth()
        executor, session = await start(transport, strategy)

        with pytest.raises(OperationFailed) as exc_info:
            await executor.execute(session, Operation(target="/", retry_count=3))

        assert exc_info.value.classification == ErrorClassification.AUTHENTICATION_ERROR
        assert strategy.logins == 2
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_concurrent_expiries_share_one_relogin(self, make_scripted_transport):
        valid = {"token": "Bearer t1"}

        def device(operation):
            if operation.headers.get("Authorization") != valid["token"]:
                return {"status_code": 401}
            return ok(operation.name)

        transport = make_scripted_transport([device], delay=0.01)
        strategy = CountingTokenAuth()
        executor, session = await start(transport, strategy)

        valid["token"] = "Bearer t2"
        outcomes = await executor.run_batch(session, [Operation(name=f"op{i}", target="/") for i in range(3)])

        assert all(outcome.ok for outcome in outcomes)
        assert strategy.logins == 2
        assert session.generation == 1

    @pytest.mark.asyncio
    async def test_operation_started_during_relogin_waits(self, make_scripted_transport):
        valid = {"token": "Bearer t1"}

        def device(operation):
            if operation.headers.get("Authorization") != valid["token"]:
                return {"status_code": 401}
            return ok(operation.name)

        transport = make_scripted_transport([device], delay=0.01)
        strategy = SlowTokenAuth()
        executor, session = await start(transport, strategy)
        valid["token"] = "Bearer t2"

        async def late():
            await asyncio.sleep(0.015)
            return await executor.execute(session, Operation(name="late", target="/"))

        first, second = await asyncio.gather(executor.execute(session, Operation(name="first", target="/")), late())

        assert first.output == "first"
        assert second.output == "late"
        assert strategy.logins == 2

    @pytest.mark.asyncio
    async def test_failed_relogin_is_shared(self, make_scripted_transport):
        transport = make_scripted_transport([{"status_code": 401}], delay=0.01)
        executor, session = await start(transport, SlowTokenAuth(fail_after=1))

        async def late():
            await asyncio.sleep(0.015)
            return await executor.execute(session, Operation(name="late", target="/"))

        outcomes = await asyncio.gather(
            executor.execute(session, Operation(name="first", target="/")),
            late(),
            return_exceptions=True,
        )

        for outcome in outcomes:
            assert isinstance(outcome, OperationFailed)
            assert outcome.classification == ErrorClassification.AUTHENTICATION_ERROR

    @pytest.mark.asyncio
    async def test_requires_authenticated_session(self, make_scripted_transport):
        manager = SessionManager(make_scripted_transport([ok()]))
        executor = OperationExecutor(manager)

        with pytest.raises(SessionNotReadyError):
            await executor.execute(Session(kind=TransportKind.HTTP, device="d"), Operation(target="/"))


# ═══════════════════════════════════════════════════════════════
# Chains and Batches
# ═══════════════════════════════════════════════════════════════

class TestChain:

    @pytest.mark.asyncio
    async def test_steps_see_previous_results(self, make_scripted_transport):
        transport = make_scripted_transport([lambda operation: ok(f"reply:{operation.target}")])
        executor, session = await start(transport)

        async def third(previous):
            return Operation(target=f"/detail/{len(previous)}")

        results = await executor.run_chain(session, [
            Operation(target="/list"),
            lambda previous: Operation(target=previous[0].output.replace("reply:", "/next")),
            third,
        ])

        assert [operation.target for operation in transport.sent] == ["/list", "/next/list", "/detail/2"]
        assert results[2].output == "reply:/detail/2"

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, make_scripted_transport):
        def device(operation):
            if operation.target == "/broken":
                return {"status_code": 404}
            return ok()

        transport = make_scripted_transport([device])
        executor, session = await start(transport)

        with pytest.raises(OperationFailed) as exc_info:
            await executor.run_chain(session, [
                Operation(target="/a"),
                Operation(target="/broken"),
                Operation(target="/c"),
            ])

        assert exc_info.value.classification == ErrorClassification.RESOURCE_UNAVAILABLE
        assert [operation.target for operation in transport.sent] == ["/a", "/broken"]


class TestBatch:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 5, 12])
    async def test_one_outcome_per_item_in_order(self, make_scripted_transport, size):
        def device(operation):
            index = int(operation.name)
            if index % 3 == 0:
                return TransportError("refused", unreachable=True)
            return ok(operation.name)

        transport = make_scripted_transport([device])
        executor, session = await start(transport)

        operations = [Operation(name=str(i), target=f"/{i}") for i in range(size)]
        outcomes = await executor.run_batch(session, operations)

        assert len(outcomes) == size
        for index, outcome in enumerate(outcomes):
            assert outcome.operation is operations[index]
            if index % 3 == 0:
                assert not outcome.ok
                assert outcome.classification == ErrorClassification.RESOURCE_UNAVAILABLE
                assert outcome.error_message
            else:
                assert outcome.ok
                assert outcome.result.output == str(index)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, make_scripted_transport):
        transport = make_scripted_transport([ok()], delay=0.02)
        executor, session = await start(transport, max_concurrency=2)

        outcomes = await executor.run_batch(session, [Operation(target=f"/{i}") for i in range(6)])

        assert len(outcomes) == 6
        assert transport.peak_in_flight == 2

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self, make_scripted_transport):
        def device(operation):
            if operation.target == "/slow":
                return ok("late")
            return TransportError("boom")

        transport = make_scripted_transport([device], delay=0.01)
        executor, session = await start(transport)

        outcomes = await executor.run_batch(session, [Operation(target="/fail"), Operation(target="/slow")])

        assert outcomes[0].classification == ErrorClassification.GENERIC_ERROR
        assert outcomes[1].result.output == "late"

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_scripted_transport):
        executor, session = await start(make_scripted_transport([ok()]))
        assert await executor.run_batch(session, []) == []


class TestSequentialChannel:

    @pytest.mark.asyncio
    async def test_queued_time_is_not_charged_to_deadline(self, make_scripted_transport):
        # Run back to back the four take 1.6s; each alone fits its 1.5s deadline
        transport = make_scripted_transport([ok()], delay=0.4, sequential=True)
        executor, session = await start(transport, max_concurrency=4)

        operations = [Operation(target=f"cmd{i}", timeout=0.5, retry_count=0) for i in range(4)]
        outcomes = await executor.run_batch(session, operations)

        assert [outcome.ok for outcome in outcomes] == [True] * 4
        assert transport.peak_in_flight == 1
        assert len(transport.sent) == 4

    @pytest.mark.asyncio
    async def test_slow_operation_still_times_out(self, make_scripted_transport):
        transport = make_scripted_transport([ok()], delay=5, sequential=True)
        executor, session = await start(transport)

        with patch("devpoll.engine.executor.TIMEOUT_GRACE", 0.0):
            with pytest.raises(OperationFailed) as excinfo:
                await executor.execute(session, Operation(target="cmd", timeout=0.05, retry_count=0))

        assert excinfo.value.classification == ErrorClassification.RESOURCE_UNAVAILABLE
