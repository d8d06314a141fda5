# ═══════════════════════════════════════════════════════════════
# DevPoll - Operation Executor
# Dependent chains and bounded fan-out batches with retry budgets
# ═══════════════════════════════════════════════════════════════

import asyncio
import inspect
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from ..core.config import get_settings
from ..core.exceptions import ConfigurationError, OperationFailed, TransportError
from ..core.logging import get_logger, logging_context
from ..transports.models import BackoffPolicy, Operation, OperationOutcome, RawResult
from .classifier import ErrorClassification, FailureSignal, classify, classify_exception
from .session import TIMEOUT_GRACE, Session, SessionManager

logger = get_logger("devpoll.engine.executor")

StepFactory = Callable[[List[RawResult]], Union[Operation, Awaitable[Operation]]]
ChainStep = Union[Operation, StepFactory]


class OperationExecutor:
    """
    Runs operations against an authenticated session.

    Every operation gets ``retry_count + 1`` attempts. An attempt fails
    when the transport raises or the success predicate rejects the
    result; after the last failed attempt the final failure signal is
    classified and OperationFailed is raised.

    An expired session (as judged by the session manager) triggers one
    re-login and the attempt is re-issued without consuming budget. A
    second expiry for the same operation is an authentication failure.

    Usage:
        executor = OperationExecutor(manager)
        results = await executor.run_chain(session, [list_op, lambda prev: detail_op(prev[0])])
        outcomes = await executor.run_batch(session, probes, max_concurrency=4)
    """

    def __init__(self, sessions: SessionManager, max_concurrency: Optional[int] = None):
        self.sessions = sessions
        self.max_concurrency = max_concurrency or get_settings().max_concurrency

    # ═══════════════════════════════════════════════════════════
    # Single Operation
    # ═══════════════════════════════════════════════════════════

    async def execute(self, session: Session, operation: Operation) -> RawResult:
        """
        Execute one operation within its retry budget.

        Raises:
            SessionNotReadyError: If the session is not authenticated
            OperationFailed: When every attempt failed
        """
        await self.sessions.wait_ready(session)

        with logging_context(operation=operation.label):
            return await self._execute_with_retry(session, operation)

    async def _execute_with_retry(self, session: Session, operation: Operation) -> RawResult:
        max_attempts = operation.retry_count + 1
        attempt = 0
        refreshed = False
        signal: Optional[FailureSignal] = None
        last_error: Optional[Exception] = None

        while attempt < max_attempts:
            if attempt > 0 and signal is not None:
                logger.info(f"Retry attempt {attempt}/{operation.retry_count} for {operation.label}")
                if operation.backoff == BackoffPolicy.FIXED and operation.retry_delay > 0:
                    await asyncio.sleep(operation.retry_delay)

            attempt += 1
            await self.sessions.wait_ready(session)
            generation = session.generation
            request = session.authorize(operation)

            transport = self.sessions.transport
            try:
                # The deadline starts once the channel is ours
                async with transport.reserve():
                    result = await asyncio.wait_for(
                        transport.send_reserved(request),
                        timeout=operation.timeout + TIMEOUT_GRACE
                    )
            except asyncio.TimeoutError as e:
                signal = FailureSignal(timed_out=True, message=f"{operation.label} timed out after {operation.timeout}s")
                last_error = e
                logger.warning(signal.message)
                continue
            except TransportError as e:
                signal = FailureSignal.from_exception(e)
                last_error = e
                logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e.message}")
                continue
            except ConfigurationError as e:
                raise OperationFailed(
                    ErrorClassification.GENERIC_ERROR,
                    e.message,
                    operation=operation.label,
                    attempts=attempt,
                    original_error=e
                )

            result.attempts = attempt

            if self.sessions.is_expired(session, result):
                if refreshed:
                    raise OperationFailed(
                        ErrorClassification.AUTHENTICATION_ERROR,
                        f"Session expired again after re-login on {operation.label}",
                        operation=operation.label,
                        attempts=attempt,
                        signal=FailureSignal.from_result(result, "session expired")
                    )
                await self.sessions.refresh(session, generation)
                refreshed = True
                attempt -= 1
                signal = None
                continue

            passed, reason = operation.success.evaluate(result)
            if passed:
                return result

            signal = FailureSignal.from_result(result, reason)
            last_error = None
            logger.warning(f"Attempt {attempt}/{max_attempts} rejected: {reason}")

        classification = classify(signal)
        logger.error(
            f"{operation.label} failed after {max_attempts} attempt(s): {classification.value}",
            classification=classification.value
        )
        raise OperationFailed(
            classification,
            signal.message or f"{operation.label} failed",
            operation=operation.label,
            attempts=max_attempts,
            signal=signal,
            original_error=last_error
        )

    # ═══════════════════════════════════════════════════════════
    # Chains and Batches
    # ═══════════════════════════════════════════════════════════

    async def run_chain(self, session: Session, steps: Sequence[ChainStep]) -> List[RawResult]:
        """
        Run dependent operations in order.

        A step is an Operation or a callable receiving the results so far
        and returning the next Operation (sync or async). The chain stops
        at the first terminal failure.

        Raises:
            OperationFailed: From the first failing step
        """
        results: List[RawResult] = []

        for step in steps:
            if isinstance(step, Operation):
                operation = step
            else:
                operation = step(list(results))
                if inspect.isawaitable(operation):
                    operation = await operation
            results.append(await self.execute(session, operation))

        return results

    async def run_batch(
        self,
        session: Session,
        operations: Sequence[Operation],
        max_concurrency: Optional[int] = None
    ) -> List[OperationOutcome]:
        """
        Run independent operations concurrently and collect every outcome.

        One failure never cancels its siblings. Outcomes come back in
        input order, one per operation.
        """
        semaphore = asyncio.Semaphore(max_concurrency or self.max_concurrency)

        async def execute_with_semaphore(operation: Operation) -> RawResult:
            async with semaphore:
                return await self.execute(session, operation)

        tasks = [execute_with_semaphore(operation) for operation in operations]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for operation, result in zip(operations, results):
            if isinstance(result, RawResult):
                outcomes.append(OperationOutcome(operation=operation, result=result))
            else:
                outcomes.append(OperationOutcome(
                    operation=operation,
                    classification=classify_exception(result),
                    error_message=getattr(result, "message", None) or str(result),
                ))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(f"Batch finished: {len(outcomes) - failed}/{len(outcomes)} succeeded")
        return outcomes
