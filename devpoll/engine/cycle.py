# ═══════════════════════════════════════════════════════════════
# DevPoll - Polling Cycle
# validate() / poll() entry points wiring the engine together
# ═══════════════════════════════════════════════════════════════

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.exceptions import DevPollError, OperationFailed, wrap_exception
from ..core.logging import get_logger, logging_context, performance_logger
from ..transports.base import BaseTransport
from ..transports.factory import TransportFactory
from ..transports.models import BaseConnectionConfig, Operation, OperationOutcome, RawResult
from .classifier import ErrorClassification, classify_exception
from .executor import ChainStep, OperationExecutor
from .normalizer import BaseNormalizer, NormalizedRecord
from .reporter import CollisionPolicy, Reading, ResultReporter
from .session import AuthStrategy, Session, SessionManager, StatelessAuth

logger = get_logger("devpoll.engine.cycle")


# ═══════════════════════════════════════════════════════════════
# Device Parameters
# ═══════════════════════════════════════════════════════════════

class DeviceParameters(BaseModel):
    """Per-device credentials and driver options, read-only once built."""
    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    options: Dict[str, str] = Field(default_factory=dict)

    def option(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.options.get(name, default)

    def json_option(self, name: str, default: Any = None) -> Any:
        """Option holding a JSON document."""
        value = self.options.get(name)
        if value is None:
            return default
        return json.loads(value)


@runtime_checkable
class ParameterProvider(Protocol):
    def get_parameters(self) -> DeviceParameters:
        ...


class StaticParameterProvider:
    """Hands out a fixed set of parameters."""

    def __init__(self, parameters: DeviceParameters):
        self._parameters = parameters

    def get_parameters(self) -> DeviceParameters:
        return self._parameters


class DeviceSettings(BaseSettings):
    """Device parameters from ``DEVPOLL_DEVICE_*`` variables (options as JSON)."""
    model_config = SettingsConfigDict(env_prefix="DEVPOLL_DEVICE_", extra="ignore")

    host: str
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    options: Dict[str, str] = Field(default_factory=dict)


class EnvParameterProvider:
    """Reads device parameters from the environment on every call."""

    def get_parameters(self) -> DeviceParameters:
        settings = DeviceSettings()
        return DeviceParameters(**settings.model_dump())


# ═══════════════════════════════════════════════════════════════
# Drivers
# ═══════════════════════════════════════════════════════════════

class CycleContext:
    """What a driver gets to work with during one cycle."""

    def __init__(
        self,
        parameters: DeviceParameters,
        session: Session,
        executor: OperationExecutor,
        reporter: ResultReporter
    ):
        self.parameters = parameters
        self.session = session
        self.executor = executor
        self.reporter = reporter

    async def execute(self, operation: Operation) -> RawResult:
        return await self.executor.execute(self.session, operation)

    async def run_chain(self, steps: Sequence[ChainStep]) -> List[RawResult]:
        return await self.executor.run_chain(self.session, steps)

    async def run_batch(
        self,
        operations: Sequence[Operation],
        max_concurrency: Optional[int] = None
    ) -> List[OperationOutcome]:
        return await self.executor.run_batch(self.session, operations, max_concurrency)

    @staticmethod
    def normalize(raw: RawResult, normalizer: BaseNormalizer) -> List[NormalizedRecord]:
        return normalizer.normalize(raw)


class DeviceDriver(ABC):
    """
    Device-specific knowledge plugged into a PollingCycle.

    A driver says how to reach the device (``connection_config``), how to
    log in (``auth_strategy``) and what to collect (``poll``). It must not
    keep state between cycles.
    """

    name: str = "driver"
    collision_policy: CollisionPolicy = CollisionPolicy.REJECT
    max_concurrency: Optional[int] = None

    @abstractmethod
    def connection_config(self, parameters: DeviceParameters) -> BaseConnectionConfig:
        """Connection configuration for this device."""

    def auth_strategy(self, parameters: DeviceParameters) -> AuthStrategy:
        return StatelessAuth()

    def create_transport(self, config: BaseConnectionConfig) -> BaseTransport:
        return TransportFactory.create(config)

    async def validate(self, context: CycleContext) -> None:
        """Check that the device answers and the credentials work. Login already happened."""
        probe = self.probe_operation(context.parameters)
        if probe is None:
            logger.warning(f"{self.name} has no probe operation, validate only checked the login")
            return
        await context.execute(probe)

    def probe_operation(self, parameters: DeviceParameters) -> Optional[Operation]:
        return None

    @abstractmethod
    async def poll(self, context: CycleContext) -> None:
        """Collect data and report it through ``context.reporter``."""


# ═══════════════════════════════════════════════════════════════
# Cycle
# ═══════════════════════════════════════════════════════════════

class CycleResult(BaseModel):
    """Binary outcome of one cycle."""

    cycle_id: str
    mode: str
    device: str
    success: bool
    classification: Optional[ErrorClassification] = None
    message: str = ""
    readings: List[Reading] = Field(default_factory=list)
    tables: List[Dict[str, Any]] = Field(default_factory=list)
    logins: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class PollingCycle:
    """
    One validate or poll run against one device.

    Everything (transport, session, reporter) is created when the run
    starts and torn down when it ends. The sink receives exactly one
    call: ``success`` with every reading and table, or ``failure`` with
    a single classification and no partial data.

    Usage:
        cycle = PollingCycle(MyDriver(), parameters, sink)
        result = await cycle.poll()
    """

    def __init__(
        self,
        driver: DeviceDriver,
        parameters: Union[DeviceParameters, ParameterProvider],
        sink: Any
    ):
        self.driver = driver
        self.parameters = parameters
        self.sink = sink

    async def validate(self) -> CycleResult:
        return await self._run("validate")

    async def poll(self) -> CycleResult:
        return await self._run("poll")

    def _resolve_parameters(self) -> DeviceParameters:
        if isinstance(self.parameters, DeviceParameters):
            return self.parameters
        return self.parameters.get_parameters()

    async def _run(self, mode: str) -> CycleResult:
        cycle_id = uuid4().hex[:12]
        started_at = datetime.now(timezone.utc)
        device = self.parameters.host if isinstance(self.parameters, DeviceParameters) else "unknown"

        transport: Optional[BaseTransport] = None
        manager: Optional[SessionManager] = None
        reporter = ResultReporter(self.driver.collision_policy)
        classification: Optional[ErrorClassification] = None
        message = ""

        with logging_context(cycle_id=cycle_id, device=device):
            with performance_logger.measure(f"{self.driver.name}.{mode}"):
                try:
                    parameters = self._resolve_parameters()
                    device = parameters.host

                    transport = self.driver.create_transport(self.driver.connection_config(parameters))
                    manager = SessionManager(transport, self.driver.auth_strategy(parameters), device=device)
                    session = await manager.login()

                    executor = OperationExecutor(manager, self.driver.max_concurrency)
                    context = CycleContext(parameters, session, executor, reporter)

                    if mode == "validate":
                        await self.driver.validate(context)
                    else:
                        await self.driver.poll(context)

                except OperationFailed as e:
                    classification = classify_exception(e)
                    message = e.message
                except Exception as e:
                    # Anything unexpected still ends the cycle with one classification
                    error = e if isinstance(e, DevPollError) else wrap_exception(e, str(e) or type(e).__name__)
                    classification = classify_exception(e)
                    message = error.message
                    logger.exception(f"Cycle aborted: {message}", error_code=error.error_code)
                finally:
                    if transport is not None:
                        await transport.close()

            result = CycleResult(
                cycle_id=cycle_id,
                mode=mode,
                device=device,
                success=classification is None,
                classification=classification,
                message=message,
                logins=manager.session.login_count if manager and manager.session else 0,
                duration_ms=int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000),
            )

            if result.success:
                result.readings = reporter.readings
                result.tables = [table.result() for table in reporter.tables]
                logger.info(
                    f"{mode} succeeded: {len(result.readings)} reading(s), {len(result.tables)} table(s)"
                )
                self.sink.success(result.readings, result.tables)
            else:
                logger.warning(f"{mode} failed: {classification.value}: {message}")
                self.sink.failure(classification, message)

            return result
