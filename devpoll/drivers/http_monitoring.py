# ═══════════════════════════════════════════════════════════════
# DevPoll - HTTP Monitoring Driver
# Probe a list of URLs and tabulate one extracted value per probe
# ═══════════════════════════════════════════════════════════════

import json
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..core.exceptions import OperationFailed, PayloadParseError
from ..core.logging import get_logger
from ..engine.classifier import ErrorClassification
from ..engine.cycle import CycleContext, DeviceDriver, DeviceParameters
from ..engine.normalizer import DEFAULT_SENTINEL, resolve_path
from ..transports.models import AuthMode, HttpConfig, Operation, OperationOutcome

logger = get_logger("devpoll.drivers.http_monitoring")

TABLE_LABEL = "HTTP Monitoring"
TABLE_COLUMNS = ["Link", "Port", "HTTP Method", "Extracted value", "Validation"]


class CssExtractor(BaseModel):
    """Pick one node with a CSS selector and read its text or value."""
    query: str = Field(..., min_length=1)
    node_index: int = Field(default=0, ge=0)
    value_location: str = Field(default="text")

    @field_validator("value_location")
    @classmethod
    def _known_location(cls, value: str) -> str:
        if value not in ("text", "value"):
            raise ValueError("value_location must be 'text' or 'value'")
        return value


class Probe(BaseModel):
    """One monitored URL."""
    id: str = Field(..., min_length=1)
    link: str = Field(..., min_length=1)
    method: str = Field(default="GET")
    protocol: str = Field(default="http")
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    content_type: str = Field(default="application/x-www-form-urlencoded")
    request_body: Optional[Union[str, Dict[str, Any]]] = None
    response_type: str = Field(default="html")

    # Exactly one extractor, depending on the response type
    regex: Optional[str] = None
    css: Optional[CssExtractor] = None
    json_path: Optional[str] = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("regex")
    @classmethod
    def _valid_regex(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid regex: {e}")
        return value

    @model_validator(mode="after")
    def _extractor_matches_response(self) -> "Probe":
        if self.response_type == "html" and bool(self.regex) == bool(self.css):
            raise ValueError("html probes need exactly one of regex or css")
        if self.response_type == "text" and not self.regex:
            raise ValueError("text probes need a regex")
        if self.response_type == "json" and not self.json_path:
            raise ValueError("json probes need a json_path")
        if self.response_type not in ("html", "text", "json"):
            raise ValueError(f"unsupported response_type: {self.response_type}")
        return self

    @property
    def effective_port(self) -> int:
        return self.port or (443 if self.protocol == "https" else 80)

    def url(self, host: str) -> str:
        link = self.link if self.link.startswith("/") else f"/{self.link}"
        return f"{self.protocol}://{host}:{self.effective_port}{link}"

    def operation(self, host: str) -> Operation:
        body: Dict[str, Any] = {}
        if isinstance(self.request_body, dict):
            if self.content_type == "application/json":
                body["json_body"] = self.request_body
            else:
                body["form"] = {key: str(value) for key, value in self.request_body.items()}
        elif isinstance(self.request_body, str):
            body["content"] = self.request_body

        return Operation(
            name=self.id,
            target=self.url(host),
            method=self.method,
            headers={"Content-Type": self.content_type},
            context={"probe": self.id},
            **body
        )

    def extract(self, body: str) -> Optional[str]:
        """Extract the monitored value from a response body, or None."""
        if self.regex:
            match = re.search(self.regex, body)
            if not match:
                return None
            return match.group(1) if match.groups() else match.group(0)

        if self.css:
            nodes = BeautifulSoup(body, "html.parser").select(self.css.query)
            if self.css.node_index >= len(nodes):
                return None
            node = nodes[self.css.node_index]
            if self.css.value_location == "value":
                return node.get("value")
            return node.get_text(strip=True)

        try:
            document = json.loads(body)
        except ValueError as e:
            raise PayloadParseError(f"Invalid JSON: {e}", shape="json", original_error=e)
        value = resolve_path(document, self.json_path)
        return None if value is None else str(value)


class HttpMonitoringDriver(DeviceDriver):
    """
    Generic HTTP monitoring.

    Probes come from the constructor or from the ``probes`` option (a
    JSON list). They run as one independent batch. An authentication
    failure on any probe fails the cycle; any other probe failure is
    recorded in that probe's row with the classification as validation.
    """

    name = "http_monitoring"

    def __init__(self, probes: Optional[List[Union[Probe, Dict[str, Any]]]] = None):
        self._probes = probes

    def probes(self, parameters: DeviceParameters) -> List[Probe]:
        """
        Validated probe list.

        Raises:
            PayloadParseError: Missing or malformed probe definitions
        """
        raw = self._probes if self._probes is not None else parameters.json_option("probes", [])
        if not raw:
            raise PayloadParseError("No HTTP probes configured", shape="probes")

        probes = []
        for index, probe in enumerate(raw):
            try:
                probes.append(probe if isinstance(probe, Probe) else Probe(**probe))
            except (ValidationError, TypeError) as e:
                raise PayloadParseError(
                    f"Invalid probe at index {index}: {e}",
                    shape="probes",
                    original_error=e
                )
        return probes

    def connection_config(self, parameters: DeviceParameters) -> HttpConfig:
        return HttpConfig(
            host=parameters.host,
            port=parameters.port,
            protocol=parameters.option("protocol", "http"),
            auth_mode=AuthMode.BASIC if parameters.username else AuthMode.NONE,
            username=parameters.username,
            password=parameters.password,
        )

    def probe_operation(self, parameters: DeviceParameters) -> Optional[Operation]:
        return self.probes(parameters)[0].operation(parameters.host)

    async def poll(self, context: CycleContext) -> None:
        probes = self.probes(context.parameters)
        host = context.parameters.host

        outcomes = await context.run_batch([probe.operation(host) for probe in probes])

        table = context.reporter.table(TABLE_LABEL, TABLE_COLUMNS)
        for probe, outcome in zip(probes, outcomes):
            value, validation = self._evaluate(probe, outcome)
            context.reporter.add_row(
                table,
                probe.id,
                [probe.link, str(probe.effective_port), probe.method, value, validation]
            )

    @staticmethod
    def _evaluate(probe: Probe, outcome: OperationOutcome) -> Tuple[str, str]:
        if outcome.classification == ErrorClassification.AUTHENTICATION_ERROR:
            raise OperationFailed(
                ErrorClassification.AUTHENTICATION_ERROR,
                f"Probe {probe.id} was refused: {outcome.error_message}",
                operation=probe.id
            )

        if not outcome.ok:
            logger.warning(f"Probe {probe.id} failed: {outcome.classification.value}")
            return DEFAULT_SENTINEL, outcome.classification.value

        try:
            value = probe.extract(outcome.result.output)
        except PayloadParseError as e:
            logger.warning(f"Probe {probe.id} returned an unreadable body: {e.message}")
            return DEFAULT_SENTINEL, ErrorClassification.PARSING_ERROR.value

        if value is None or not value.strip():
            return DEFAULT_SENTINEL, "false"
        return value, "true"
