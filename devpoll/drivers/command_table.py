# ═══════════════════════════════════════════════════════════════
# DevPoll - Command Table Driver
# Run one remote command and tabulate its key:value blocks
# ═══════════════════════════════════════════════════════════════

from typing import List, Optional, Tuple

from ..core.exceptions import ConfigurationError
from ..engine.cycle import CycleContext, DeviceDriver, DeviceParameters
from ..engine.normalizer import DelimitedNormalizer, FieldSpec
from ..engine.reporter import CollisionPolicy, ValueType
from ..transports.models import Operation, SSHConfig, SuccessPredicate, TransportKind


class CommandTableDriver(DeviceDriver):
    """
    Tabulates the output of a command printing blank-line separated
    ``key: value`` blocks (``lsblk -P``-like, ``Get-X | Format-List``).

    Options (constructor arguments win over device options):
        command:   the command to run
        key_field: the key used as record id
        fields:    comma separated keys shown as columns
        table:     table label
        probe_command: command run by validate() (default ``echo ok``)

    Blocks missing a column key get ``N/A``; blocks missing the key field
    fail the payload.
    """

    name = "command_table"
    collision_policy = CollisionPolicy.DISAMBIGUATE

    def __init__(
        self,
        command: Optional[str] = None,
        key_field: Optional[str] = None,
        fields: Optional[List[str]] = None,
        table: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.command = command
        self.key_field = key_field
        self.fields = fields
        self.table_label = table
        self.timeout = timeout

    def _settings(self, parameters: DeviceParameters) -> Tuple[str, str, List[str], str]:
        command = self.command or parameters.option("command")
        key_field = self.key_field or parameters.option("key_field")
        fields = self.fields
        if fields is None and parameters.option("fields"):
            fields = [field.strip() for field in parameters.option("fields").split(",") if field.strip()]
        table = self.table_label or parameters.option("table", "Command Output")

        if not command or not key_field or not fields:
            raise ConfigurationError("command, key_field and fields are required")
        return command, key_field, fields, table

    def connection_config(self, parameters: DeviceParameters) -> SSHConfig:
        return SSHConfig(
            kind=TransportKind.COMMAND,
            host=parameters.host,
            port=parameters.port or 22,
            username=parameters.username or "",
            password=parameters.password,
        )

    def probe_operation(self, parameters: DeviceParameters) -> Operation:
        return Operation(
            name="validate",
            target=parameters.option("probe_command", "echo ok"),
            success=SuccessPredicate(exit_codes={0}),
        )

    async def poll(self, context: CycleContext) -> None:
        command, key_field, fields, label = self._settings(context.parameters)

        operation_options = {"timeout": self.timeout} if self.timeout else {}
        result = await context.execute(Operation(
            name=self.name,
            target=command,
            success=SuccessPredicate(exit_codes={0}),
            **operation_options
        ))

        normalizer = DelimitedNormalizer(
            [FieldSpec(name=key_field, required=True)] + [FieldSpec(name=field) for field in fields]
        )
        records = context.normalize(result, normalizer)

        table = context.reporter.table(label, fields)
        for record in records:
            context.reporter.add_row(table, record[key_field], [record[field] for field in fields])

        context.reporter.reading("record-count", "Records", len(records), value_type=ValueType.NUMBER)
