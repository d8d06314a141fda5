# ═══════════════════════════════════════════════════════════════
# DevPoll - Command Line Entry Point
# Run validate/poll against one device and print the CycleResult
# ═══════════════════════════════════════════════════════════════

import argparse
import asyncio
import importlib
import json
import os
import sys
from typing import Dict, List, Optional

from pydantic import SecretStr

from .core.exceptions import ConfigurationError
from .core.logging import configure_logging, get_logger
from .engine.cycle import DeviceDriver, DeviceParameters, PollingCycle
from .sink import CollectingSink

logger = get_logger("devpoll.cli")

BUILTIN_DRIVERS = {
    "http_monitoring": "devpoll.drivers.http_monitoring:HttpMonitoringDriver",
    "command_table": "devpoll.drivers.command_table:CommandTableDriver",
}


def load_driver(spec: str) -> DeviceDriver:
    """
    Instantiate a driver from ``module:Class`` or a built-in name.

    Raises:
        ConfigurationError: If the driver cannot be imported
    """
    spec = BUILTIN_DRIVERS.get(spec, spec)
    module_name, _, class_name = spec.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(f"Driver must look like module:Class, got {spec!r}")

    try:
        driver_class = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load driver {spec}: {e}")

    if not (isinstance(driver_class, type) and issubclass(driver_class, DeviceDriver)):
        raise ConfigurationError(f"{spec} is not a DeviceDriver")
    return driver_class()


def parse_options(pairs: List[str]) -> Dict[str, str]:
    options = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key:
            raise ConfigurationError(f"Options must look like key=value, got {pair!r}")
        options[key] = value
    return options


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devpoll",
        description="Poll one device and print the cycle result as JSON",
    )
    parser.add_argument("mode", choices=["validate", "poll"])
    parser.add_argument("--driver", required=True, help="module:Class or a built-in driver name")
    parser.add_argument("--host", required=True)
    parser.add_argument("--port", type=int)
    parser.add_argument("--username")
    parser.add_argument("--password-env", metavar="VAR", help="Environment variable holding the password")
    parser.add_argument("--option", action="append", default=[], metavar="KEY=VALUE")
    parser.add_argument("--log-level")
    parser.add_argument("--log-format", choices=["console", "json"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI. Returns the process exit status."""
    args = build_parser().parse_args(argv)
    configure_logging(log_level=args.log_level, log_format=args.log_format)

    try:
        driver = load_driver(args.driver)
        password = os.environ.get(args.password_env) if args.password_env else None
        parameters = DeviceParameters(
            host=args.host,
            port=args.port,
            username=args.username,
            password=SecretStr(password) if password is not None else None,
            options=parse_options(args.option),
        )
    except ConfigurationError as e:
        logger.error(e.message)
        print(json.dumps({"success": False, **e.to_dict()}))
        return 1

    result = asyncio.run(getattr(PollingCycle(driver, parameters, CollectingSink()), args.mode)())
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
