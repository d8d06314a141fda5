# ═══════════════════════════════════════════════════════════════
# DevPoll - CLI Tests
# ═══════════════════════════════════════════════════════════════

import json

import pytest

from devpoll.cli import build_parser, load_driver, main, parse_options
from devpoll.core.exceptions import ConfigurationError
from devpoll.drivers import CommandTableDriver, HttpMonitoringDriver


@pytest.fixture(autouse=True)
def keep_test_logging(monkeypatch):
    """main() must not replace pytest's root handlers."""
    monkeypatch.setattr("devpoll.core.logging._configured", True)


class TestLoadDriver:

    def test_builtin_names(self):
        assert isinstance(load_driver("http_monitoring"), HttpMonitoringDriver)
        assert isinstance(load_driver("command_table"), CommandTableDriver)

    def test_module_and_class(self):
        assert isinstance(load_driver("devpoll.drivers.command_table:CommandTableDriver"), CommandTableDriver)

    @pytest.mark.parametrize("spec", [
        "no_colon",
        "devpoll.drivers:Missing",
        "devpoll.does_not_exist:Driver",
        "devpoll.sink:CollectingSink",
    ])
    def test_bad_specs(self, spec):
        with pytest.raises(ConfigurationError):
            load_driver(spec)


class TestParseOptions:

    def test_pairs(self):
        assert parse_options(["command=ls -l", "fields=a=b"]) == {"command": "ls -l", "fields": "a=b"}

    @pytest.mark.parametrize("pair", ["novalue", "=value"])
    def test_bad_pairs(self, pair):
        with pytest.raises(ConfigurationError):
            parse_options([pair])

    def test_parser_requires_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--driver", "x", "--host", "h"])


class TestMain:

    def test_poll_without_probes(self, capsys):
        status = main(["poll", "--driver", "http_monitoring", "--host", "device.test"])

        output = json.loads(capsys.readouterr().out)
        assert status == 1
        assert output["success"] is False
        assert output["classification"] == "PARSING_ERROR"
        assert output["mode"] == "poll"
        assert output["device"] == "device.test"

    def test_unknown_driver(self, capsys):
        status = main(["validate", "--driver", "nowhere:Driver", "--host", "device.test"])

        output = json.loads(capsys.readouterr().out)
        assert status == 1
        assert output["success"] is False
        assert output["error_code"] == "CONFIGURATION_ERROR"

    def test_bad_option(self, capsys):
        status = main(["poll", "--driver", "http_monitoring", "--host", "h", "--option", "broken"])
        assert status == 1
        assert json.loads(capsys.readouterr().out)["error_code"] == "CONFIGURATION_ERROR"
