"""Tests for the plugin contract, loader and built-in probes."""

from __future__ import annotations

import socket
import sys
import textwrap
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from infrahealth.checks.models import ExecutionContext
from infrahealth.errors import PluginError, PluginTimeout
from infrahealth.plugins.builtin import (
    BUILTIN_PLUGINS,
    command_probe,
    dns_probe,
    http_probe,
    tcp_probe,
)
from infrahealth.plugins.contract import PluginCall, normalize_output
from infrahealth.plugins.loader import resolve_plugin


def _call(params: dict, timeout: float = 5.0, check_id: str = "T-1") -> PluginCall:
    return PluginCall(check_id=check_id, params=params, deadline=time.monotonic() + timeout)


# ── Contract ─────────────────────────────────────────────────────────────────


class TestNormalizeOutput:
    def test_mapping(self) -> None:
        fields, findings = normalize_output({"lag": 3})
        assert fields == {"lag": 3}
        assert findings is None

    def test_none_is_empty_record(self) -> None:
        fields, findings = normalize_output(None)
        assert dict(fields) == {}
        assert findings is None

    def test_findings_list(self) -> None:
        fields, findings = normalize_output([{"dc": "dc01"}, {"dc": "dc02"}])
        assert dict(fields) == {}
        assert [f["dc"] for f in findings] == ["dc01", "dc02"]

    def test_generator_accepted(self) -> None:
        _, findings = normalize_output({"n": i} for i in range(3))
        assert len(findings) == 3

    def test_empty_list_is_zero_findings(self) -> None:
        _, findings = normalize_output([])
        assert findings == ()

    @pytest.mark.parametrize("output", ["text", 42, [{"ok": 1}, "nope"], b"bytes"])
    def test_unsupported(self, output) -> None:
        with pytest.raises(PluginError):
            normalize_output(output)


class TestPluginCall:
    def test_remaining_and_cancel(self) -> None:
        call = _call({}, timeout=10)
        assert 9 < call.remaining <= 10
        assert not call.cancelled
        call.cancel_event.set()
        assert call.cancelled
        with pytest.raises(PluginError, match="cancelled"):
            call.raise_if_cancelled()

    def test_remaining_never_negative(self) -> None:
        call = PluginCall(check_id="x", params={}, deadline=time.monotonic() - 5)
        assert call.remaining == 0.0


# ── Loader ───────────────────────────────────────────────────────────────────


class TestResolvePlugin:
    def test_builtin(self) -> None:
        assert resolve_plugin("builtin:http") is BUILTIN_PLUGINS["http"]

    def test_module_attribute(self) -> None:
        assert resolve_plugin("helpers:ok_plugin").__name__ == "ok_plugin"

    def test_dotted_attribute(self) -> None:
        assert resolve_plugin("os:path.join") is __import__("os").path.join

    def test_cached(self) -> None:
        assert resolve_plugin("helpers:ok_plugin") is resolve_plugin("helpers:ok_plugin")

    @pytest.mark.parametrize("ref,match", [
        ("builtin:ftp", "Unknown builtin"),
        ("no_colon_here", "Invalid plugin reference"),
        ("definitely_missing_module_xyz:probe", "Cannot import"),
        ("os:nope_not_here", "not found"),
        ("os:sep", "not callable"),
    ])
    def test_errors(self, ref, match) -> None:
        with pytest.raises(PluginError, match=match):
            resolve_plugin(ref)


# ── Built-in probes ──────────────────────────────────────────────────────────


class TestHTTPProbe:
    @patch("infrahealth.plugins.builtin.httpx.Client")
    def test_single_url(self, mock_client_cls, context) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.request.return_value = MagicMock(status_code=200)

        record = http_probe(context, _call({"url": "https://app/health"}))
        assert record["status_code"] == 200
        assert record["ok"] is True
        assert record["error"] is None
        client.request.assert_called_once_with("GET", "https://app/health")

    @patch("infrahealth.plugins.builtin.httpx.Client")
    def test_unexpected_status(self, mock_client_cls, context) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.request.return_value = MagicMock(status_code=503)

        record = http_probe(context, _call({"url": "https://app/health"}))
        assert record["ok"] is False
        assert record["status_code"] == 503

    @patch("infrahealth.plugins.builtin.httpx.Client")
    def test_timeout_recorded_not_raised(self, mock_client_cls, context) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.request.side_effect = httpx.ReadTimeout("slow")

        record = http_probe(context, _call({"url": "https://app/health", "timeout": 1}))
        assert record["ok"] is False
        assert "Timed out" in record["error"]

    @patch("infrahealth.plugins.builtin.httpx.Client")
    def test_fans_out_over_inventory(self, mock_client_cls, context) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.request.return_value = MagicMock(status_code=200)

        records = http_probe(context, _call({"targets_from": "endpoints"}))
        assert [r["url"] for r in records] == ["https://intranet.corp.example.com/health"]

    def test_missing_target_param(self, context) -> None:
        with pytest.raises(PluginError, match="Missing 'url'"):
            http_probe(context, _call({}))

    def test_unknown_inventory_key(self, context) -> None:
        with pytest.raises(PluginError, match="no 'routers'"):
            http_probe(context, _call({"targets_from": "routers"}))


class TestDNSProbe:
    def test_localhost_resolves(self, context) -> None:
        record = dns_probe(context, _call({"hostname": "localhost"}))
        assert record["resolved"] is True
        assert record["addresses"]

    def test_invalid_hostname(self, context) -> None:
        record = dns_probe(context, _call({"hostname": "this-host-does-not-exist-xyz.invalid"}))
        assert record["resolved"] is False
        assert record["error"]

    @patch("infrahealth.plugins.builtin.socket.getaddrinfo")
    def test_targets_from_inventory_field(self, mock_gai, context) -> None:
        mock_gai.return_value = [(socket.AF_INET, 0, 0, "", ("10.0.0.1", 0))]
        records = dns_probe(context, _call({"targets_from": "domain_controllers", "target_field": "hostname"}))
        assert [r["hostname"] for r in records] == ["dc01.corp.example.com", "dc02.corp.example.com"]
        assert all(r["addresses"] == ["10.0.0.1"] for r in records)

    def test_fan_out_stops_when_cancelled(self, context) -> None:
        call = _call({"targets": ["localhost", "localhost"]})
        call.cancel_event.set()
        with pytest.raises(PluginError, match="cancelled"):
            dns_probe(context, call)


class TestTCPProbe:
    def test_closed_port(self, context) -> None:
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        record = tcp_probe(context, _call({"hostname": "127.0.0.1", "port": port, "timeout": 1}))
        assert record["open"] is False
        assert record["error"]

    def test_open_port(self, context) -> None:
        with socket.socket() as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]
            record = tcp_probe(context, _call({"hostname": "127.0.0.1", "port": port}))
        assert record["open"] is True
        assert record["error"] is None


class TestCommandProbe:
    def _script(self, tmp_path: Path, body: str) -> list[str]:
        path = tmp_path / "probe.py"
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return [sys.executable, str(path)]

    def test_parses_json_and_receives_context(self, tmp_path: Path, context: ExecutionContext) -> None:
        cmd = self._script(tmp_path, """
            import json, sys
            payload = json.load(sys.stdin)
            print(json.dumps({
                "target": payload["context"]["target"],
                "threshold": payload["params"]["threshold"],
                "check": payload["check_id"],
            }))
        """)
        out = command_probe(context, _call({"command": cmd, "threshold": 5}, check_id="CMD-1"))
        assert out == {"target": "corp.example.com", "threshold": 5, "check": "CMD-1"}

    def test_array_output_is_findings(self, tmp_path: Path, context) -> None:
        cmd = self._script(tmp_path, """
            import json
            print(json.dumps([{"dc": "dc01"}, {"dc": "dc02"}]))
        """)
        assert len(command_probe(context, _call({"command": cmd}))) == 2

    def test_empty_output(self, tmp_path: Path, context) -> None:
        cmd = self._script(tmp_path, "pass\n")
        assert command_probe(context, _call({"command": cmd})) is None

    def test_nonzero_exit(self, tmp_path: Path, context) -> None:
        cmd = self._script(tmp_path, """
            import sys
            sys.stderr.write("access denied")
            sys.exit(3)
        """)
        with pytest.raises(PluginError, match="exited with 3: access denied"):
            command_probe(context, _call({"command": cmd}))

    def test_non_json_output(self, tmp_path: Path, context) -> None:
        cmd = self._script(tmp_path, "print('hello')\n")
        with pytest.raises(PluginError, match="not JSON"):
            command_probe(context, _call({"command": cmd}))

    def test_killed_at_deadline(self, tmp_path: Path, context) -> None:
        cmd = self._script(tmp_path, "import time\ntime.sleep(10)\n")
        t0 = time.monotonic()
        with pytest.raises(PluginTimeout):
            command_probe(context, _call({"command": cmd}, timeout=0.5))
        assert time.monotonic() - t0 < 5

    def test_missing_command(self, context) -> None:
        with pytest.raises(PluginError, match="Missing 'command'"):
            command_probe(context, _call({}))

    def test_unknown_executable(self, context) -> None:
        with pytest.raises(PluginError, match="Cannot start"):
            command_probe(context, _call({"command": "/nonexistent/probe-binary"}))
