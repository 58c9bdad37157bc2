"""Built-in probes: HTTP(S), TLS cert expiry, DNS resolve, TCP connect, command.

Probes report facts, never verdicts: every target yields a record with the
measured values and an ``error`` field, and the check's rules decide what
is healthy. Network probes fan out over several targets when given
``targets`` (a list in params) or ``targets_from`` (an inventory key); with
a single ``url``/``hostname`` they return one record.
"""

from __future__ import annotations

import json
import socket
import ssl
import subprocess
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import httpx

from infrahealth.checks.models import ExecutionContext, thaw
from infrahealth.errors import PluginError, PluginTimeout
from infrahealth.plugins.contract import PluginCall, PluginOutput

DEFAULT_TIMEOUT_S = 10.0


# ── Target fan-out ───────────────────────────────────────────────────────────


def _targets(context: ExecutionContext, call: PluginCall, single_key: str) -> list[Any] | None:
    """Targets to probe, or None for single-record mode."""
    params = call.params
    if "targets" in params:
        return list(params["targets"])
    if "targets_from" in params:
        items = context.get(params["targets_from"])
        if items is None:
            raise PluginError(f"Inventory has no '{params['targets_from']}' entry")
        key = params.get("target_field", single_key)
        targets = []
        for item in items:
            targets.append(item.get(key) if isinstance(item, Mapping) else item)
        return targets
    if single_key not in params:
        raise PluginError(f"Missing '{single_key}', 'targets' or 'targets_from' param")
    return None


def _fan_out(
    context: ExecutionContext,
    call: PluginCall,
    single_key: str,
    probe: Callable[[Any, float], dict[str, Any]],
) -> PluginOutput:
    per_target_timeout = float(call.params.get("timeout", DEFAULT_TIMEOUT_S))

    def budget() -> float:
        return max(min(per_target_timeout, call.remaining), 0.001)

    targets = _targets(context, call, single_key)
    if targets is None:
        return probe(call.params[single_key], budget())

    records = []
    for target in targets:
        call.raise_if_cancelled()
        records.append(probe(target, budget()))
    return records


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


# ── Probes ───────────────────────────────────────────────────────────────────


def http_probe(context: ExecutionContext, call: PluginCall) -> PluginOutput:
    """HTTP(S) request with status code + latency."""
    method = str(call.params.get("method", "GET"))
    expected = int(call.params.get("expected_status", 200))
    verify = bool(call.params.get("verify", True))

    def probe(url: str, timeout: float) -> dict[str, Any]:
        t0 = time.perf_counter()
        record: dict[str, Any] = {
            "url": url, "status_code": None, "latency_ms": None, "ok": False, "error": None,
        }
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True, verify=verify) as client:
                resp = client.request(method, url)
            record["latency_ms"] = _elapsed_ms(t0)
            record["status_code"] = resp.status_code
            record["ok"] = resp.status_code == expected
        except httpx.TimeoutException:
            record["latency_ms"] = _elapsed_ms(t0)
            record["error"] = f"Timed out after {timeout:.1f}s"
        except Exception as e:
            record["latency_ms"] = _elapsed_ms(t0)
            record["error"] = f"{type(e).__name__}: {e}"
        return record

    return _fan_out(context, call, "url", probe)


def tls_probe(context: ExecutionContext, call: PluginCall) -> PluginOutput:
    """TLS certificate expiry in days."""
    port = int(call.params.get("port", 443))

    def probe(hostname: str, timeout: float) -> dict[str, Any]:
        record: dict[str, Any] = {
            "hostname": hostname, "port": port, "days_left": None, "expiry": None, "error": None,
        }
        try:
            ctx = ssl.create_default_context()
            with socket.create_connection((hostname, port), timeout=timeout) as sock:
                with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                    cert = ssock.getpeercert()
            if not cert:
                record["error"] = "No certificate returned"
                return record
            expiry = datetime.strptime(cert["notAfter"], "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
            record["expiry"] = expiry.isoformat()
            record["days_left"] = (expiry - datetime.now(timezone.utc)).days
        except Exception as e:
            record["error"] = f"{type(e).__name__}: {e}"
        return record

    return _fan_out(context, call, "hostname", probe)


def dns_probe(context: ExecutionContext, call: PluginCall) -> PluginOutput:
    """Name resolution."""

    def probe(hostname: str, timeout: float) -> dict[str, Any]:
        t0 = time.perf_counter()
        record: dict[str, Any] = {
            "hostname": hostname, "resolved": False, "addresses": [], "latency_ms": None, "error": None,
        }
        try:
            addrs = socket.getaddrinfo(hostname, None)
            record["addresses"] = sorted({a[4][0] for a in addrs})
            record["resolved"] = bool(record["addresses"])
        except socket.gaierror as e:
            record["error"] = f"DNS resolution failed: {e}"
        except Exception as e:
            record["error"] = f"{type(e).__name__}: {e}"
        record["latency_ms"] = _elapsed_ms(t0)
        return record

    return _fan_out(context, call, "hostname", probe)


def tcp_probe(context: ExecutionContext, call: PluginCall) -> PluginOutput:
    """Raw TCP port connectivity."""
    port = int(call.params.get("port", 443))

    def probe(hostname: str, timeout: float) -> dict[str, Any]:
        t0 = time.perf_counter()
        record: dict[str, Any] = {
            "hostname": hostname, "port": port, "open": False, "latency_ms": None, "error": None,
        }
        try:
            sock = socket.create_connection((hostname, port), timeout=timeout)
            sock.close()
            record["open"] = True
        except Exception as e:
            record["error"] = f"{type(e).__name__}: {e}"
        record["latency_ms"] = _elapsed_ms(t0)
        return record

    return _fan_out(context, call, "hostname", probe)


def command_probe(context: ExecutionContext, call: PluginCall) -> PluginOutput:
    """Run an external check script and parse the JSON it prints.

    The script receives ``{"check_id", "params", "context"}`` as JSON on
    stdin and must print a JSON object (one record) or array (findings).
    It is killed when the invocation deadline passes.
    """
    command = call.params.get("command")
    if not command:
        raise PluginError("Missing 'command' param")
    cmd = [command] if isinstance(command, str) else [str(c) for c in command]

    payload = json.dumps({
        "check_id": call.check_id,
        "params": thaw({k: v for k, v in call.params.items() if k != "command"}),
        "context": context.to_dict(),
    }, default=str)

    timeout = max(call.remaining, 0.001)
    try:
        result = subprocess.run(
            cmd,
            input=payload,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=call.params.get("cwd"),
            encoding="utf-8",
            errors="replace",
        )
    except subprocess.TimeoutExpired as e:
        raise PluginTimeout(f"Command timed out after {timeout:.1f}s") from e
    except OSError as e:
        raise PluginError(f"Cannot start {cmd[0]}: {e}") from e

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()[:500]
        raise PluginError(f"Command exited with {result.returncode}: {detail}")

    stdout = result.stdout.strip()
    if not stdout:
        return None
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise PluginError(f"Command output is not JSON: {e}") from e


# Dispatcher
BUILTIN_PLUGINS: dict[str, Callable[[ExecutionContext, PluginCall], PluginOutput]] = {
    "http": http_probe,
    "tls": tls_probe,
    "dns": dns_probe,
    "tcp": tcp_probe,
    "command": command_probe,
}
