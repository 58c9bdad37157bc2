"""Plugin contract, reference resolution and built-in probes."""

from .contract import Plugin, PluginCall, PluginOutput, normalize_output
from .loader import resolve_plugin
