"""Exception taxonomy shared by the pipeline components."""

from __future__ import annotations


class HealthCheckError(Exception):
    """Base class for every error raised by infrahealth."""


class PluginError(HealthCheckError):
    """A plugin raised, crashed, could not be resolved or returned garbage."""


class PluginTimeout(HealthCheckError):
    """A plugin invocation exceeded its deadline."""


class RuleEvaluationError(HealthCheckError):
    """A rule condition or issue template could not be evaluated."""


class DefinitionError(HealthCheckError):
    """A check definition or category was rejected while loading."""


class DiscoveryError(HealthCheckError):
    """The target inventory could not be discovered. Fatal for a run."""


class PersistenceError(HealthCheckError):
    """Storing run data failed. Reported as a warning, never fatal."""
