"""infrahealth: pluggable infrastructure health checks with weighted scoring."""

__version__ = "0.1.0"
