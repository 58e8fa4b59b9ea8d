"""KubeMend - event-driven Kubernetes remediation controller."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubemend")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
