"""Faultline: offline-first defect lifecycle engine with a durable sync outbox."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("faultline")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from faultline.core import FaultlineDB
from faultline.models import Defect
from faultline.repository import DefectRepository

__all__ = ["Defect", "DefectRepository", "FaultlineDB", "__version__"]
