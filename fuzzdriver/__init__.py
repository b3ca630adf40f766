"""fuzzdriver: per-iteration execution and crash handling for Python fuzz targets."""

from fuzzdriver.api import report_finding
from fuzzdriver.findings import InjectedFinding, register_hook_path
from fuzzdriver.provider import FuzzedDataProvider

__version__ = "0.1.0"

__all__ = ["FuzzedDataProvider", "InjectedFinding", "register_hook_path", "report_finding"]
