try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .destinations import Destination, DestinationRegistry, parse_destinations
from .dispatcher import CycleResult, Dispatcher
from .handler import MethodRouter, RequestHandler
from .ingestor import Ingestor
from .monitor import ConnectionMonitor

__all__ = [
    "__version__",
    "ConnectionMonitor",
    "CycleResult",
    "Destination",
    "DestinationRegistry",
    "Dispatcher",
    "Ingestor",
    "MethodRouter",
    "RequestHandler",
    "parse_destinations",
]
