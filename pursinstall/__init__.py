"""pursinstall: install the PureScript compiler binary through a local cache.

A request either restores a cached binary (and proves it runs with
``--version``) or falls back to a producer that downloads or builds it,
writing the fresh binary back to the cache. Progress is reported as a
cancellable stream of lifecycle events.
"""

__version__ = "0.1.0"
__description__ = "Cache-backed installer for the PureScript compiler binary"

from pursinstall.config import cache_root
from pursinstall.core.cache_gate import CACHE_KEY
from pursinstall.core.pipeline import InstallationPipeline, install
from pursinstall.core.producer import (
    DEFAULT_VERSION,
    SUPPORTED_BUILD_FLAGS,
    ArtifactProducer,
    LocalBinaryProducer,
)
from pursinstall.models.events import EventKind, InstallEvent

__all__ = [
    "CACHE_KEY",
    "DEFAULT_VERSION",
    "SUPPORTED_BUILD_FLAGS",
    "ArtifactProducer",
    "EventKind",
    "InstallEvent",
    "InstallationPipeline",
    "LocalBinaryProducer",
    "cache_root",
    "install",
    "__version__",
]
