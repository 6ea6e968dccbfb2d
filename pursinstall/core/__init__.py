"""Installer core — content store, cache gate, producers and the pipeline."""

from pursinstall.core.cache_gate import CACHE_KEY, CacheGate, TargetConflictError
from pursinstall.core.content_store import ContentStore
from pursinstall.core.pipeline import InstallationPipeline, install
from pursinstall.core.producer import (
    DEFAULT_VERSION,
    SUPPORTED_BUILD_FLAGS,
    ArtifactProducer,
    LocalBinaryProducer,
)
from pursinstall.core.stream import EventStream

__all__ = [
    "CACHE_KEY",
    "DEFAULT_VERSION",
    "SUPPORTED_BUILD_FLAGS",
    "ArtifactProducer",
    "CacheGate",
    "ContentStore",
    "EventStream",
    "InstallationPipeline",
    "LocalBinaryProducer",
    "TargetConflictError",
    "install",
]
