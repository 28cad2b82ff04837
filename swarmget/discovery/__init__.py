"""Peer discovery: sources and the polling coordinator."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from swarmget.discovery.base import DiscoverySource, StaticPeerSource
from swarmget.discovery.coordinator import DiscoveryCoordinator
from swarmget.discovery.tracker import HTTPTrackerSource
from swarmget.models import ContentDescriptor, DiscoveryConfig, PeerAddress

logger = logging.getLogger(__name__)


def build_sources(
    descriptor: ContentDescriptor,
    config: DiscoveryConfig,
    peer_id: bytes,
    extra_peers: Iterable[PeerAddress] = (),
    left: Callable[[], int] | None = None,
) -> list[DiscoverySource]:
    """Create the sources a descriptor implies.

    Peer hints and explicit peers become one static source; every HTTP(S)
    tracker gets its own tracker source. Other tracker schemes are skipped.
    """
    sources: list[DiscoverySource] = []
    static = [*descriptor.peer_hints, *extra_peers]
    if static:
        sources.append(StaticPeerSource(static))
    for url in dict.fromkeys([*descriptor.trackers, *config.default_trackers]):
        if url.startswith(("http://", "https://")):
            sources.append(HTTPTrackerSource(url, peer_id, config, left=left))
        else:
            logger.debug("Skipping unsupported tracker %s", url)
    return sources


__all__ = [
    "DiscoveryCoordinator",
    "DiscoverySource",
    "HTTPTrackerSource",
    "StaticPeerSource",
    "build_sources",
]
