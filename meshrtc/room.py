"""Room-wide state shared by the session and its peer controllers."""
from __future__ import annotations

import collections
import logging
from typing import Any

from meshrtc.config import RoomConfig
from meshrtc.media import MediaBundle
from meshrtc.registry import ControllerFactory
from meshrtc.registry import PeerRegistry

logger = logging.getLogger(__name__)

MAX_HELD_CANDIDATES = 64


class Room:
    """Context of one room, owned by a session.

    Holds the state that every peer controller of the room is created
    from: the local identity, the local media, and the candidates that
    arrived for peers which do not have a controller yet.

    Args:
        config: Room configuration.
        factory: Peer controller factory passed to the registry.
        max_held_candidates: Maximum number of candidates held per peer.
            Further candidates are dropped.
    """

    def __init__(
        self,
        config: RoomConfig,
        factory: ControllerFactory,
        *,
        max_held_candidates: int = MAX_HELD_CANDIDATES,
    ) -> None:
        self.config = config
        self.registry = PeerRegistry(factory)
        self.media: MediaBundle | None = None
        self.max_held_candidates = max_held_candidates
        self._orphan_candidates: collections.defaultdict[
            str,
            list[dict[str, Any]],
        ] = collections.defaultdict(list)
        # Peers whose connection closed. Their candidates are dropped until
        # a new controller is created for them.
        self._closed_peers: set[str] = set()

    @property
    def identity(self) -> str:
        """Identity of the local participant."""
        return self.config.identity

    def hold_candidate(self, identity: str, candidate: dict[str, Any]) -> bool:
        """Keep a candidate from a peer that has no controller yet.

        Candidates from a peer whose connection closed, or beyond
        `max_held_candidates`, are dropped.

        Returns:
            If the candidate is held.
        """
        if identity in self._closed_peers:
            logger.debug(
                f'Dropping candidate from {identity} for a closed connection',
            )
            return False
        held = self._orphan_candidates[identity]
        if len(held) >= self.max_held_candidates:
            logger.warning(
                f'Dropping candidate from {identity}: already holding '
                f'{len(held)} candidate(s)',
            )
            return False
        held.append(candidate)
        logger.debug(
            f'Holding candidate from {identity} until its controller exists '
            f'({len(held)} held)',
        )
        return True

    def take_candidates(self, identity: str) -> list[dict[str, Any]]:
        """Remove and return the candidates held for `identity`."""
        return self._orphan_candidates.pop(identity, [])

    def peer_closed(self, identity: str) -> None:
        """Discard and stop holding candidates from `identity`."""
        self._orphan_candidates.pop(identity, None)
        self._closed_peers.add(identity)

    def peer_opened(self, identity: str) -> None:
        """Hold candidates from `identity` again."""
        self._closed_peers.discard(identity)

    def held_candidates(self, identity: str) -> tuple[dict[str, Any], ...]:
        """Candidates held for `identity` in arrival order."""
        return tuple(self._orphan_candidates.get(identity, ()))
