"""Registry of the peer controllers in a room."""
from __future__ import annotations

import logging
from typing import Callable
from typing import Iterator

from meshrtc.peer import PeerController
from meshrtc.peer import PeerRole

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str, PeerRole], PeerController]


class PeerRegistry:
    """Maps remote participant identities to their peer controller.

    At most one controller is registered per identity. Lookups and
    mutations never await, so on a single event loop no other message
    handler can interleave with `get_or_create()` or `remove()`.

    Args:
        factory: Called with the identity and role to create a controller
            when `get_or_create()` finds none registered.
    """

    def __init__(self, factory: ControllerFactory) -> None:
        self._factory = factory
        self._controllers: dict[str, PeerController] = {}

    def __contains__(self, identity: object) -> bool:
        return identity in self._controllers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._controllers))

    def __len__(self) -> int:
        return len(self._controllers)

    def controllers(self) -> list[PeerController]:
        """Snapshot of the registered controllers."""
        return list(self._controllers.values())

    def get(self, identity: str) -> PeerController | None:
        """Get the controller for `identity` if one is registered."""
        return self._controllers.get(identity)

    def get_or_create(self, identity: str, role: PeerRole) -> PeerController:
        """Get the controller for `identity`, creating it if needed.

        Args:
            identity: Remote participant identity.
            role: Role of the controller if one is created. Ignored if a
                controller is already registered.
        """
        controller = self._controllers.get(identity)
        if controller is None:
            controller = self._factory(identity, role)
            self._controllers[identity] = controller
            logger.debug(
                f'Registered {role.value} controller for {identity} '
                f'({len(self._controllers)} peer(s))',
            )
        return controller

    def remove(
        self,
        identity: str,
        controller: PeerController | None = None,
    ) -> PeerController | None:
        """Unregister the controller for `identity`.

        Args:
            identity: Remote participant identity.
            controller: Only remove the entry if it is this controller. This
                keeps a replaced controller from removing its successor.

        Returns:
            The removed controller or `None` if nothing was removed.
        """
        current = self._controllers.get(identity)
        if current is None or (
            controller is not None and current is not controller
        ):
            return None
        del self._controllers[identity]
        logger.debug(
            f'Unregistered controller for {identity} '
            f'({len(self._controllers)} peer(s))',
        )
        return current
