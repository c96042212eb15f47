"""Readiness signal between the authentication and forwarding phases."""

import logging

logger = logging.getLogger(__name__)


class ConnectionGate:
    """
    Closed until an authenticated upstream session exists.

    Forwarding calls check ``is_open`` before touching the upstream client.
    """

    def __init__(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if not self._open:
            logger.info("Connection gate opened")
        self._open = True

    def close(self) -> None:
        if self._open:
            logger.info("Connection gate closed")
        self._open = False
