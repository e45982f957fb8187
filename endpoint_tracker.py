"""
Endpoint tracking for the redirector

The listen side learns which remote peer it talks to (the peer is usually
behind NAT, so its address is only known once it sends). The send side only
forwards replies back once that peer is known.
"""

import logging
from typing import Optional

from redirect_network import Endpoint

logger = logging.getLogger(__name__)


class EndpointTracker:
    """
    Holds the learned listen-side endpoint and applies strict-mode filtering

    listen_strict: keep the first learned endpoint, reject other sources
    connect_strict: only accept send-side packets from connect_endpoint
    expected_sender: pre-seeded listen endpoint, forces listen_strict
    """

    def __init__(self, connect_endpoint: Endpoint,
                 listen_strict: bool = False,
                 connect_strict: bool = False,
                 expected_sender: Optional[Endpoint] = None):
        self.connect_endpoint = Endpoint.parse(*connect_endpoint)
        self.listen_strict = listen_strict or expected_sender is not None
        self.connect_strict = connect_strict
        self.listen_endpoint: Optional[Endpoint] = None
        if expected_sender is not None:
            self.listen_endpoint = Endpoint.parse(*expected_sender)

    @property
    def learned(self) -> bool:
        return self.listen_endpoint is not None

    def accept_from_listen(self, source: Endpoint) -> bool:
        """
        Check a packet received on the listen socket
        Accepted packets (re)learn the endpoint unless strict mode froze it.
        """
        if not self.learned or not self.listen_strict:
            if source != self.listen_endpoint:
                logger.debug(f"LISTEN remote endpoint set to {source}")
            self.listen_endpoint = Endpoint(*source)
            return True

        if source == self.listen_endpoint:
            return True

        logger.error(f"LISTEN PORT invalid source {source}, was expecting {self.listen_endpoint}")
        return False

    def accept_from_send(self, source: Endpoint) -> bool:
        """Check a packet received on the send socket"""
        if self.learned and (not self.connect_strict or source == self.connect_endpoint):
            return True

        if not self.learned:
            logger.error(f"SEND PORT packet from {source} dropped, no listen endpoint known yet")
        else:
            logger.error(f"SEND PORT invalid source {source}, was expecting {self.connect_endpoint}")
        return False
