"""
Bidirectional UDP relay loop
Waits on the listen and send sockets with select, forwards listen -> connect
endpoint and send -> learned listen endpoint, one datagram per socket per
iteration so neither direction starves the other.
"""

import logging
import select
import socket
import time
from typing import Callable, Optional

from endpoint_tracker import EndpointTracker
from redirect_errors import ErrorClassifier, FatalSocketError, describe_errno
from redirect_network import (NETWORK_BUFFER_SIZE, Datagram, Endpoint, IOFailure,
                              receive_datagram, send_datagram)
from redirect_statistics import STATISTICS_DELAY_SECONDS, RelayStatistics

logger = logging.getLogger(__name__)

# Bounded select wait, keeps the statistics timer alive
POLL_TICK_SECONDS = 1.0


def hex_dump(data, max_bytes=32):
    """Return hex dump of data"""
    preview = bytes(data[:max_bytes])
    hex_str = ' '.join(f'{b:02x}' for b in preview)
    if len(data) > max_bytes:
        hex_str += f'... ({len(data)} bytes total)'
    return hex_str


class UDPRedirector:
    """
    The relay engine

    Owns both sockets and the receive buffer for its whole life. Fatal I/O
    errors are raised as FatalSocketError, ignorable ones drop the packet.
    """

    def __init__(self,
                 listen_sock: socket.socket,
                 listen_name: Endpoint,
                 send_sock: socket.socket,
                 send_name: Endpoint,
                 tracker: EndpointTracker,
                 classifier: ErrorClassifier,
                 stats: Optional[RelayStatistics] = None,
                 reporter: Optional[Callable[[RelayStatistics, float], object]] = None,
                 stats_interval: int = STATISTICS_DELAY_SECONDS,
                 clock: Callable[[], float] = time.time,
                 poll_tick: float = POLL_TICK_SECONDS):
        self.listen_sock = listen_sock
        self.listen_name = listen_name
        self.send_sock = send_sock
        self.send_name = send_name
        self.tracker = tracker
        self.classifier = classifier
        self.stats = stats if stats is not None else RelayStatistics()
        self.reporter = reporter
        self.stats_interval = stats_interval
        self.clock = clock
        self.poll_tick = poll_tick

        self.buffer = bytearray(NETWORK_BUFFER_SIZE)

        now = self.clock()
        self.stats.time_display_first = now
        self.stats.time_display_last = now

    def run_forever(self):
        """Relay until killed or a fatal error is raised"""
        logger.info("entering infinite loop")
        while True:
            self.run_once()

    def run_once(self, timeout: Optional[float] = None) -> int:
        """
        One loop iteration: statistics check, select, at most one datagram
        per readable socket. Returns the number of datagrams forwarded.
        """
        self.check_statistics(self.clock())

        if timeout is None:
            timeout = self.poll_tick

        logger.debug("waiting for readable sockets")
        try:
            readable, _, _ = select.select([self.listen_sock, self.send_sock], [], [], timeout)
        except InterruptedError:
            return 0
        except OSError as e:
            raise FatalSocketError("select", e.errno) from e

        if not readable:
            logger.debug("poll timeout")
            return 0

        forwarded = 0
        if self.listen_sock in readable:
            forwarded += self._relay_from_listen()
        if self.send_sock in readable:
            forwarded += self._relay_from_send()
        return forwarded

    def check_statistics(self, now: float):
        if self.reporter is None:
            return
        if now - self.stats.time_display_last > self.stats_interval:
            self.reporter(self.stats, now)
            self.stats.reset_interval()
            self.stats.time_display_last = now

    def _relay_from_listen(self) -> int:
        datagram = self._receive(self.listen_sock, "Listen")
        if datagram is None:
            return 0

        self.stats.record("listen", "receive", datagram.size)
        logger.debug(f"RECEIVE {datagram.source} -> {self.listen_name} (LISTEN PORT): {datagram.size} bytes")
        logger.debug(f"  {hex_dump(datagram.data)}")

        if not self.tracker.accept_from_listen(datagram.source):
            return 0

        return self._forward(self.send_sock, self.send_name, datagram,
                             self.tracker.connect_endpoint, "connect", "SEND PORT")

    def _relay_from_send(self) -> int:
        datagram = self._receive(self.send_sock, "Send")
        if datagram is None:
            return 0

        self.stats.record("connect", "receive", datagram.size)
        logger.debug(f"RECEIVE {datagram.source} -> {self.send_name} (SEND PORT): {datagram.size} bytes")
        logger.debug(f"  {hex_dump(datagram.data)}")

        if not self.tracker.accept_from_send(datagram.source):
            return 0

        return self._forward(self.listen_sock, self.listen_name, datagram,
                             self.tracker.listen_endpoint, "listen", "LISTEN PORT")

    def _receive(self, sock: socket.socket, description: str) -> Optional[Datagram]:
        result = receive_datagram(sock, self.buffer, f"{description} recvfrom")
        if isinstance(result, IOFailure):
            self._check_failure(result)
            return None
        return result

    def _forward(self, sock: socket.socket, local: Endpoint, datagram: Datagram,
                 destination: Endpoint, side: str, port_label: str) -> int:
        result = send_datagram(sock, datagram.data, destination, f"{port_label} sendto")
        if isinstance(result, IOFailure):
            self._check_failure(result)
            return 0

        self.stats.record(side, "send", result)

        if result == datagram.size:
            logger.debug(f"SEND {local} -> {destination} ({port_label}): {result} bytes (FULL WRITE)")
        else:
            logger.warning(f"SEND {local} -> {destination} ({port_label}): {result} bytes "
                           f"(PARTIAL WRITE of {datagram.size} bytes)")
        return 1

    def _check_failure(self, failure: IOFailure):
        if not self.classifier.is_ignorable(failure.errno):
            raise FatalSocketError(failure.operation, failure.errno)
        logger.debug(f"{failure.operation} ignored: {describe_errno(failure.errno)}")

    def close(self):
        self.listen_sock.close()
        self.send_sock.close()
