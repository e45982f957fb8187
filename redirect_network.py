"""
Socket setup and datagram I/O helpers
Creates the non-blocking UDP sockets used by the redirector, binds them to
an address / port / interface and wraps recvfrom / sendto so callers get a
result object instead of an exception.
"""

import errno
import logging
import socket
import sys
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple, Union

from redirect_errors import ResolveError, SocketSetupError

logger = logging.getLogger(__name__)

# Maximum UDP payload, size of the shared receive buffer
NETWORK_BUFFER_SIZE = 65535

# <netinet/in.h> on macOS, not exported by the socket module
IP_BOUND_IF = 25


class Endpoint(NamedTuple):
    """IPv4 address + UDP port"""
    address: str
    port: int

    def __str__(self):
        return f"{self.address}:{self.port}"

    @classmethod
    def parse(cls, address: str, port: int) -> "Endpoint":
        """Endpoint with the address in dotted-quad form, so 127.1 == 127.0.0.1"""
        return cls(parse_address(address), int(port))


@dataclass
class Datagram:
    """One received packet; data is a view into the receive buffer"""
    data: memoryview
    source: Endpoint

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class IOFailure:
    """Failed recvfrom / sendto with the originating errno"""
    operation: str
    errno: Optional[int]


def parse_address(address: str) -> str:
    """
    Validate a literal IPv4 address and return it in dotted-quad form
    Raises ValueError for anything inet_aton rejects
    """
    try:
        packed = socket.inet_aton(address)
    except OSError:
        raise ValueError(f"invalid IPv4 address: {address}")
    return socket.inet_ntoa(packed)


def resolve_host(host: str) -> str:
    """Blocking IPv4 lookup of the connect host"""
    try:
        address = socket.gethostbyname(host)
    except OSError as e:
        raise ResolveError(host, str(e)) from e

    logger.debug(f"Resolved {host} to {address}")
    return address


def _bind_device(sock: socket.socket, interface: str):
    # Linux and friends: SO_BINDTODEVICE takes the interface name
    option = getattr(socket, "SO_BINDTODEVICE", 25)
    sock.setsockopt(socket.SOL_SOCKET, option, interface.encode())


def _bind_interface_index(sock: socket.socket, interface: str):
    # macOS: IP_BOUND_IF takes the interface index
    index = socket.if_nametoindex(interface)
    sock.setsockopt(socket.IPPROTO_IP, IP_BOUND_IF, index)


def bind_to_interface(sock: socket.socket, interface: str, platform: Optional[str] = None):
    """Restrict a socket to one network interface"""
    platform = platform or sys.platform
    if platform == "darwin":
        _bind_interface_index(sock, interface)
    else:
        _bind_device(sock, interface)


def create_socket(description: str,
                  address: Optional[str] = None,
                  port: int = 0,
                  interface: Optional[str] = None) -> Tuple[socket.socket, Endpoint]:
    """
    Create a non-blocking UDP socket and bind it

    description: label for log messages ("Listen", "Send")
    address: local IPv4 address, None for any
    port: local port, 0 lets the OS pick one
    interface: network interface name, None for no restriction

    Returns the socket and the local endpoint the OS actually assigned.
    Every failure raises SocketSetupError.
    """
    logger.info(f"{description} socket: create")
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        raise SocketSetupError(description, "create DGRAM socket", e.errno) from e

    try:
        if address is not None:
            try:
                address = parse_address(address)
            except ValueError:
                raise SocketSetupError(description, f"use address {address}", errno.EINVAL)
            logger.info(f"{description} socket: bind to address {address}")
        else:
            logger.info(f"{description} socket: bind to address ANY")

        logger.info(f"{description} socket: bind to port {port if port else 'ANY'}")

        if interface is not None:
            logger.info(f"{description} socket: bind to interface {interface}")
            try:
                bind_to_interface(sock, interface)
            except OSError as e:
                raise SocketSetupError(description, f"set interface {interface}", e.errno) from e
        else:
            logger.info(f"{description} socket: bind to interface ANY")

        logger.info(f"{description} socket: reuse local address")
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            raise SocketSetupError(description, "set SO_REUSEADDR", e.errno) from e

        logger.info(f"{description} socket: set nonblocking")
        sock.setblocking(False)

        logger.info(f"{description} socket: bind")
        try:
            sock.bind((address or "0.0.0.0", port))
        except OSError as e:
            raise SocketSetupError(description, "bind", e.errno) from e

        try:
            name = Endpoint(*sock.getsockname())
        except OSError as e:
            raise SocketSetupError(description, "get socket name", e.errno) from e
    except SocketSetupError:
        sock.close()
        raise

    logger.info(f"{description} socket: bound to {name}")
    return sock, name


def receive_datagram(sock: socket.socket, buffer: bytearray,
                     operation: str = "recvfrom") -> Union[Datagram, IOFailure, None]:
    """
    Receive one datagram into buffer
    Returns None when nothing was read.
    """
    try:
        size, addr = sock.recvfrom_into(buffer)
    except OSError as e:
        return IOFailure(operation, e.errno)

    if size <= 0:
        return None

    return Datagram(memoryview(buffer)[:size], Endpoint(*addr[:2]))


def send_datagram(sock: socket.socket, data, destination: Endpoint,
                  operation: str = "sendto") -> Union[int, IOFailure]:
    """Send data to destination, return the byte count the OS accepted"""
    try:
        return sock.sendto(data, destination)
    except OSError as e:
        return IOFailure(operation, e.errno)
