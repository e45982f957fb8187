"""
UT5: Socket setup
Requirement: Sockets are non-blocking UDP, bound as requested
             Port 0 reports the port the OS picked
             Bad address / unknown interface / port in use are fatal
"""

import select
import socket

import pytest

import redirect_network
from redirect_errors import ResolveError, SocketSetupError
from redirect_network import (Endpoint, IOFailure, bind_to_interface, create_socket,
                              parse_address, receive_datagram, resolve_host, send_datagram)
from test_config import LOOPBACK, SimpleUDPServer


class RecordingSocket:
    def __init__(self):
        self.options = []

    def setsockopt(self, level, option, value):
        self.options.append((level, option, value))


def test_bind_ephemeral_port():
    sock, name = create_socket("Listen", LOOPBACK, 0)
    try:
        assert sock.type == socket.SOCK_DGRAM
        assert sock.family == socket.AF_INET
        assert sock.getblocking() is False
        assert name.address == LOOPBACK
        assert name.port > 0
        assert name == Endpoint(*sock.getsockname())
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) != 0
    finally:
        sock.close()


def test_bind_any_address():
    sock, name = create_socket("Send")
    try:
        assert name.address == "0.0.0.0"
        assert name.port > 0
    finally:
        sock.close()


def test_invalid_address_is_fatal():
    with pytest.raises(SocketSetupError) as info:
        create_socket("Listen", "300.1.2.3.4", 0)
    assert info.value.description == "Listen"


def test_port_in_use_is_fatal():
    # no SO_REUSEADDR on the holder so the second bind must fail
    holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    holder.bind((LOOPBACK, 0))
    try:
        with pytest.raises(SocketSetupError) as info:
            create_socket("Listen", LOOPBACK, holder.getsockname()[1])
        assert info.value.step == "bind"
    finally:
        holder.close()


def test_unknown_interface_is_fatal():
    with pytest.raises(SocketSetupError) as info:
        create_socket("Listen", LOOPBACK, 0, interface="no-such-if0")
    assert "interface" in info.value.step


def test_interface_strategy_per_platform(monkeypatch):
    linux = RecordingSocket()
    bind_to_interface(linux, "eth0", platform="linux")
    assert linux.options[0][0] == socket.SOL_SOCKET
    assert linux.options[0][2] == b"eth0"

    monkeypatch.setattr(redirect_network.socket, "if_nametoindex", lambda name: 7)
    darwin = RecordingSocket()
    bind_to_interface(darwin, "en0", platform="darwin")
    assert darwin.options == [(socket.IPPROTO_IP, redirect_network.IP_BOUND_IF, 7)]


def test_parse_address():
    assert parse_address("10.0.0.1") == "10.0.0.1"
    with pytest.raises(ValueError):
        parse_address("example.com")


def test_parse_address_normalises():
    assert parse_address("127.1") == "127.0.0.1"
    assert parse_address("10.1.2") == "10.1.0.2"
    assert Endpoint.parse("127.1", "9001") == Endpoint("127.0.0.1", 9001)


def test_create_socket_reports_dotted_quad():
    sock, name = create_socket("Test", address="127.1")
    try:
        assert name.address == "127.0.0.1"
    finally:
        sock.close()


def test_resolve_host():
    assert resolve_host("127.0.0.1") == "127.0.0.1"
    with pytest.raises(ResolveError):
        resolve_host("no-such-host.invalid")


def test_receive_and_send_results():
    sock, name = create_socket("Listen", LOOPBACK, 0)
    peer = SimpleUDPServer()
    buffer = bytearray(65535)
    try:
        # nothing queued: EAGAIN comes back as a failure record
        failure = receive_datagram(sock, buffer)
        assert isinstance(failure, IOFailure)
        assert failure.operation == "recvfrom"

        peer.send(b"\x00\x01payload", name)
        select.select([sock], [], [], 1.0)
        datagram = receive_datagram(sock, buffer)
        assert bytes(datagram.data) == b"\x00\x01payload"
        assert datagram.size == 9
        assert datagram.source == peer.endpoint

        assert send_datagram(sock, datagram.data, peer.endpoint) == 9
        assert peer.recv()[0] == b"\x00\x01payload"
    finally:
        peer.close()
        sock.close()
