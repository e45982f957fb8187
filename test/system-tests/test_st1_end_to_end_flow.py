"""
ST1: End-to-end relay flow over loopback
Requirement: A client datagram reaches the connect endpoint unchanged
             The reply reaches the original client port unchanged
             Strict mode only ever forwards the first client
             Connect-strict drops replies from other sources
"""

import pytest

from redirect_network import Endpoint
from test_config import SimpleUDPServer, make_redirector


@pytest.fixture
def server():
    peer = SimpleUDPServer()
    yield peer
    peer.close()


@pytest.fixture
def clients():
    peers = [SimpleUDPServer(), SimpleUDPServer()]
    yield peers
    for peer in peers:
        peer.close()


def pump(redirector, rounds=1):
    return sum(redirector.run_once(timeout=1.0) for _ in range(rounds))


def test_request_and_reply(server, clients):
    client = clients[0]
    redirector = make_redirector(server.endpoint)
    try:
        client.send(b"hello", redirector.listen_name)
        assert pump(redirector) == 1

        data, addr = server.recv()
        assert data == b"hello"
        assert addr[1] == redirector.send_name.port

        server.send(b"world", addr)
        assert pump(redirector) == 1

        data, addr = client.recv()
        assert data == b"world"
        assert addr[1] == redirector.listen_name.port
        assert redirector.tracker.listen_endpoint == client.endpoint
    finally:
        redirector.close()


def test_payload_bytes_untouched(server, clients):
    client = clients[0]
    redirector = make_redirector(server.endpoint)
    payloads = [b"\x00", bytes(range(256)), b"\xff" * 1400, b"x" * 60000]
    try:
        for payload in payloads:
            client.send(payload, redirector.listen_name)
            pump(redirector)
            assert server.recv()[0] == payload
    finally:
        redirector.close()


def test_reply_dropped_before_any_client(server):
    redirector = make_redirector(server.endpoint)
    try:
        # prime the send socket so the server knows where to reply
        server.send(b"early", redirector.send_name)
        assert pump(redirector) == 0
        assert redirector.stats.connect_packet_receive == 1
        assert redirector.stats.listen_packet_send == 0
    finally:
        redirector.close()


def test_non_strict_follows_latest_client(server, clients):
    first, second = clients
    redirector = make_redirector(server.endpoint)
    try:
        first.send(b"one", redirector.listen_name)
        pump(redirector)
        second.send(b"two", redirector.listen_name)
        pump(redirector)

        assert server.recv()[0] == b"one"
        data, addr = server.recv()
        assert data == b"two"
        assert redirector.tracker.listen_endpoint == second.endpoint

        server.send(b"reply", addr)
        pump(redirector)
        assert second.recv()[0] == b"reply"
        assert first.recv(timeout=0.2) is None
    finally:
        redirector.close()


def test_listen_strict_only_first_client(server, clients, caplog):
    first, second = clients
    redirector = make_redirector(server.endpoint, listen_strict=True)
    try:
        first.send(b"first", redirector.listen_name)
        pump(redirector)
        second.send(b"intruder", redirector.listen_name)
        assert pump(redirector) == 0
        first.send(b"again", redirector.listen_name)
        pump(redirector)

        assert server.recv()[0] == b"first"
        assert server.recv()[0] == b"again"
        assert server.recv(timeout=0.2) is None

        assert redirector.tracker.listen_endpoint == first.endpoint
        assert redirector.stats.listen_packet_receive == 3
        assert redirector.stats.connect_packet_send == 2
        assert any("invalid source" in r.getMessage() for r in caplog.records)
    finally:
        redirector.close()


def test_expected_sender_rejects_everyone_else(server, clients):
    first, second = clients
    redirector = make_redirector(server.endpoint, expected_sender=second.endpoint)
    try:
        assert redirector.tracker.listen_endpoint == second.endpoint

        first.send(b"nope", redirector.listen_name)
        assert pump(redirector) == 0
        second.send(b"yes", redirector.listen_name)
        assert pump(redirector) == 1
        assert server.recv()[0] == b"yes"
    finally:
        redirector.close()


def test_expected_sender_gets_replies_before_sending(server, clients):
    client = clients[0]
    redirector = make_redirector(server.endpoint, expected_sender=client.endpoint)
    try:
        server.send(b"push", redirector.send_name)
        assert pump(redirector) == 1
        assert client.recv()[0] == b"push"
    finally:
        redirector.close()


def test_connect_strict_drops_foreign_replies(server, clients):
    client, stranger = clients
    redirector = make_redirector(server.endpoint, connect_strict=True)
    try:
        client.send(b"hi", redirector.listen_name)
        pump(redirector)
        server.recv()

        stranger.send(b"spoof", redirector.send_name)
        assert pump(redirector) == 0
        server.send(b"real", redirector.send_name)
        assert pump(redirector) == 1

        assert client.recv()[0] == b"real"
        assert client.recv(timeout=0.2) is None
    finally:
        redirector.close()


def test_short_form_addresses_in_strict_modes(server, clients):
    client = clients[0]
    redirector = make_redirector(Endpoint("127.1", server.endpoint.port), connect_strict=True,
                                 expected_sender=Endpoint("127.1", client.endpoint.port))
    try:
        client.send(b"ping", redirector.listen_name)
        assert pump(redirector) == 1
        assert server.recv()[0] == b"ping"

        server.send(b"pong", redirector.send_name)
        assert pump(redirector) == 1
        assert client.recv()[0] == b"pong"
    finally:
        redirector.close()


def test_both_directions_in_one_iteration(server, clients):
    client = clients[0]
    redirector = make_redirector(server.endpoint)
    try:
        client.send(b"a", redirector.listen_name)
        pump(redirector)
        server.recv()

        client.send(b"b", redirector.listen_name)
        server.send(b"c", redirector.send_name)
        forwarded = 0
        for _ in range(3):
            forwarded += pump(redirector)
            if forwarded == 2:
                break
        assert forwarded == 2
        assert server.recv()[0] == b"b"
        assert client.recv()[0] == b"c"
    finally:
        redirector.close()


def test_one_datagram_per_socket_per_iteration(server, clients):
    client = clients[0]
    redirector = make_redirector(server.endpoint)
    try:
        for i in range(3):
            client.send(bytes([i]), redirector.listen_name)
        assert pump(redirector) == 1
        assert pump(redirector) == 1
        assert pump(redirector) == 1
        assert [server.recv()[0] for _ in range(3)] == [b"\x00", b"\x01", b"\x02"]
    finally:
        redirector.close()


def test_idle_iteration_times_out(server):
    redirector = make_redirector(server.endpoint)
    try:
        assert redirector.run_once(timeout=0.05) == 0
    finally:
        redirector.close()

