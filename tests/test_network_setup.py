"""Tests for endpoint setup and hostname resolution."""

import errno
import socket
from ipaddress import IPv4Address
from unittest.mock import patch

import pytest

from udp_redirect.errors import EndpointSetupError, ResolutionError
from udp_redirect.network import format_endpoint, resolve_host, socket_setup


@pytest.fixture
def opened():
    socks = []
    yield socks
    for sock in socks:
        sock.close()


class TestSocketSetup:
    def test_binds_loopback_with_os_chosen_port(self, opened):
        sock, name = socket_setup("Test", "127.0.0.1", 0)
        opened.append(sock)
        assert name[0] == "127.0.0.1"
        assert name[1] > 0
        assert sock.getsockname() == name

    def test_socket_is_nonblocking_udp_with_reuseaddr(self, opened):
        sock, _name = socket_setup("Test", "127.0.0.1", 0)
        opened.append(sock)
        assert sock.type == socket.SOCK_DGRAM
        assert sock.getblocking() is False
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) != 0

    def test_any_address_when_none(self, opened):
        sock, name = socket_setup("Test", None, 0)
        opened.append(sock)
        assert name[0] == "0.0.0.0"

    def test_receive_without_data_would_block(self, opened):
        sock, _name = socket_setup("Test", "127.0.0.1", 0)
        opened.append(sock)
        with pytest.raises(BlockingIOError):
            sock.recvfrom(16)

    @pytest.mark.parametrize("address", ["not-an-ip", "256.1.1.1", "::1"])
    def test_invalid_address(self, address):
        with pytest.raises(EndpointSetupError, match="address invalid"):
            socket_setup("Listen", address, 0)

    def test_bind_conflict_is_fatal(self, opened):
        holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        opened.append(holder)
        holder.bind(("127.0.0.1", 0))
        port = holder.getsockname()[1]
        with pytest.raises(EndpointSetupError, match="Cannot bind"):
            socket_setup("Listen", "127.0.0.1", port)

    def test_unknown_interface(self):
        with patch("udp_redirect.network.psutil.net_if_addrs", return_value={"lo": []}):
            with pytest.raises(EndpointSetupError, match="interface not found"):
                socket_setup("Send", "127.0.0.1", 0, "nope0")

    @pytest.mark.skipif(not hasattr(socket, "SO_BINDTODEVICE"), reason="SO_BINDTODEVICE not available")
    def test_interface_bound_with_so_bindtodevice(self, opened):
        with patch("udp_redirect.network.psutil.net_if_addrs", return_value={"eth-test": []}), \
                patch.object(socket.socket, "setsockopt") as setsockopt:
            sock, _name = socket_setup("Listen", "127.0.0.1", 0, "eth-test")
            opened.append(sock)
        setsockopt.assert_any_call(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, b"eth-test")

    @pytest.mark.skipif(not hasattr(socket, "SO_BINDTODEVICE"), reason="SO_BINDTODEVICE not available")
    def test_interface_permission_error_is_fatal(self):
        denied = PermissionError(errno.EPERM, "Operation not permitted")
        with patch("udp_redirect.network.psutil.net_if_addrs", return_value={"eth-test": []}), \
                patch.object(socket.socket, "setsockopt", side_effect=denied):
            with pytest.raises(EndpointSetupError, match="interface"):
                socket_setup("Listen", "127.0.0.1", 0, "eth-test")


class TestResolveHost:
    def test_localhost_resolves_to_loopback(self):
        assert IPv4Address(resolve_host("localhost")).is_loopback

    def test_numeric_address_passes_through(self):
        assert resolve_host("127.0.0.1") == "127.0.0.1"

    def test_failure_raises_resolution_error(self):
        with patch("udp_redirect.network.socket.gethostbyname", side_effect=socket.gaierror(-2, "Name or service not known")):
            with pytest.raises(ResolutionError, match="no-such-host.invalid"):
                resolve_host("no-such-host.invalid")


def test_format_endpoint():
    assert format_endpoint(("10.0.0.5", 5000)) == "10.0.0.5:5000"
    assert format_endpoint(None) == "-"
