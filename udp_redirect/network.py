"""
Endpoint setup and hostname resolution.

Both run once at startup. Every failure here is fatal for the process, so
they surface as `StartupError` subclasses and the caller decides how to exit.
"""

from __future__ import annotations

import socket
import sys
from ipaddress import IPv4Address
from typing import Optional, Tuple

import psutil

from udp_redirect.errors import EndpointSetupError, ResolutionError
from udp_redirect.logging_utils import VERBOSE, get_logger

logger = get_logger("udp_redirect")

Endpoint = Tuple[str, int]

# <netinet/in.h> on macOS; not exported by the socket module.
_IP_BOUND_IF = 25


def format_endpoint(endpoint: Optional[Endpoint]) -> str:
    if endpoint is None:
        return "-"
    return f"{endpoint[0]}:{endpoint[1]}"


def _bind_interface(sock: socket.socket, desc: str, interface: str) -> None:
    if interface not in psutil.net_if_addrs():
        raise EndpointSetupError(f"{desc} interface not found: {interface}")

    if hasattr(socket, "SO_BINDTODEVICE"):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, interface.encode("utf-8"))
    elif sys.platform == "darwin":
        sock.setsockopt(socket.IPPROTO_IP, _IP_BOUND_IF, socket.if_nametoindex(interface))
    else:
        raise EndpointSetupError(f"{desc} interface binding is not supported on {sys.platform}")


def socket_setup(
    desc: str,
    address: Optional[str] = None,
    port: int = 0,
    interface: Optional[str] = None,
) -> Tuple[socket.socket, Endpoint]:
    """Create a bound, non-blocking UDP socket.

    Args:
        desc: Caller description used in log lines ("Listen", "Send").
        address: IPv4 address to bind, or None for any address.
        port: Port to bind, or 0 to let the OS choose.
        interface: OS interface name to bind to, or None for all interfaces.

    Returns:
        The socket and its resolved local (address, port).

    Raises:
        EndpointSetupError: on any creation, parse, option or bind failure.
    """
    logger.info(f"{desc} socket: create")
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise EndpointSetupError(f"Cannot create {desc} DGRAM socket: {exc}") from exc

    try:
        if address is not None:
            try:
                bind_address = str(IPv4Address(address))
            except ValueError as exc:
                raise EndpointSetupError(f"{desc} address invalid: {address}") from exc
        else:
            bind_address = "0.0.0.0"
        logger.info(f"{desc} socket: bind to address {address or 'ANY'}")
        logger.info(f"{desc} socket: bind to port {port or 'ANY'}")

        if interface is not None:
            logger.info(f"{desc} socket: bind to interface {interface}")
            try:
                _bind_interface(sock, desc, interface)
            except OSError as exc:
                raise EndpointSetupError(f"Cannot set {desc} socket interface {interface}: {exc}") from exc
        else:
            logger.info(f"{desc} socket: bind to interface ANY")

        logger.info(f"{desc} socket: reuse local address")
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as exc:
            raise EndpointSetupError(f"Cannot set {desc} socket SO_REUSEADDR: {exc}") from exc

        logger.info(f"{desc} socket: set nonblocking")
        try:
            sock.setblocking(False)
        except OSError as exc:
            raise EndpointSetupError(f"Cannot set {desc} socket non-blocking: {exc}") from exc

        logger.info(f"{desc} socket: bind")
        try:
            sock.bind((bind_address, int(port)))
        except OSError as exc:
            raise EndpointSetupError(f"Cannot bind {desc} socket to {bind_address}:{port}: {exc}") from exc

        try:
            name = sock.getsockname()
        except OSError as exc:
            raise EndpointSetupError(f"Cannot get {desc} socket name: {exc}") from exc
    except EndpointSetupError:
        sock.close()
        raise

    local = (name[0], name[1])
    logger.log(VERBOSE, f"{desc} socket ready", extra={"local": format_endpoint(local)})
    return sock, local


def resolve_host(host: str) -> str:
    """Resolve `host` to a dotted-quad IPv4 address (first result)."""
    try:
        resolved = socket.gethostbyname(host)
    except (socket.gaierror, socket.herror, UnicodeError) as exc:
        raise ResolutionError(f"Could not resolve host {host}: {exc}") from exc
    logger.debug("Resolved host", extra={"host": host, "address": resolved})
    return resolved
