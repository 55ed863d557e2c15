"""
Selectors-based UDP redirector.

Responsibilities:
1. Own the listen socket and the send socket for the lifetime of the process.
2. Relay listen -> connect peer and connect peer -> pinned sender, byte for byte.
3. Apply the pinning/acceptance policy (`udp_redirect.pinning`) and the errno
   classification (`udp_redirect.errors`) on every I/O event.
4. Feed `udp_redirect.statistics` and display it on a timer.

Single-threaded: the bounded `selector.select()` is the only place the loop
waits. Both sockets are non-blocking, so a receive that races with another
reader returns EAGAIN instead of stalling.
"""

from __future__ import annotations

import json
import selectors
import socket
import threading
import time
from contextlib import contextmanager
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any, Callable, Collection, Dict, Iterator, Optional, Tuple

from udp_redirect.errors import ErrorClassifier, ForwardingError, ResolutionError
from udp_redirect.logging_utils import VERBOSE, get_logger
from udp_redirect.network import format_endpoint, resolve_host, socket_setup
from udp_redirect.pinning import DROP_UNPINNED, EndpointPinning
from udp_redirect.statistics import RedirectStatistics

logger = get_logger("udp_redirect")

# Largest UDP payload; every receive lands in one reusable buffer of this size.
NETWORK_BUFFER_SIZE = 65535

LISTEN = "listen"
SEND = "send"

Endpoint = Tuple[str, int]


class Redirector:
    """Forwarding engine for one listen socket and one send socket."""

    def __init__(
        self,
        cfg: Dict[str, Any],
        *,
        listen_sock: socket.socket,
        listen_name: Endpoint,
        send_sock: socket.socket,
        send_name: Endpoint,
        connect_peer: Endpoint,
        pinning: Optional[EndpointPinning] = None,
        classifier: Optional[ErrorClassifier] = None,
        statistics: Optional[RedirectStatistics] = None,
    ) -> None:
        self.cfg = cfg
        self.listen_sock = listen_sock
        self.listen_name = listen_name
        self.send_sock = send_sock
        self.send_name = send_name
        self.connect_peer = connect_peer
        self.pinning = pinning or EndpointPinning.from_config(cfg, connect_peer)
        self.classifier = classifier or ErrorClassifier(cfg.get("IGNORE_ERRORS", True))
        self.statistics = statistics or RedirectStatistics(cfg.get("STATS_INTERVAL_S", 60.0))
        self.stats_enabled = bool(cfg.get("STATS", False))
        self.poll_timeout = float(cfg.get("POLL_TIMEOUT_S", 1.0))

        self._buffer = bytearray(NETWORK_BUFFER_SIZE)
        self._view = memoryview(self._buffer)

    # -- I/O helpers -------------------------------------------------------

    def _receive(self, sock: socket.socket, side: str) -> Optional[Tuple[int, Endpoint]]:
        try:
            nbytes, source = sock.recvfrom_into(self._buffer)
        except OSError as exc:
            if self.classifier.is_ignorable(exc):
                logger.info(
                    f"{side.capitalize()} cannot receive, ignoring",
                    extra={"side": side, "errno": exc.errno, "error": str(exc)},
                )
                return None
            raise ForwardingError(f"{side} recvfrom", exc.errno, f"{side.capitalize()} cannot receive: {exc}") from exc
        if nbytes <= 0:
            return None
        return nbytes, (source[0], source[1])

    def _relay(self, sock: socket.socket, side: str, local: Endpoint, nbytes: int, target: Endpoint) -> Optional[int]:
        """Send the first `nbytes` of the buffer to `target` and count it under `side`."""
        try:
            sent = sock.sendto(self._view[:nbytes], target)
        except OSError as exc:
            if self.classifier.is_ignorable(exc):
                logger.info(
                    f"Cannot send packet to {side} peer, ignoring",
                    extra={"side": side, "target": format_endpoint(target), "errno": exc.errno, "error": str(exc)},
                )
                return None
            raise ForwardingError(f"{side} sendto", exc.errno, f"Cannot send packet to {format_endpoint(target)}: {exc}") from exc

        self.statistics.record_send(side, sent)
        if sent == nbytes:
            logger.debug(
                "SEND FULL WRITE",
                extra={"side": side, "src": format_endpoint(local), "dst": format_endpoint(target), "bytes": sent},
            )
        else:
            logger.warning(
                "SEND PARTIAL WRITE",
                extra={
                    "side": side,
                    "src": format_endpoint(local),
                    "dst": format_endpoint(target),
                    "bytes": sent,
                    "expected": nbytes,
                },
            )
        return sent

    # -- per-socket handlers ----------------------------------------------

    def handle_listen(self) -> None:
        """Receive one datagram on the listen socket and relay it to the connect peer."""
        received = self._receive(self.listen_sock, LISTEN)
        if received is None:
            return
        nbytes, source = received
        self.statistics.record_receive(LISTEN, nbytes)
        logger.debug(
            "RECEIVE (LISTEN PORT)",
            extra={"src": format_endpoint(source), "dst": format_endpoint(self.listen_name), "bytes": nbytes},
        )

        reason = self.pinning.admit_listen(source)
        if reason is not None:
            self.statistics.record_drop("drop_listen_source")
            logger.warning(
                "LISTEN PORT invalid source",
                extra={
                    "reason": reason,
                    "received": format_endpoint(source),
                    "expected": format_endpoint(self.pinning.sender),
                },
            )
            return

        self._relay(self.send_sock, "connect", self.send_name, nbytes, self.connect_peer)

    def handle_send(self) -> None:
        """Receive one datagram on the send socket and relay it to the pinned sender."""
        received = self._receive(self.send_sock, SEND)
        if received is None:
            return
        nbytes, source = received
        self.statistics.record_receive("connect", nbytes)
        logger.debug(
            "RECEIVE (SEND PORT)",
            extra={"src": format_endpoint(source), "dst": format_endpoint(self.send_name), "bytes": nbytes},
        )

        reason = self.pinning.admit_connect(source)
        if reason is not None:
            if reason == DROP_UNPINNED:
                self.statistics.record_drop("drop_unpinned")
                logger.warning(
                    "SEND PORT packet dropped, no listen sender pinned yet",
                    extra={"reason": reason, "received": format_endpoint(source)},
                )
            else:
                self.statistics.record_drop("drop_connect_source")
                logger.warning(
                    "SEND PORT invalid source",
                    extra={
                        "reason": reason,
                        "received": format_endpoint(source),
                        "expected": format_endpoint(self.connect_peer),
                    },
                )
            return

        target = self.pinning.sender
        self._relay(self.listen_sock, LISTEN, self.listen_name, nbytes, target)

    def dispatch(self, ready: Collection[str]) -> None:
        # Fixed order: listen before send within one iteration.
        if LISTEN in ready:
            self.handle_listen()
        if SEND in ready:
            self.handle_send()

    # -- loop ----------------------------------------------------------------

    def _wait_timeout(self, now: float) -> float:
        if not self.stats_enabled:
            return self.poll_timeout
        return max(0.0, min(self.poll_timeout, self.statistics.seconds_until_display(now)))

    def tick(self, now: float) -> bool:
        """Display statistics if enabled and due; returns True if displayed."""
        if self.stats_enabled and self.statistics.display_due(now):
            self.statistics.display(now)
            return True
        return False

    def step(self, selector: selectors.BaseSelector) -> bool:
        """Run one loop iteration: statistics, bounded wait, dispatch.

        Returns True if statistics were displayed during this iteration.
        """
        now = time.time()
        displayed = self.tick(now)
        logger.debug("waiting for readable sockets")
        try:
            events = selector.select(timeout=self._wait_timeout(now))
        except InterruptedError:
            return displayed
        except OSError as exc:
            raise ForwardingError("select", exc.errno, f"Could not check readable sockets: {exc}") from exc
        if not events:
            logger.debug("poll timeout")
            return displayed
        self.dispatch({key.data for key, _mask in events})
        return displayed

    def open_selector(self) -> selectors.BaseSelector:
        selector = selectors.DefaultSelector()
        selector.register(self.listen_sock, selectors.EVENT_READ, data=LISTEN)
        selector.register(self.send_sock, selectors.EVENT_READ, data=SEND)
        return selector

    def serve(
        self,
        stop_after_seconds: Optional[float] = None,
        on_display: Optional[Callable[[], None]] = None,
    ) -> None:
        """Run the loop until a fatal error, KeyboardInterrupt, or the optional deadline."""
        start_time = time.time()
        self.statistics.start(start_time)
        selector = self.open_selector()
        logger.log(VERBOSE, "entering forwarding loop")
        try:
            while True:
                if stop_after_seconds is not None and (time.time() - start_time) >= stop_after_seconds:
                    break
                if self.step(selector) and on_display is not None:
                    on_display()
        finally:
            selector.close()

    def status(self, state: str) -> Dict[str, object]:
        return {
            "status": state,
            "listen": format_endpoint(self.listen_name),
            "send": format_endpoint(self.send_name),
            "connect": format_endpoint(self.connect_peer),
            "pinned_sender": format_endpoint(self.pinning.sender),
            "counters": self.statistics.to_dict(),
            "ts_ns": time.time_ns(),
        }


@contextmanager
def _setup_sockets(cfg: Dict[str, Any]) -> Iterator[Tuple[socket.socket, Endpoint, socket.socket, Endpoint]]:
    """Setup and cleanup the listen and send sockets."""
    sockets = []
    try:
        listen_sock, listen_name = socket_setup(
            "Listen", cfg.get("LISTEN_ADDRESS"), cfg["LISTEN_PORT"], cfg.get("LISTEN_INTERFACE")
        )
        sockets.append(listen_sock)
        send_sock, send_name = socket_setup(
            "Send", cfg.get("SEND_ADDRESS"), cfg.get("SEND_PORT") or 0, cfg.get("SEND_INTERFACE")
        )
        sockets.append(send_sock)
        yield listen_sock, listen_name, send_sock, send_name
    finally:
        for sock in sockets:
            sock.close()


def _log_settings(cfg: Dict[str, Any], connect_peer: Endpoint) -> None:
    logger.info(
        "---- INFO ----",
        extra={
            "listen_address": cfg.get("LISTEN_ADDRESS") or "ANY",
            "listen_port": cfg["LISTEN_PORT"],
            "listen_interface": cfg.get("LISTEN_INTERFACE") or "ANY",
            "connect_host": cfg.get("CONNECT_HOST"),
            "connect": format_endpoint(connect_peer),
            "send_address": cfg.get("SEND_ADDRESS") or "ANY",
            "send_port": cfg.get("SEND_PORT") or "ANY",
            "send_interface": cfg.get("SEND_INTERFACE") or "ANY",
            "listen_strict": bool(cfg.get("LISTEN_STRICT")),
            "connect_strict": bool(cfg.get("CONNECT_STRICT")),
            "listen_sender_address": cfg.get("LISTEN_SENDER_ADDRESS"),
            "listen_sender_port": cfg.get("LISTEN_SENDER_PORT"),
            "ignore_errors": bool(cfg.get("IGNORE_ERRORS", True)),
            "stats": bool(cfg.get("STATS")),
        },
    )


def run_redirect(
    cfg: Dict[str, Any],
    *,
    stop_after_seconds: Optional[float] = None,
    ready_event: Optional[threading.Event] = None,
    status_file: Optional[str] = None,
) -> Dict[str, int]:
    """
    Start a blocking redirector for a validated `cfg` (see `udp_redirect.config`).

    Resolves the connect host, binds both endpoints and forwards until a fatal
    error (raised), KeyboardInterrupt, or `stop_after_seconds`. Returns the
    counters on clean exit.
    """
    connect_address = cfg.get("CONNECT_ADDRESS")
    if cfg.get("CONNECT_HOST"):
        connect_address = resolve_host(cfg["CONNECT_HOST"])
        if IPv4Address(connect_address).is_unspecified:
            raise ResolutionError(f"Connect host {cfg['CONNECT_HOST']} resolved to wildcard address {connect_address}")
    connect_peer = (connect_address, int(cfg["CONNECT_PORT"]))

    _log_settings(cfg, connect_peer)

    status_path: Optional[Path] = Path(status_file).expanduser() if status_file else None

    def write_status(payload: Dict[str, object]) -> None:
        if status_path is None:
            return
        try:
            status_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = status_path.with_suffix(status_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload), encoding="utf-8")
            tmp_path.replace(status_path)
        except OSError as exc:
            logger.warning("Failed to write status file", extra={"error": str(exc), "path": str(status_path)})

    logger.info("---- START ----")
    with _setup_sockets(cfg) as (listen_sock, listen_name, send_sock, send_name):
        redirector = Redirector(
            cfg,
            listen_sock=listen_sock,
            listen_name=listen_name,
            send_sock=send_sock,
            send_name=send_name,
            connect_peer=connect_peer,
        )
        write_status(redirector.status("running"))
        if ready_event is not None:
            ready_event.set()

        try:
            redirector.serve(
                stop_after_seconds,
                on_display=lambda: write_status(redirector.status("running")),
            )
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping")

        write_status(redirector.status("stopped"))
        return redirector.statistics.to_dict()
