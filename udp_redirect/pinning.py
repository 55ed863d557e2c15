"""
Endpoint pinning for the listen side and source checks for the connect side.

The listen socket behaves like a NAT binding by default: whoever spoke last
becomes the pinned sender. In listen-strict mode the first sender (or the
configured fixed sender) is locked in and everyone else is rejected.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from udp_redirect.logging_utils import VERBOSE, get_logger
from udp_redirect.network import format_endpoint

logger = get_logger("udp_redirect")

Endpoint = Tuple[str, int]

UNPINNED = "UNPINNED"
PINNED = "PINNED"

# Drop reasons returned by the admit_* checks.
DROP_SOURCE_MISMATCH = "source_mismatch"
DROP_UNPINNED = "unpinned"


class EndpointPinning:
    """Tracks the pinned sender and applies the acceptance policy."""

    def __init__(
        self,
        connect_peer: Endpoint,
        *,
        listen_strict: bool = False,
        connect_strict: bool = False,
        fixed_sender: Optional[Endpoint] = None,
    ) -> None:
        self.connect_peer: Endpoint = connect_peer
        self.connect_strict = bool(connect_strict)
        # A fixed sender implies listen-strict.
        self.listen_strict = bool(listen_strict) or fixed_sender is not None
        self.sender: Optional[Endpoint] = fixed_sender

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], connect_peer: Endpoint) -> "EndpointPinning":
        fixed_sender = None
        if cfg.get("LISTEN_SENDER_ADDRESS") is not None and cfg.get("LISTEN_SENDER_PORT"):
            fixed_sender = (cfg["LISTEN_SENDER_ADDRESS"], int(cfg["LISTEN_SENDER_PORT"]))
        return cls(
            connect_peer,
            listen_strict=bool(cfg.get("LISTEN_STRICT", False)),
            connect_strict=bool(cfg.get("CONNECT_STRICT", False)),
            fixed_sender=fixed_sender,
        )

    @property
    def state(self) -> str:
        return UNPINNED if self.sender is None else PINNED

    def admit_listen(self, source: Endpoint) -> Optional[str]:
        """Apply listen-side policy; returns None on accept, else the drop reason.

        Accepting may re-pin the sender; a rejection never changes state.
        """
        if self.sender is None or not self.listen_strict:
            if self.sender != source:
                logger.log(
                    VERBOSE,
                    "Listen remote endpoint set",
                    extra={"previous": format_endpoint(self.sender), "sender": format_endpoint(source)},
                )
                self.sender = source
            return None
        if source == self.sender:
            return None
        return DROP_SOURCE_MISMATCH

    def admit_connect(self, source: Endpoint) -> Optional[str]:
        """Apply connect-side policy; returns None on accept, else the drop reason."""
        if self.sender is None:
            return DROP_UNPINNED
        if self.connect_strict and source != self.connect_peer:
            return DROP_SOURCE_MISMATCH
        return None
