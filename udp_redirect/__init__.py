"""Bidirectional UDP redirector: relays datagrams between a listen endpoint and a connect peer."""

__version__ = "1.0.0"
