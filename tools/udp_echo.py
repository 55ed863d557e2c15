#!/usr/bin/env python3
"""Simple UDP echo peer for exercising a redirector by hand.

Point the redirector's --connect-port at this server, send datagrams to the
redirector's --listen-port, and every datagram should come back unchanged.

Usage: python tools/udp_echo.py --host 127.0.0.1 --port 9001
"""
import argparse
import signal
import socket
import threading
from typing import Optional


def serve_echo(sock: socket.socket, stop_event: threading.Event, max_packets: Optional[int] = None) -> int:
    """Echo datagrams back to their source until stopped; returns the echo count.

    `sock` should carry a timeout so the stop event is checked regularly.
    """
    echoed = 0
    while not stop_event.is_set():
        if max_packets is not None and echoed >= max_packets:
            break
        try:
            data, addr = sock.recvfrom(65536)
        except socket.timeout:
            continue
        except OSError:
            # socket closed from another thread or during shutdown
            break
        try:
            sock.sendto(data, addr)
        except OSError:
            # peer gone, keep serving others
            continue
        echoed += 1
    return echoed


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--host', default='127.0.0.1')
    p.add_argument('--port', type=int, default=9001)
    p.add_argument('--timeout', type=float, default=1.0,
                   help='socket recv timeout in seconds (used for responsive shutdown)')
    p.add_argument('--count', type=int, default=None,
                   help='exit after echoing this many datagrams')
    args = p.parse_args()

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        print(f'received signal {signum}, shutting down...')
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, _handle_signal)

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((args.host, args.port))
        s.settimeout(args.timeout)
        print(f'UDP echo server listening on {args.host}:{args.port} (timeout={args.timeout}s)')
        count = serve_echo(s, stop_event, max_packets=args.count)
    print(f'udp_echo exiting after {count} datagrams')


if __name__ == '__main__':
    main()
