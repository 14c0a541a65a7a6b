#!/usr/bin/env python3
"""
WProxy: HTTP/HTTPS forward proxy.

Settings come from the command line, then ``[proxy]`` in the INI file
given with ``-c`` (default ``./config.ini``, optional), then built-in
defaults.

Usage:
    python wproxy.py --port 8888 -a tt:123 --tproxy --debug
    python wproxy.py -addr 127.0.0.1 -port 8888 -tproxy
"""

from __future__ import annotations

import argparse
import asyncio
import configparser
import signal
import sys
from typing import Optional, Sequence

import uvloop

from proxy_server import DEFAULT_CONFIG, ProxyConfig, ProxyServer, configure_logging, logger

parser = argparse.ArgumentParser(description="WProxy HTTP/HTTPS forward proxy")
parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config (default: ./config.ini)")
parser.add_argument('--addr', '-addr', dest='addr', type=str, metavar='HOST', default=None, help='Listen address (default: 0.0.0.0)')
parser.add_argument('--port', '-port', dest='port', type=str, metavar='PORT', default=None, help='Listen port (default: 8888)')
parser.add_argument('-a', '--auth', dest='auth', type=str, metavar='USER:PASSWORD', default=None, help='Enable authentication, user:password (e.g. tt:123)')
parser.add_argument("--tproxy", "-tproxy", dest='tproxy', action=argparse.BooleanOptionalAction, default=None, help="Transparent proxy mode (forward the real client IP)")
parser.add_argument("--debug", "-debug", dest='debug', action=argparse.BooleanOptionalAction, default=None, help="Debug mode, log every request")


def load_config(argv: Optional[Sequence[str]] = None) -> ProxyConfig:
    """Build the immutable ``ProxyConfig`` from *argv* and the config file."""
    args = parser.parse_args(argv)
    ini = configparser.ConfigParser()
    ini.read(args.config)

    addr: str = (
        args.addr
        if args.addr is not None
        else ini.get("proxy", "addr", fallback=DEFAULT_CONFIG.addr)
    )
    port: str = (
        args.port
        if args.port is not None
        else ini.get("proxy", "port", fallback=DEFAULT_CONFIG.port)
    )
    auth: Optional[str] = (
        args.auth
        if args.auth is not None
        else ini.get("proxy", "auth", fallback=None)
    )
    tproxy: bool = (
        args.tproxy
        if args.tproxy is not None
        else ini.getboolean("proxy", "tproxy", fallback=DEFAULT_CONFIG.tproxy)
    )
    debug: bool = (
        args.debug
        if args.debug is not None
        else ini.getboolean("proxy", "debug", fallback=DEFAULT_CONFIG.debug)
    )
    connect_timeout: float = ini.getfloat(
        "proxy", "connect_timeout", fallback=DEFAULT_CONFIG.connect_timeout
    )

    return ProxyConfig(
        addr=addr,
        port=port,
        auth=auth or None,
        tproxy=tproxy,
        debug=debug,
        connect_timeout=connect_timeout,
    )


async def serve(config: ProxyConfig) -> None:
    """Run the proxy until SIGINT/SIGTERM."""
    server = ProxyServer(config)
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await server.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    try:
        config = load_config(argv)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(config.debug)
    try:
        uvloop.run(serve(config))
    except (OSError, ValueError) as e:
        logger.critical("Cannot serve on %s:%s: %s", config.addr, config.port, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
