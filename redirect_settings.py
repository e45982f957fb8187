"""
Redirector settings and command line parsing
"""

import argparse
import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from redirect_errors import ConfigurationError
from redirect_network import Endpoint, parse_address
from redirect_statistics import STATISTICS_DELAY_SECONDS

__version__ = "1.0"

# Debug levels of the command line, --verbose / --debug
DEBUG_LEVEL_ERROR = 0
DEBUG_LEVEL_INFO = 1
DEBUG_LEVEL_VERBOSE = 2
DEBUG_LEVEL_DEBUG = 3

LOG_LEVELS = {
    DEBUG_LEVEL_ERROR: logging.WARNING,
    DEBUG_LEVEL_INFO: logging.INFO,
    DEBUG_LEVEL_VERBOSE: logging.INFO,
    DEBUG_LEVEL_DEBUG: logging.DEBUG,
}


@dataclass(frozen=True)
class RelaySettings:
    listen_port: int
    connect_port: int
    listen_address: Optional[str] = None
    listen_interface: Optional[str] = None

    connect_address: Optional[str] = None
    connect_host: Optional[str] = None

    send_address: Optional[str] = None
    send_port: int = 0
    send_interface: Optional[str] = None

    listen_strict: bool = False
    connect_strict: bool = False

    listen_sender_address: Optional[str] = None
    listen_sender_port: int = 0

    ignore_errors: bool = True

    stats: bool = False
    stats_interval: int = STATISTICS_DELAY_SECONDS
    stats_mqtt_host: Optional[str] = None
    stats_mqtt_port: int = 1883
    stats_mqtt_topic: str = "udp-redirect/stats"

    debug_level: int = DEBUG_LEVEL_ERROR

    @property
    def connect_endpoint(self) -> Endpoint:
        if self.connect_address is None:
            raise ConfigurationError("Connect address not resolved")
        return Endpoint.parse(self.connect_address, self.connect_port)

    @property
    def expected_sender(self) -> Optional[Endpoint]:
        if self.listen_sender_address is None:
            return None
        return Endpoint.parse(self.listen_sender_address, self.listen_sender_port)

    @property
    def log_level(self) -> int:
        return LOG_LEVELS[min(self.debug_level, DEBUG_LEVEL_DEBUG)]

    def with_connect_address(self, address: str) -> "RelaySettings":
        return replace(self, connect_address=address)


def _check_port(name: str, port: int, required: bool = False):
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"Invalid {name} port: {port}")
    if required and port == 0:
        raise ConfigurationError(f"{name.capitalize()} port not specified")


def _check_address(name: str, address: Optional[str]) -> Optional[str]:
    """Return the address in dotted-quad form"""
    if address is None:
        return None
    try:
        return parse_address(address)
    except ValueError:
        raise ConfigurationError(f"Invalid {name} address {address}")


def validate_settings(settings: RelaySettings) -> RelaySettings:
    """
    Check required options and combinations
    Returns the settings with addresses in dotted-quad form, listen_strict
    forced on when an expected sender is configured and stats forced on when
    an MQTT broker is given.
    """
    _check_port("listen", settings.listen_port, required=True)

    if settings.connect_address is None and settings.connect_host is None:
        raise ConfigurationError("Connect host or address not specified")

    _check_port("connect", settings.connect_port, required=True)
    _check_port("send", settings.send_port)
    _check_port("listen sender", settings.listen_sender_port)
    _check_port("stats MQTT", settings.stats_mqtt_port)

    if (settings.listen_sender_address is None) != (settings.listen_sender_port == 0):
        raise ConfigurationError(
            "Options listen-sender-address and listen-sender-port must either both be specified or none")

    settings = replace(
        settings,
        listen_address=_check_address("listen", settings.listen_address),
        send_address=_check_address("send", settings.send_address),
        listen_sender_address=_check_address("listen sender", settings.listen_sender_address))
    if settings.connect_host is None:
        settings = settings.with_connect_address(_check_address("connect", settings.connect_address))

    if settings.stats_interval < 1:
        raise ConfigurationError(f"Invalid stats interval: {settings.stats_interval}")

    if settings.stats_mqtt_host is not None:
        if not settings.stats_mqtt_host.strip():
            raise ConfigurationError("Invalid stats MQTT host: empty")
        settings = replace(settings, stats=True)

    if settings.listen_sender_address is not None:
        settings = replace(settings, listen_strict=True)

    return settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udp-redirect",
        description="A simple and high performance UDP redirector.")

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="count", default=0,
                        help="Verbose mode, can be specified multiple times")
    parser.add_argument("--debug", action="store_true", help="Debug mode")

    listen = parser.add_argument_group("listen")
    listen.add_argument("--listen-address", help="Listen address")
    listen.add_argument("--listen-port", type=int, default=0, help="Listen port (required)")
    listen.add_argument("--listen-interface", help="Listen interface name")
    listen.add_argument("--listen-address-strict", action="store_true",
                        help="Only receive packets from the same source as the first packet")

    connect = parser.add_argument_group("connect")
    connect.add_argument("--connect-address", help="Connect address")
    connect.add_argument("--connect-host", help="Connect host, overrides the connect address if both are specified")
    connect.add_argument("--connect-port", type=int, default=0, help="Connect port (required)")
    connect.add_argument("--connect-address-strict", action="store_true",
                         help="Only receive packets from the connect address / port")

    send = parser.add_argument_group("send")
    send.add_argument("--send-address", help="Send packets from address")
    send.add_argument("--send-port", type=int, default=0, help="Send packets from port")
    send.add_argument("--send-interface", help="Send packets from interface")

    sender = parser.add_argument_group("expected sender",
                                       "must be set together, --listen-address-strict is implied")
    sender.add_argument("--listen-sender-address",
                        help="Listen endpoint only accepts packets from this source address")
    sender.add_argument("--listen-sender-port", type=int, default=0,
                        help="Listen endpoint only accepts packets from this source port")

    errors = parser.add_mutually_exclusive_group()
    errors.add_argument("--ignore-errors", dest="ignore_errors", action="store_true", default=True,
                        help="Ignore most receive or send errors (unreachable, etc.) instead of exiting (default)")
    errors.add_argument("--stop-errors", dest="ignore_errors", action="store_false",
                        help="Exit on most receive or send errors (unreachable, etc.)")

    stats = parser.add_argument_group("statistics")
    stats.add_argument("--stats", action="store_true", help="Display stats periodically")
    stats.add_argument("--stats-interval", type=int, default=STATISTICS_DELAY_SECONDS,
                       help="Seconds between stats displays (default: %(default)s)")
    stats.add_argument("--stats-mqtt-host", help="Also publish stats to this MQTT broker, implies --stats")
    stats.add_argument("--stats-mqtt-port", type=int, default=1883, help="MQTT broker port (default: %(default)s)")
    stats.add_argument("--stats-mqtt-topic", default="udp-redirect/stats",
                       help="MQTT topic for stats (default: %(default)s)")

    return parser


def debug_level_from_args(verbose: int, debug: bool) -> int:
    """First --verbose jumps to VERBOSE, each further one adds a level"""
    level = DEBUG_LEVEL_ERROR
    for _ in range(verbose):
        level = DEBUG_LEVEL_VERBOSE if level < DEBUG_LEVEL_VERBOSE else level + 1
    if debug:
        level = max(level, DEBUG_LEVEL_DEBUG)
    return level


def parse_settings(argv: Optional[List[str]] = None) -> RelaySettings:
    """
    Parse the command line into validated settings
    Raises ConfigurationError; argparse exits on its own for malformed argv.
    """
    args = build_parser().parse_args(argv)

    settings = RelaySettings(
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        listen_interface=args.listen_interface,
        connect_address=args.connect_address,
        connect_host=args.connect_host,
        connect_port=args.connect_port,
        send_address=args.send_address,
        send_port=args.send_port,
        send_interface=args.send_interface,
        listen_strict=args.listen_address_strict,
        connect_strict=args.connect_address_strict,
        listen_sender_address=args.listen_sender_address,
        listen_sender_port=args.listen_sender_port,
        ignore_errors=args.ignore_errors,
        stats=args.stats,
        stats_interval=args.stats_interval,
        stats_mqtt_host=args.stats_mqtt_host,
        stats_mqtt_port=args.stats_mqtt_port,
        stats_mqtt_topic=args.stats_mqtt_topic,
        debug_level=debug_level_from_args(args.verbose, args.debug),
    )

    return validate_settings(settings)


def describe_settings(settings: RelaySettings) -> List[str]:
    """Human readable settings, one line each"""
    lines = [
        f"Listen address: {settings.listen_address or 'ANY'}",
        f"Listen port: {settings.listen_port}",
        f"Listen interface: {settings.listen_interface or 'ANY'}",
    ]
    if settings.connect_host is not None:
        lines.append(f"Connect host: {settings.connect_host}")
    if settings.connect_address is not None:
        lines.append(f"Connect address: {settings.connect_address}")
    lines += [
        f"Connect port: {settings.connect_port}",
        f"Send address: {settings.send_address or 'ANY'}",
        f"Send port: {settings.send_port or 'ANY'}",
        f"Send interface: {settings.send_interface or 'ANY'}",
        f"Listen strict: {'ENABLED' if settings.listen_strict else 'DISABLED'}",
        f"Connect strict: {'ENABLED' if settings.connect_strict else 'DISABLED'}",
    ]
    if settings.expected_sender is not None:
        lines.append(f"Listen only accepts packets from: {settings.expected_sender}")
    lines += [
        f"Ignore errors: {'ENABLED' if settings.ignore_errors else 'DISABLED'}",
        f"Display stats: {'ENABLED every %ds' % settings.stats_interval if settings.stats else 'DISABLED'}",
    ]
    if settings.stats_mqtt_host is not None:
        lines.append(f"Publish stats: {settings.stats_mqtt_host}:{settings.stats_mqtt_port} "
                     f"topic {settings.stats_mqtt_topic}")
    return lines
