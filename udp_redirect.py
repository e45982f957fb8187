#!/usr/bin/env python3
"""
udp-redirect: a simple and high performance UDP redirector
Relays datagrams between a listen socket and a send socket, learning the
remote peer on the listen side. Runs until killed or a fatal error.
"""

import logging
import sys
from typing import List, Optional, Tuple

from endpoint_tracker import EndpointTracker
from redirect_errors import ConfigurationError, ErrorClassifier, RedirectError
from redirect_network import create_socket, resolve_host
from redirect_relay import UDPRedirector
from redirect_settings import RelaySettings, build_parser, describe_settings, parse_settings
from redirect_statistics import StatisticsPublisher, StatisticsReporter

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

logger = logging.getLogger("udp_redirect")


def configure_logging(settings: RelaySettings):
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT,
                        level=settings.log_level, stream=sys.stderr)
    if settings.stats:
        # The summary is the point of --stats, show it without --verbose
        logging.getLogger("redirect_statistics").setLevel(logging.INFO)


def build_redirector(settings: RelaySettings) -> Tuple[UDPRedirector, Optional[StatisticsPublisher]]:
    """
    Resolve the connect host, set up both sockets and wire the relay
    Raises RedirectError on any failure.
    """
    if settings.connect_host is not None:
        settings = settings.with_connect_address(resolve_host(settings.connect_host))

    logger.info("---- INFO ----")
    for line in describe_settings(settings):
        logger.info(line)
    logger.info("---- START ----")

    listen_sock, listen_name = create_socket("Listen", settings.listen_address,
                                             settings.listen_port, settings.listen_interface)
    try:
        send_sock, send_name = create_socket("Send", settings.send_address,
                                             settings.send_port, settings.send_interface)
    except RedirectError:
        listen_sock.close()
        raise

    tracker = EndpointTracker(settings.connect_endpoint,
                              listen_strict=settings.listen_strict,
                              connect_strict=settings.connect_strict,
                              expected_sender=settings.expected_sender)

    publisher = None
    reporter = None
    if settings.stats:
        if settings.stats_mqtt_host is not None:
            publisher = StatisticsPublisher(settings.stats_mqtt_host, settings.stats_mqtt_port,
                                            settings.stats_mqtt_topic)
            if not publisher.start():
                publisher = None
        reporter = StatisticsReporter(settings.stats_interval, publisher)

    redirector = UDPRedirector(listen_sock, listen_name, send_sock, send_name,
                               tracker, ErrorClassifier(settings.ignore_errors),
                               reporter=reporter, stats_interval=settings.stats_interval)
    return redirector, publisher


def main(argv: Optional[List[str]] = None):
    try:
        settings = parse_settings(argv)
    except ConfigurationError as e:
        build_parser().print_usage(sys.stderr)
        print(f"udp-redirect: error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings)

    try:
        redirector, publisher = build_redirector(settings)
    except RedirectError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)

    logger.info("=" * 70)
    logger.info(f"  Listen side: {redirector.listen_name}")
    logger.info(f"  Send side:   {redirector.send_name}")
    logger.info(f"  Forward to:  {redirector.tracker.connect_endpoint}")
    logger.info("=" * 70)

    try:
        redirector.run_forever()
    except RedirectError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    finally:
        if publisher is not None:
            publisher.stop()
        redirector.close()


if __name__ == "__main__":
    main()
