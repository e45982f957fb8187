"""
Packet / byte counters for the redirector and their periodic display
Optionally publishes each summary to an MQTT broker.
"""

import json
import logging
import time
from dataclasses import dataclass, fields
from typing import Optional, Tuple

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

STATISTICS_DELAY_SECONDS = 60

HUMAN_READABLE_SIZES = " KMGTPE"

SIDES = ("listen", "connect")
DIRECTIONS = ("receive", "send")


def to_human(value: float) -> Tuple[float, str]:
    """1500 -> (1.5, 'K'). Divides by 1000, not 1024."""
    count = 0
    while value > 1000 and count < len(HUMAN_READABLE_SIZES) - 1:
        value = value / 1000
        count += 1
    return value, HUMAN_READABLE_SIZES[count]


def format_human(value: float) -> str:
    number, suffix = to_human(value)
    return f"{number:.1f}{suffix}"


@dataclass
class RelayStatistics:
    """
    Interval counters (reset after every display) and cumulative totals
    Pure data, owned by the relay loop.
    """
    time_display_first: float = 0
    time_display_last: float = 0

    listen_packet_receive: int = 0
    listen_byte_receive: int = 0
    listen_packet_send: int = 0
    listen_byte_send: int = 0
    connect_packet_receive: int = 0
    connect_byte_receive: int = 0
    connect_packet_send: int = 0
    connect_byte_send: int = 0

    listen_packet_receive_total: int = 0
    listen_byte_receive_total: int = 0
    listen_packet_send_total: int = 0
    listen_byte_send_total: int = 0
    connect_packet_receive_total: int = 0
    connect_byte_receive_total: int = 0
    connect_packet_send_total: int = 0
    connect_byte_send_total: int = 0

    @staticmethod
    def interval_names():
        return [f.name for f in fields(RelayStatistics)
                if f.name.startswith(SIDES) and not f.name.endswith("_total")]

    def record(self, side: str, direction: str, size: int):
        """Count one packet of size bytes, e.g. record('listen', 'receive', 5)"""
        packets = f"{side}_packet_{direction}"
        octets = f"{side}_byte_{direction}"
        setattr(self, packets, getattr(self, packets) + 1)
        setattr(self, octets, getattr(self, octets) + size)

    def roll_up(self):
        """Add the interval counters to the totals"""
        for name in self.interval_names():
            total = f"{name}_total"
            setattr(self, total, getattr(self, total) + getattr(self, name))

    def reset_interval(self):
        for name in self.interval_names():
            setattr(self, name, 0)

    def snapshot(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _rate_line(side: str, direction: str, packets: int, octets: int, elapsed: int) -> str:
    return (f"{side}:{direction}:packets: {format_human(packets)} ({format_human(packets / elapsed)}/s), "
            f"{side}:{direction}:bytes: {format_human(octets)} ({format_human(octets / elapsed)}/s)")


def display_statistics(stats: RelayStatistics, now: float,
                       interval: int = STATISTICS_DELAY_SECONDS) -> dict:
    """
    Roll the interval counters into the totals and log both
    Rates use whole elapsed seconds, minimum 1. Resetting the interval
    counters is left to the caller.
    """
    elapsed = max(int(now - stats.time_display_last), 1)
    elapsed_total = max(int(now - stats.time_display_first), 1)

    stats.roll_up()

    logger.info(f"---- STATS {interval}s ----")
    for side in SIDES:
        for direction in DIRECTIONS:
            logger.info(_rate_line(side, direction,
                                   getattr(stats, f"{side}_packet_{direction}"),
                                   getattr(stats, f"{side}_byte_{direction}"),
                                   elapsed))

    logger.info("---- STATS TOTAL ----")
    for side in SIDES:
        for direction in DIRECTIONS:
            logger.info(_rate_line(side, direction,
                                   getattr(stats, f"{side}_packet_{direction}_total"),
                                   getattr(stats, f"{side}_byte_{direction}_total"),
                                   elapsed_total))

    summary = stats.snapshot()
    summary['time'] = now
    summary['elapsed'] = elapsed
    summary['elapsed_total'] = elapsed_total
    return summary


class StatisticsPublisher:
    """Publishes statistics summaries as JSON to an MQTT topic"""

    def __init__(self, host: str, port: int = 1883, topic: str = "udp-redirect/stats",
                 client: Optional[mqtt.Client] = None):
        self.host = host
        self.port = port
        self.topic = topic
        self.client = client
        self.connected = False

    def _make_client(self) -> mqtt.Client:
        try:
            return mqtt.Client(mqtt.CallbackAPIVersion.VERSION1)
        except AttributeError:
            # paho-mqtt < 2.0
            return mqtt.Client()

    def start(self) -> bool:
        """Connect and start the paho network loop"""
        if self.client is None:
            self.client = self._make_client()

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        try:
            logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}...")
            self.client.connect(self.host, self.port, 60)
            self.client.loop_start()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker {self.host}:{self.port}: {e}")
            logger.error("Statistics will not be published")
            self.client = None
            return False

        return True

    def stop(self):
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.client = None

    def _on_connect(self, client, userdata, flags, rc):
        if rc == 0:
            self.connected = True
            logger.info(f"Connected to MQTT broker {self.host}:{self.port}")
        else:
            logger.error(f"MQTT connection failed: {rc}")

    def _on_disconnect(self, client, userdata, rc):
        self.connected = False
        if rc != 0:
            logger.warning(f"Unexpected MQTT disconnect: {rc}")

    def publish(self, summary: dict):
        if self.client is None:
            return
        self.client.publish(self.topic, json.dumps(summary), qos=0)
        logger.debug(f"Published statistics to {self.topic}")


class StatisticsReporter:
    """
    The statistics collaborator called by the relay loop:
    logs each summary and hands it to the publisher, if any
    """

    def __init__(self, interval: int = STATISTICS_DELAY_SECONDS,
                 publisher: Optional[StatisticsPublisher] = None):
        self.interval = interval
        self.publisher = publisher

    def __call__(self, stats: RelayStatistics, now: Optional[float] = None) -> dict:
        if now is None:
            now = time.time()
        summary = display_statistics(stats, now, self.interval)
        if self.publisher is not None:
            self.publisher.publish(summary)
        return summary
