#!/usr/bin/env python3
"""
Fail2Ban Prometheus Exporter

Reads the live state of a local fail2ban daemon over its control socket and
republishes it as a Prometheus pull endpoint.

Features:
- Jail count, per-jail failure/ban counters and jail configuration gauges
- Currently banned IPs, deduplicated per jail on every scrape
- Optional geo-tagging of banned IPs from a MaxMind GeoIP2/GeoLite2 database
- Cumulative socket connection/request error counters
- /health endpoint for liveness checks, independent of /metrics
- Optional basic auth on /metrics
- Optional textfile collector re-exposing *.prom files next to the fail2ban metrics

Every scrape opens its own socket session(s) and closes them before the
scrape returns. Nothing is cached between scrapes except the error counters.

License: MIT
"""

from __future__ import annotations

import argparse
import base64
import binascii
import hmac
import ipaddress
import logging
import os
import pickle
import signal
import socket
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import geoip2.database
import geoip2.errors
from dotenv import load_dotenv
from fail2ban.client.csocket import CSocket
from prometheus_client import CollectorRegistry, make_wsgi_app
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.parser import text_string_to_metric_families
from prometheus_client.registry import Collector

__version__ = "1.0.0"

LOGGER_NAME = "fail2ban-exporter"


# =============================================================================
# Errors
# =============================================================================

class Fail2BanError(Exception):
    """Base class for all exporter errors."""
    pass


class SocketConnectionError(Fail2BanError):
    """Raised when the fail2ban control socket cannot be reached."""
    pass


class SocketRequestError(Fail2BanError):
    """Raised when a command on an open socket fails, times out or returns garbage."""
    pass


class GeoConfigError(Fail2BanError):
    """Raised when a geo provider cannot be initialized."""
    pass


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SOCKET_PATH = "/var/run/fail2ban/fail2ban.sock"
DEFAULT_SOCKET_TIMEOUT = 5.0
DEFAULT_LISTEN_ADDRESS = ":9191"
GEO_PROVIDER_MAXMIND = "maxmind"


@dataclass
class GeoSettings:
    """Geo-tagging settings for banned IP metrics."""

    enabled: bool = False
    db_path: str = ""
    provider: str = GEO_PROVIDER_MAXMIND


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # fail2ban control socket
    socket_path: str = DEFAULT_SOCKET_PATH
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
    exit_on_socket_conn_error: bool = False

    # HTTP endpoint, "host:port" (empty host = all interfaces)
    listen_address: str = DEFAULT_LISTEN_ADDRESS

    # Basic auth for /metrics, both or neither
    basic_auth_user: str = ""
    basic_auth_pass: str = ""

    # Directory of *.prom files appended to /metrics (empty = disabled)
    textfile_dir: str = ""

    geo: GeoSettings = field(default_factory=GeoSettings)

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    # Collect once, log the result and exit without serving
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        load_dotenv()

        def get_bool(key: str, default: bool = True) -> bool:
            val = os.getenv(key, str(default)).lower()
            return val in ("true", "1", "yes", "on")

        return cls(
            socket_path=os.getenv("F2B_SOCKET_PATH", DEFAULT_SOCKET_PATH),
            socket_timeout=float(os.getenv("F2B_SOCKET_TIMEOUT", str(DEFAULT_SOCKET_TIMEOUT))),
            exit_on_socket_conn_error=get_bool("F2B_EXIT_ON_SOCKET_CONN_ERROR", False),
            listen_address=os.getenv("F2B_WEB_LISTEN_ADDRESS", DEFAULT_LISTEN_ADDRESS),
            basic_auth_user=os.getenv("F2B_WEB_BASICAUTH_USER", ""),
            basic_auth_pass=os.getenv("F2B_WEB_BASICAUTH_PASS", ""),
            textfile_dir=os.getenv("F2B_COLLECTOR_TEXT_PATH", ""),
            geo=GeoSettings(
                enabled=get_bool("F2B_GEO_ENABLED", False),
                db_path=os.getenv("F2B_GEO_DB_PATH", ""),
                provider=os.getenv("F2B_GEO_PROVIDER", GEO_PROVIDER_MAXMIND).lower(),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("LOG_TIMESTAMPS"),
            dry_run=get_bool("DRY_RUN", False),
        )


def parse_listen_address(value: str) -> tuple[str, int]:
    """
    Split a "host:port" listen address.

    ":9191" listens on all interfaces. IPv6 hosts may be bracketed
    ("[::1]:9191").
    """
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        raise ValueError(f"expected host:port, got '{value}'")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"invalid port in '{value}'") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"port out of range in '{value}'")
    return host.strip("[]"), port_num


# =============================================================================
# fail2ban Control Socket Client
# =============================================================================

@dataclass
class JailStats:
    """Counters reported by `fail2ban-client status <jail>`."""
    failed_current: int
    failed_total: int
    banned_current: int
    banned_total: int


class Fail2BanSocket:
    """
    One session on the fail2ban control socket, on top of fail2ban's CSocket.

    Every query either returns a value or raises SocketRequestError. A failed
    query closes the session, since a late reply would otherwise be read as
    the answer to the next command. close() is idempotent. Use as a context
    manager to guarantee release.
    """

    def __init__(self, csock: CSocket, path: str = ""):
        self.path = path
        self._csock = csock
        self._closed = False

    def __enter__(self) -> "Fail2BanSocket":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._csock.close()

    def send(self, *command: Any) -> Any:
        """Send one command and return the payload of a successful reply."""
        if self._closed:
            raise SocketRequestError("socket session is already closed")

        name = " ".join(str(part) for part in command)
        try:
            reply = self._csock.send(list(command))
        except OSError as e:
            # socket.timeout is an OSError too
            self.close()
            raise SocketRequestError(f"'{name}' failed: {e}") from e
        except (pickle.UnpicklingError, EOFError, ImportError, AttributeError) as e:
            self.close()
            raise SocketRequestError(f"malformed reply to '{name}': {e}") from e

        try:
            code, payload = reply
        except (TypeError, ValueError) as e:
            self.close()
            raise SocketRequestError(f"malformed reply to '{name}': {reply!r}") from e

        if code != 0:
            raise SocketRequestError(f"fail2ban rejected '{name}': {payload!r}")
        return payload

    @staticmethod
    def _as_dict(value: Any, what: str) -> Dict[str, Any]:
        try:
            return dict(value)
        except (TypeError, ValueError) as e:
            raise SocketRequestError(f"unexpected {what} reply: {value!r}") from e

    def _jail_status(self, jail: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        status = self._as_dict(self.send("status", jail), f"status {jail}")
        filter_status = self._as_dict(status.get("Filter", ()), f"status {jail} filter")
        action_status = self._as_dict(status.get("Actions", ()), f"status {jail} actions")
        return filter_status, action_status

    def _get_int(self, jail: str, key: str) -> int:
        value = self.send("get", jail, key)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise SocketRequestError(f"non-integer {key} for jail {jail}: {value!r}") from e

    def ping(self) -> bool:
        return self.send("ping") == "pong"

    def get_jails(self) -> List[str]:
        """Jail names in the order fail2ban reports them."""
        status = self._as_dict(self.send("status"), "status")
        jail_list = status.get("Jail list", "")
        return [name.strip() for name in str(jail_list).split(",") if name.strip()]

    def get_jail_stats(self, jail: str) -> JailStats:
        filter_status, action_status = self._jail_status(jail)
        try:
            return JailStats(
                failed_current=int(filter_status["Currently failed"]),
                failed_total=int(filter_status["Total failed"]),
                banned_current=int(action_status["Currently banned"]),
                banned_total=int(action_status["Total banned"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SocketRequestError(f"incomplete status for jail {jail}: {e}") from e

    def get_banned_ips(self, jail: str) -> List[str]:
        """Banned IPs as reported, duplicates included."""
        _, action_status = self._jail_status(jail)
        banned = action_status.get("Banned IP list")
        if banned is None:
            raise SocketRequestError(f"no banned IP list in status for jail {jail}")
        if isinstance(banned, str):
            banned = banned.split()
        return [str(ip) for ip in banned]

    def get_jail_ban_time(self, jail: str) -> int:
        return self._get_int(jail, "bantime")

    def get_jail_find_time(self, jail: str) -> int:
        return self._get_int(jail, "findtime")

    def get_jail_max_retries(self, jail: str) -> int:
        return self._get_int(jail, "maxretry")

    def get_server_version(self) -> str:
        return str(self.send("version"))


def connect_to_socket(path: str, timeout: float = DEFAULT_SOCKET_TIMEOUT) -> Fail2BanSocket:
    """Open a new session, raising SocketConnectionError if the daemon is unreachable."""
    try:
        csock = CSocket(path, timeout=timeout)
    except OSError as e:
        raise SocketConnectionError(f"cannot connect to {path}: {e}") from e
    return Fail2BanSocket(csock, path)


# =============================================================================
# Geo Enrichment
# =============================================================================

# Label positions of the banned_ip metric, in emission order
GEO_LABELS: Tuple[str, ...] = ("city", "latitude", "longitude", "country", "country_code")


class GeoProvider(ABC):
    """
    Geo-tagging capability for banned IPs.

    annotate() returns a mapping restricted to get_labels(), or None when
    nothing could be resolved. It must not raise.
    """

    @abstractmethod
    def annotate(self, address: str) -> Optional[Dict[str, str]]:
        raise NotImplementedError

    @abstractmethod
    def get_labels(self) -> List[str]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class NullGeoProvider(GeoProvider):
    """Used when geo-tagging is disabled or failed to initialize."""

    def annotate(self, address: str) -> Optional[Dict[str, str]]:
        return None

    def get_labels(self) -> List[str]:
        return []


class MaxMindGeoProvider(GeoProvider):
    """
    Geo-tagging from a MaxMind GeoIP2/GeoLite2 City database.

    The reader is opened once and only read afterwards, so lookups from
    overlapping scrapes can share it.
    """

    def __init__(self, db_path: str, logger: Optional[logging.Logger] = None):
        self.db_path = db_path
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        try:
            self._reader = geoip2.database.Reader(db_path)
        except Exception as e:
            raise GeoConfigError(f"failed to open MaxMind database at {db_path}: {e}") from e

    def annotate(self, address: str) -> Optional[Dict[str, str]]:
        try:
            ip = ipaddress.ip_address(address.strip())
        except ValueError:
            self.logger.debug(f"Invalid IP address for geo lookup: {address!r}")
            return None

        try:
            record = self._reader.city(str(ip))
        except geoip2.errors.AddressNotFoundError:
            self.logger.debug(f"No geo record for {ip}")
            return None
        except (geoip2.errors.GeoIP2Error, ValueError, TypeError, RuntimeError) as e:
            self.logger.debug(f"Geo lookup failed for {ip}: {e}")
            return None

        labels: Dict[str, str] = {}

        if record.city.name:
            labels["city"] = record.city.name

        # Coordinates only travel as a pair; 0/0 means "unknown" in the database
        latitude = record.location.latitude or 0.0
        longitude = record.location.longitude or 0.0
        if latitude != 0 or longitude != 0:
            labels["latitude"] = f"{latitude:.6f}"
            labels["longitude"] = f"{longitude:.6f}"

        if record.country.name:
            labels["country"] = record.country.name
        if record.country.iso_code:
            labels["country_code"] = record.country.iso_code

        return labels or None

    def get_labels(self) -> List[str]:
        return list(GEO_LABELS)

    def close(self) -> None:
        self._reader.close()


def build_geo_provider(settings: GeoSettings, logger: Optional[logging.Logger] = None) -> GeoProvider:
    """
    Build the configured geo provider.

    Never raises: any configuration problem is logged as a warning and
    geo-tagging is disabled for the run.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)

    if not settings.enabled:
        return NullGeoProvider()

    if not settings.db_path:
        logger.warning("Geo-tagging enabled but no database path provided, geo-tagging disabled")
        return NullGeoProvider()

    if settings.provider != GEO_PROVIDER_MAXMIND:
        logger.warning(f"Unknown geo provider: {settings.provider}, geo-tagging disabled")
        return NullGeoProvider()

    try:
        provider = MaxMindGeoProvider(settings.db_path, logger=logger)
    except GeoConfigError as e:
        logger.warning(f"Failed to initialize MaxMind geo provider: {e}")
        return NullGeoProvider()

    logger.info(f"Geo-tagging enabled with MaxMind database: {settings.db_path}")
    return provider


# =============================================================================
# Metric Descriptors
# =============================================================================

NAMESPACE = "f2b"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class MetricDesc:
    """Static description of one metric family."""
    name: str
    documentation: str
    labels: Tuple[str, ...]
    kind: str = "gauge"

    def family(self) -> Metric:
        """A new, empty family ready to receive samples."""
        if self.kind == "counter":
            return CounterMetricFamily(self.name, self.documentation, labels=list(self.labels))
        return GaugeMetricFamily(self.name, self.documentation, labels=list(self.labels))


METRIC_ERROR_COUNT = MetricDesc(
    build_fq_name(NAMESPACE, "", "errors"),
    "Number of errors found since startup",
    ("type", "host"),
    kind="counter",
)
METRIC_SERVER_UP = MetricDesc(
    build_fq_name(NAMESPACE, "", "up"),
    "Check if the fail2ban server is up",
    ("host",),
)
METRIC_JAIL_COUNT = MetricDesc(
    build_fq_name(NAMESPACE, "", "jail_count"),
    "Number of defined jails",
    ("host",),
)
METRIC_JAIL_FAILED_CURRENT = MetricDesc(
    build_fq_name(NAMESPACE, "", "jail_failed_current"),
    "Number of current failures on this jail's filter",
    ("jail", "host"),
)
METRIC_JAIL_FAILED_TOTAL = MetricDesc(
    build_fq_name(NAMESPACE, "", "jail_failed_total"),
    "Number of total failures on this jail's filter",
    ("jail", "host"),
)
METRIC_JAIL_BANNED_CURRENT = MetricDesc(
    build_fq_name(NAMESPACE, "", "jail_banned_current"),
    "Number of IPs currently banned in this jail",
    ("jail", "host"),
)
METRIC_JAIL_BANNED_TOTAL = MetricDesc(
    build_fq_name(NAMESPACE, "", "jail_banned_total"),
    "Total number of IPs banned by this jail (includes expired bans)",
    ("jail", "host"),
)
METRIC_JAIL_BAN_TIME = MetricDesc(
    build_fq_name(NAMESPACE, "config", "jail_ban_time"),
    "How long an IP is banned for in this jail (in seconds)",
    ("jail", "host"),
)
METRIC_JAIL_FIND_TIME = MetricDesc(
    build_fq_name(NAMESPACE, "config", "jail_find_time"),
    "How far back will the filter look for failures in this jail (in seconds)",
    ("jail", "host"),
)
METRIC_JAIL_MAX_RETRIES = MetricDesc(
    build_fq_name(NAMESPACE, "config", "jail_max_retries"),
    "The number of failures allowed until the IP is banned by this jail",
    ("jail", "host"),
)
METRIC_VERSION_INFO = MetricDesc(
    build_fq_name(NAMESPACE, "", "version"),
    "Version of the exporter and fail2ban server",
    ("exporter", "server", "host"),
)
METRIC_BANNED_IP = MetricDesc(
    build_fq_name(NAMESPACE, "", "banned_ip"),
    "Currently banned IP address (value is always 1)",
    ("jail", "address", "host") + GEO_LABELS,
)

# Pre-declared to the registry. The config gauges and version are emitted by
# collect() but are not listed here.
DESCRIBED_METRICS: Tuple[MetricDesc, ...] = (
    METRIC_SERVER_UP,
    METRIC_JAIL_COUNT,
    METRIC_JAIL_FAILED_CURRENT,
    METRIC_JAIL_FAILED_TOTAL,
    METRIC_JAIL_BANNED_CURRENT,
    METRIC_JAIL_BANNED_TOTAL,
    METRIC_ERROR_COUNT,
    METRIC_BANNED_IP,
)

# Everything collect() can emit, in emission order
COLLECTED_METRICS: Tuple[MetricDesc, ...] = (
    METRIC_SERVER_UP,
    METRIC_JAIL_COUNT,
    METRIC_JAIL_FAILED_CURRENT,
    METRIC_JAIL_FAILED_TOTAL,
    METRIC_JAIL_BANNED_CURRENT,
    METRIC_JAIL_BANNED_TOTAL,
    METRIC_JAIL_BAN_TIME,
    METRIC_JAIL_FIND_TIME,
    METRIC_JAIL_MAX_RETRIES,
    METRIC_BANNED_IP,
    METRIC_VERSION_INFO,
    METRIC_ERROR_COUNT,
)

ERROR_TYPE_SOCKET_CONN = "socket_conn"
ERROR_TYPE_SOCKET_REQ = "socket_req"


# =============================================================================
# Collector
# =============================================================================

@dataclass
class ErrorCounters:
    """Socket error counts since startup. Never reset; safe to share across threads."""

    connection: int = 0
    request: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_connection_error(self) -> None:
        with self._lock:
            self.connection += 1

    def record_request_error(self) -> None:
        with self._lock:
            self.request += 1

    def snapshot(self) -> Tuple[int, int]:
        """(connection, request) read under the lock."""
        with self._lock:
            return self.connection, self.request


def resolve_hostname(logger: logging.Logger) -> str:
    try:
        return socket.gethostname()
    except OSError as e:
        logger.warning(f"Failed to get hostname: {e}, using 'unknown'")
        return "unknown"


class Fail2BanCollector(Collector):
    """
    Prometheus custom collector for fail2ban.

    One collect() call is one scrape:

      1. open a socket session (on failure: count it, and exit the process if
         exit_on_socket_conn_error is set, before anything is emitted)
      2. f2b_up: 1 only if the session answers ping
      3. jail count, per-jail stats and per-jail config; each failed query is
         counted and skipped without affecting the others
      4. banned IPs on a separate session, deduplicated by (jail, ip) and
         geo-tagged when a provider is configured
      5. f2b_version, even if the server version query failed
      6. cumulative error counters

    Sessions are never reused across scrapes.
    """

    def __init__(
        self,
        socket_path: str,
        exporter_version: str,
        exit_on_socket_conn_error: bool = False,
        geo_provider: Optional[GeoProvider] = None,
        socket_timeout: float = DEFAULT_SOCKET_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.socket_path = socket_path
        self.exporter_version = exporter_version
        self.exit_on_socket_conn_error = exit_on_socket_conn_error
        self.geo_provider = geo_provider or NullGeoProvider()
        self.socket_timeout = socket_timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.hostname = resolve_hostname(self.logger)
        self.errors = ErrorCounters()

    # ------------------------------------------------------------------
    # Registry interface
    # ------------------------------------------------------------------

    def describe(self) -> List[Metric]:
        return [desc.family() for desc in DESCRIBED_METRICS]

    def collect(self) -> Iterator[Metric]:
        families = {desc: desc.family() for desc in COLLECTED_METRICS}

        session = self._connect("metrics collection")
        if session is None and self.exit_on_socket_conn_error:
            self._terminate()

        try:
            self._collect_server_up(families, session)
            if session is not None:
                self._collect_jail_metrics(families, session)
            self._collect_version(families, session)
        finally:
            if session is not None:
                session.close()

        self._collect_banned_ip_metrics(families)
        self._collect_error_count(families)

        for desc in COLLECTED_METRICS:
            yield families[desc]

    def is_healthy(self) -> bool:
        """Liveness check on a session of its own. Never raises."""
        session = self._connect("health check")
        if session is None:
            return False
        with session:
            try:
                return session.ping()
            except SocketRequestError as e:
                self._request_failed("ping fail2ban server", e)
                return False

    def log_server_version(self) -> None:
        """Log the fail2ban server version at startup. Does not touch the error counters."""
        try:
            with connect_to_socket(self.socket_path, self.socket_timeout) as session:
                version = session.get_server_version()
        except SocketConnectionError as e:
            self.logger.warning(f"Error connecting to socket: {e}")
        except SocketRequestError as e:
            self.logger.warning(f"Error interacting with socket: {e}")
        else:
            self.logger.info(f"Successfully connected to fail2ban socket! fail2ban version: {version}")

    # ------------------------------------------------------------------
    # Session and error bookkeeping
    # ------------------------------------------------------------------

    def _connect(self, purpose: str) -> Optional[Fail2BanSocket]:
        try:
            return connect_to_socket(self.socket_path, self.socket_timeout)
        except SocketConnectionError as e:
            self.logger.error(f"Error opening socket for {purpose}: {e}")
            self.errors.record_connection_error()
            return None

    def _request_failed(self, what: str, exc: Exception) -> None:
        self.logger.error(f"Failed to {what}: {exc}")
        self.errors.record_request_error()

    def _terminate(self) -> None:
        self.logger.critical(
            f"fail2ban socket {self.socket_path} unreachable and exit on socket "
            "connection error is enabled, exiting"
        )
        os._exit(1)

    # ------------------------------------------------------------------
    # Per-step collection
    # ------------------------------------------------------------------

    def _collect_server_up(self, families: Dict[MetricDesc, Metric], session: Optional[Fail2BanSocket]) -> None:
        server_up = 0
        if session is not None:
            try:
                if session.ping():
                    server_up = 1
            except SocketRequestError as e:
                self._request_failed("ping fail2ban server", e)
        families[METRIC_SERVER_UP].add_metric([self.hostname], server_up)

    def _collect_jail_metrics(self, families: Dict[MetricDesc, Metric], session: Fail2BanSocket) -> None:
        try:
            jails = session.get_jails()
        except SocketRequestError as e:
            self._request_failed("get jail list", e)
            jails = []

        families[METRIC_JAIL_COUNT].add_metric([self.hostname], len(jails))

        for jail in jails:
            self._collect_jail_stats(families, session, jail)
            self._collect_jail_config(families, session, jail)

    def _collect_jail_stats(self, families: Dict[MetricDesc, Metric], session: Fail2BanSocket, jail: str) -> None:
        try:
            stats = session.get_jail_stats(jail)
        except SocketRequestError as e:
            self._request_failed(f"get stats for jail {jail}", e)
            return

        labels = [jail, self.hostname]
        families[METRIC_JAIL_FAILED_CURRENT].add_metric(labels, stats.failed_current)
        families[METRIC_JAIL_FAILED_TOTAL].add_metric(labels, stats.failed_total)
        families[METRIC_JAIL_BANNED_CURRENT].add_metric(labels, stats.banned_current)
        families[METRIC_JAIL_BANNED_TOTAL].add_metric(labels, stats.banned_total)

    def _collect_jail_config(self, families: Dict[MetricDesc, Metric], session: Fail2BanSocket, jail: str) -> None:
        queries = (
            (METRIC_JAIL_BAN_TIME, session.get_jail_ban_time, "ban time"),
            (METRIC_JAIL_FIND_TIME, session.get_jail_find_time, "find time"),
            (METRIC_JAIL_MAX_RETRIES, session.get_jail_max_retries, "max retries"),
        )
        for desc, query, what in queries:
            try:
                value = query(jail)
            except SocketRequestError as e:
                self._request_failed(f"get {what} for jail {jail}", e)
                continue
            families[desc].add_metric([jail, self.hostname], value)

    def _collect_banned_ip_metrics(self, families: Dict[MetricDesc, Metric]) -> None:
        session = self._connect("banned IP collection")
        if session is None:
            return

        with session:
            try:
                jails = session.get_jails()
            except SocketRequestError as e:
                self._request_failed("get jails for banned IP collection", e)
                return

            seen: Set[Tuple[str, str]] = set()
            for jail in jails:
                try:
                    banned_ips = session.get_banned_ips(jail)
                except SocketRequestError as e:
                    self._request_failed(f"get banned IPs for jail {jail}", e)
                    continue

                for ip in banned_ips:
                    key = (jail, ip)
                    if key in seen:
                        continue
                    seen.add(key)
                    families[METRIC_BANNED_IP].add_metric(
                        [jail, ip, self.hostname] + self._geo_labels(ip), 1
                    )

    def _geo_labels(self, ip: str) -> List[str]:
        """All geo label values in GEO_LABELS order, "" for anything unresolved."""
        annotation = self.geo_provider.annotate(ip) or {}
        return [annotation.get(label, "") for label in GEO_LABELS]

    def _collect_version(self, families: Dict[MetricDesc, Metric], session: Optional[Fail2BanSocket]) -> None:
        server_version = ""
        if session is not None:
            try:
                server_version = session.get_server_version()
            except SocketRequestError as e:
                self._request_failed("get fail2ban server version", e)
        families[METRIC_VERSION_INFO].add_metric(
            [self.exporter_version, server_version, self.hostname], 1
        )

    def _collect_error_count(self, families: Dict[MetricDesc, Metric]) -> None:
        connection_errors, request_errors = self.errors.snapshot()
        family = families[METRIC_ERROR_COUNT]
        family.add_metric([ERROR_TYPE_SOCKET_CONN, self.hostname], connection_errors)
        family.add_metric([ERROR_TYPE_SOCKET_REQ, self.hostname], request_errors)



# =============================================================================
# Textfile Collector
# =============================================================================

TEXTFILE_SUFFIX = ".prom"

METRIC_TEXTFILE_ERROR = MetricDesc(
    build_fq_name(NAMESPACE, "textfile", "error"),
    "Whether reading a text file failed (1) or succeeded (0) on this scrape",
    ("path",),
)


class TextFileCollector(Collector):
    """
    Re-exposes Prometheus text-format files (*.prom) from a directory.

    Files are re-read on every scrape so other tools can drop metrics next to
    the fail2ban ones. A file that can't be read or parsed is skipped and
    flagged in f2b_textfile_error.
    """

    def __init__(self, directory: str, logger: Optional[logging.Logger] = None):
        self.directory = directory
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def collect(self) -> Iterator[Metric]:
        errors = METRIC_TEXTFILE_ERROR.family()

        try:
            names = sorted(os.listdir(self.directory))
        except OSError as e:
            self.logger.error(f"Failed to list textfile directory {self.directory}: {e}")
            errors.add_metric([self.directory], 1)
            names = []

        for name in names:
            path = os.path.join(self.directory, name)
            if not name.endswith(TEXTFILE_SUFFIX) or not os.path.isfile(path):
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    families = list(text_string_to_metric_families(f.read()))
            except (OSError, ValueError, IndexError, TypeError) as e:
                # UnicodeDecodeError is a ValueError
                self.logger.error(f"Failed to read textfile {path}: {e}")
                errors.add_metric([path], 1)
                continue
            errors.add_metric([path], 0)
            yield from families

        yield errors


# =============================================================================
# HTTP Exposition
# =============================================================================

INDEX_PAGE = b"""<html>
<head><title>Fail2Ban Exporter</title></head>
<body>
<h1>Fail2Ban Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/health">Health</a></p>
</body>
</html>
"""


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves overlapping scrapes concurrently."""
    daemon_threads = True


class _LoggingRequestHandler(WSGIRequestHandler):
    """Send access logs to the exporter logger at DEBUG instead of stderr."""

    def log_message(self, format, *args):
        logging.getLogger(LOGGER_NAME).debug(f"{self.address_string()} {format % args}")


def _respond(start_response, status: str, body: bytes, content_type: str = "text/plain; charset=utf-8") -> List[bytes]:
    start_response(status, [("Content-Type", content_type), ("Content-Length", str(len(body)))])
    return [body]


@dataclass(frozen=True)
class BasicAuth:
    """HTTP basic auth credentials guarding /metrics."""
    username: str
    password: str

    def check(self, header: str) -> bool:
        """True if an Authorization header carries these credentials."""
        scheme, _, encoded = header.strip().partition(" ")
        if scheme.lower() != "basic":
            return False
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return False
        username, sep, password = decoded.partition(":")
        if not sep:
            return False
        # compare both so timing doesn't reveal which one was wrong
        user_ok = hmac.compare_digest(username.encode("utf-8"), self.username.encode("utf-8"))
        pass_ok = hmac.compare_digest(password.encode("utf-8"), self.password.encode("utf-8"))
        return user_ok and pass_ok


def create_app(collector: Fail2BanCollector, registry: CollectorRegistry, auth: Optional[BasicAuth] = None):
    """
    WSGI app serving /metrics from the registry and /health from the collector.

    With auth set, /metrics requires basic auth. /health and the index stay
    open for liveness checks.
    """
    metrics_app = make_wsgi_app(registry)

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")
        if path == "/metrics":
            if auth is not None and not auth.check(environ.get("HTTP_AUTHORIZATION", "")):
                start_response("401 Unauthorized", [
                    ("Content-Type", "text/plain; charset=utf-8"),
                    ("WWW-Authenticate", 'Basic realm="fail2ban-exporter"'),
                ])
                return [b"Unauthorized\n"]
            return metrics_app(environ, start_response)
        if path == "/health":
            if collector.is_healthy():
                return _respond(start_response, "200 OK", b"OK\n")
            return _respond(start_response, "503 Service Unavailable", b"fail2ban server unavailable\n")
        if path == "/":
            return _respond(start_response, "200 OK", INDEX_PAGE, "text/html; charset=utf-8")
        return _respond(start_response, "404 Not Found", b"Not Found\n")

    return app


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging with structured output."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(
        format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    return logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Export fail2ban jail and ban state as Prometheus metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  F2B_SOCKET_PATH                 fail2ban control socket (default: /var/run/fail2ban/fail2ban.sock)
  F2B_SOCKET_TIMEOUT              Per-query socket timeout in seconds (default: 5)
  F2B_EXIT_ON_SOCKET_CONN_ERROR   Exit when the socket is unreachable during a scrape (default: false)
  F2B_WEB_LISTEN_ADDRESS          host:port to serve metrics on (default: :9191)
  F2B_WEB_BASICAUTH_USER          Basic auth username for /metrics
  F2B_WEB_BASICAUTH_PASS          Basic auth password for /metrics
  F2B_COLLECTOR_TEXT_PATH         Directory of *.prom files to append to /metrics
  F2B_GEO_ENABLED                 Geo-tag banned IPs (default: false)
  F2B_GEO_PROVIDER                Geo provider, only "maxmind" is supported (default: maxmind)
  F2B_GEO_DB_PATH                 Path to a GeoIP2/GeoLite2 City .mmdb file
  LOG_LEVEL                       DEBUG, INFO, WARN, ERROR (default: INFO)
  LOG_TIMESTAMPS                  Prefix log lines with a timestamp (default: true)
  DRY_RUN                         Collect once and exit without serving

Examples:
  # Serve on the default port
  ./fail2ban_exporter.py

  # Geo-tag banned IPs
  ./fail2ban_exporter.py --geo-enabled --geo-db-path /var/lib/GeoIP/GeoLite2-City.mmdb

  # Check connectivity and exit
  ./fail2ban_exporter.py --dry-run --debug
""",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-n", "--dry-run",
        action="store_true",
        help="Collect metrics once, log a summary and exit",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--socket",
        help="fail2ban socket path (overrides F2B_SOCKET_PATH)",
    )

    parser.add_argument(
        "--socket-timeout",
        type=float,
        metavar="SECONDS",
        help="Per-query socket timeout (overrides F2B_SOCKET_TIMEOUT)",
    )

    parser.add_argument(
        "--exit-on-socket-connection-error",
        action="store_true",
        help="Exit if the socket is unreachable during a scrape (overrides F2B_EXIT_ON_SOCKET_CONN_ERROR)",
    )

    parser.add_argument(
        "--listen-address",
        help="host:port to serve metrics on (overrides F2B_WEB_LISTEN_ADDRESS)",
    )

    parser.add_argument(
        "--web-basic-auth-user",
        help="Basic auth username for /metrics (overrides F2B_WEB_BASICAUTH_USER)",
    )

    parser.add_argument(
        "--web-basic-auth-pass",
        help="Basic auth password for /metrics (overrides F2B_WEB_BASICAUTH_PASS)",
    )

    parser.add_argument(
        "--textfile-dir",
        metavar="DIR",
        help="Directory of *.prom files to append to /metrics (overrides F2B_COLLECTOR_TEXT_PATH)",
    )

    parser.add_argument(
        "--geo-enabled",
        action="store_true",
        help="Geo-tag banned IPs (overrides F2B_GEO_ENABLED)",
    )

    parser.add_argument(
        "--geo-provider",
        help="Geo provider name (overrides F2B_GEO_PROVIDER)",
    )

    parser.add_argument(
        "--geo-db-path",
        help="Geo database path (overrides F2B_GEO_DB_PATH)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Load config from environment
    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    # Override with CLI args
    if args.dry_run:
        config.dry_run = True
    if args.debug:
        config.log_level = "DEBUG"
    if args.socket:
        config.socket_path = args.socket
    if args.socket_timeout is not None:
        config.socket_timeout = args.socket_timeout
    if args.exit_on_socket_connection_error:
        config.exit_on_socket_conn_error = True
    if args.listen_address:
        config.listen_address = args.listen_address
    if args.geo_enabled:
        config.geo.enabled = True
    if args.geo_provider:
        config.geo.provider = args.geo_provider.lower()
    if args.geo_db_path:
        config.geo.db_path = args.geo_db_path
    if args.web_basic_auth_user:
        config.basic_auth_user = args.web_basic_auth_user
    if args.web_basic_auth_pass:
        config.basic_auth_pass = args.web_basic_auth_pass
    if args.textfile_dir:
        config.textfile_dir = args.textfile_dir

    # Setup logging
    logger = setup_logging(config)

    try:
        host, port = parse_listen_address(config.listen_address)
    except ValueError as e:
        logger.error(f"Invalid listen address: {e}")
        return 1

    auth = None
    if config.basic_auth_user or config.basic_auth_pass:
        if not (config.basic_auth_user and config.basic_auth_pass):
            logger.error("Basic auth needs both F2B_WEB_BASICAUTH_USER and F2B_WEB_BASICAUTH_PASS")
            return 1
        auth = BasicAuth(config.basic_auth_user, config.basic_auth_pass)

    logger.info(f"Fail2Ban Exporter v{__version__}")
    logger.info(f"Reading fail2ban metrics from socket file: {config.socket_path}")

    geo_provider = build_geo_provider(config.geo, logger)
    collector = Fail2BanCollector(
        socket_path=config.socket_path,
        exporter_version=__version__,
        exit_on_socket_conn_error=config.exit_on_socket_conn_error,
        geo_provider=geo_provider,
        socket_timeout=config.socket_timeout,
        logger=logger,
    )
    collector.log_server_version()

    registry = CollectorRegistry()
    registry.register(collector)
    if config.textfile_dir:
        logger.info(f"Appending *.prom files from {config.textfile_dir}")
        registry.register(TextFileCollector(config.textfile_dir, logger=logger))
    if auth is not None:
        logger.info("Basic auth enabled for /metrics")

    try:
        if config.dry_run:
            return _run_dry(registry, logger)
        return _serve(collector, registry, host, port, logger, auth=auth)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    finally:
        geo_provider.close()


def _run_dry(registry: CollectorRegistry, logger: logging.Logger) -> int:
    """Run a single scrape and report what it produced."""
    families = list(registry.collect())
    samples = sum(len(family.samples) for family in families)
    logger.info(f"Dry run: collected {len(families)} metric families with {samples} samples")
    for family in families:
        for sample in family.samples:
            logger.debug(f"{sample.name}{sample.labels} {sample.value}")
    return 0


def _serve(
    collector: Fail2BanCollector,
    registry: CollectorRegistry,
    host: str,
    port: int,
    logger: logging.Logger,
    auth: Optional[BasicAuth] = None,
) -> int:
    """Serve /metrics and /health until SIGTERM/SIGINT."""
    try:
        httpd = make_server(
            host, port, create_app(collector, registry, auth=auth),
            server_class=_ThreadingWSGIServer,
            handler_class=_LoggingRequestHandler,
        )
    except OSError as e:
        logger.error(f"Cannot listen on {host}:{port}: {e}")
        return 1

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        # shutdown() blocks until serve_forever() returns, so it can't run on this thread
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info(f"Serving metrics on http://{host or '0.0.0.0'}:{port}/metrics")
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()

    logger.info("Exporter stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
