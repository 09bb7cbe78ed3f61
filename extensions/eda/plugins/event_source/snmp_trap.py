#  Copyright 2024 Red Hat, Inc.
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.

from __future__ import annotations

import asyncio
import enum
import functools
import ipaddress
import logging
import re
import subprocess
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

# pylint: disable=import-error
from pyasn1.codec.ber import decoder  # type: ignore # noqa: PGH003
from pyasn1.error import PyAsn1Error  # type: ignore # noqa: PGH003
from pyasn1.type import univ  # type: ignore # noqa: PGH003
from pysnmp.carrier.asyncio.dgram import udp  # type: ignore # noqa: PGH003
from pysnmp.entity import config as snmp_config  # type: ignore # noqa: PGH003
from pysnmp.entity import engine  # type: ignore # noqa: PGH003
from pysnmp.entity.rfc3413 import ntfrcv  # type: ignore # noqa: PGH003
from pysnmp.proto import rfc1155, rfc1902  # type: ignore # noqa: PGH003
from pysnmp.proto.api import v1, v2c  # type: ignore # noqa: PGH003

DOCUMENTATION = r"""
---
short_description: Receive SNMP traps and emit them as snmp_trap metric events.
description:
  - An ansible-rulebook event source module for receiving SNMP traps.
  - Supports SNMPv1, SNMPv2c, and SNMPv3 protocols.
  - SNMPv1 traps are translated to the SNMPv2 shape following RFC 2576 section 3.1.
  - Every OID is resolved to its symbolic name with the net-snmp snmptranslate program.
    Resolutions are cached for the lifetime of the source.
  - Each recognised trap produces one event named snmp_trap whose single field is the
    trap name with value 1, tagged with the resolved variable bindings.
options:
  service_address:
    description:
      - Transport, local address, and port to listen on, e.g. "udp://127.0.0.1:1234".
      - Transport must be "udp". Omit the local address to listen on all interfaces.
    type: str
    default: "udp://:162"
  host:
    description:
      - The hostname or IP address to listen on. Only used when service_address is not set.
    type: str
  port:
    description:
      - The UDP port to listen on. Only used when service_address is not set.
    type: int
  timeout:
    description:
      - Timeout for running snmptranslate. Seconds, or a string such as "5s" or "500ms".
    type: str
    default: "5s"
  version:
    description:
      - SNMP version. Unrecognised values fall back to "2c".
    type: str
    default: "2c"
    choices: ["1", "2c", "3"]
  sec_name:
    description:
      - SNMPv3 security name.
    type: str
  sec_level:
    description:
      - SNMPv3 security level.
    type: str
    choices: ["noAuthNoPriv", "authNoPriv", "authPriv"]
  auth_protocol:
    description:
      - SNMPv3 authentication protocol.
    type: str
    choices: ["MD5", "SHA", ""]
  auth_password:
    description:
      - SNMPv3 authentication passphrase.
    type: str
  priv_protocol:
    description:
      - SNMPv3 privacy protocol.
    type: str
    choices: ["DES", "AES", "AES192", "AES192C", "AES256", "AES256C", ""]
  priv_password:
    description:
      - SNMPv3 privacy passphrase.
    type: str
  sec_engine_id:
    description:
      - Hex encoded engine ID of the SNMPv3 trap sender.
      - Required when version is "3". Traps from other engines fail authentication and are discarded.
    type: str
  workers:
    description:
      - Number of traps handled concurrently.
    type: int
    default: 4
  queue_size:
    description:
      - Maximum number of received traps waiting to be handled. Traps arriving while
        the backlog is full are dropped and logged.
    type: int
    default: 10000
  cache_size:
    description:
      - Maximum number of resolved OIDs kept in memory. 0 keeps every resolution.
    type: int
    default: 0
"""

EXAMPLES = r"""
- ansible.eda.snmp_trap:
    service_address: "udp://:162"
    version: "2c"

- ansible.eda.snmp_trap:
    service_address: "udp://0.0.0.0:1162"
    timeout: "2s"
    version: "3"
    sec_name: "snmpuser"
    sec_level: "authPriv"
    auth_protocol: "SHA"
    auth_password: "authkey123"
    priv_protocol: "AES"
    priv_password: "privkey123"
    sec_engine_id: "8000000001020304"

- ansible.eda.snmp_trap:
    host: "0.0.0.0"
    port: 1162
    version: "1"
    cache_size: 10000
"""

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_ADDRESS = "udp://:162"
DEFAULT_TIMEOUT = 5.0
DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 10000

SYS_UPTIME_OID = ".1.3.6.1.2.1.1.3.0"
SNMP_TRAP_OID = ".1.3.6.1.6.3.1.1.4.1.0"
# RFC 2576 3.1: generic trap N maps to snmpTraps.(N+1)
SNMP_TRAPS_PREFIX = ".1.3.6.1.6.3.1.1.5."

SNMPTRANSLATE_ARGS = ("-Td", "-Ob", "-m", "all")

SECURITY_LEVELS = {
    "": "noAuthNoPriv",
    "noauthnopriv": "noAuthNoPriv",
    "authnopriv": "authNoPriv",
    "authpriv": "authPriv",
}

AUTH_PROTOCOLS = {
    "": snmp_config.USM_AUTH_NONE,
    "md5": snmp_config.USM_AUTH_HMAC96_MD5,
    "sha": snmp_config.USM_AUTH_HMAC96_SHA,
}

PRIV_PROTOCOLS = {
    "": snmp_config.USM_PRIV_NONE,
    "des": snmp_config.USM_PRIV_CBC56_DES,
    "aes": snmp_config.USM_PRIV_CFB128_AES,
    "aes192": snmp_config.USM_PRIV_CFB192_AES,
    "aes192c": snmp_config.USM_PRIV_CFB192_AES_BLUMENTHAL,
    "aes256": snmp_config.USM_PRIV_CFB256_AES,
    "aes256c": snmp_config.USM_PRIV_CFB256_AES_BLUMENTHAL,
}

# USM rejects shorter passphrases when localizing keys
MIN_PASSPHRASE_LENGTH = 8

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}


class SnmpTrapError(Exception):
    """Base class for errors raised by the SNMP trap source."""


class ConfigError(SnmpTrapError, ValueError):
    """Invalid service address, version or SNMPv3 security parameters."""


class ListenError(SnmpTrapError):
    """The UDP listener could not be opened or failed while running."""


class ResolutionError(SnmpTrapError):
    """An OID could not be translated to a symbolic name."""

    NOT_FOUND = "not found"
    TIMEOUT = "timeout"
    EXEC = "exec"

    def __init__(self, oid: str, reason: str, detail: str = "") -> None:
        self.oid = oid
        self.reason = reason
        self.detail = detail
        msg = f"{reason} resolving {oid}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class MalformedTrapError(SnmpTrapError):
    """A trap carried no snmpTrapOID that could name the metric."""


class SnmpVersion(str, enum.Enum):
    """SNMP protocol versions; the value is the ``version`` tag text."""

    V1 = "1"
    V2C = "2c"
    V3 = "3"


class ValueKind(enum.Enum):
    INTEGER = "integer"
    OCTET_STRING = "octet-string"
    OBJECT_IDENTIFIER = "object-identifier"
    OTHER = "other"


@dataclass(frozen=True)
class MibEntry:
    """Symbolic form of one OID as reported by snmptranslate (``MIB::name``)."""

    mib_name: str
    oid_text: str


@dataclass(frozen=True)
class Variable:
    oid: str
    kind: ValueKind
    value: Any


@dataclass
class TrapEvent:
    """A decoded trap, handled once and then discarded.

    The v1 only fields keep their defaults for v2c and v3 traps.
    """

    version: SnmpVersion
    source: str
    variables: list[Variable] = field(default_factory=list)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    enterprise: str = ""
    generic_trap: int = -1
    specific_trap: int = 0
    agent_address: str = ""
    sys_uptime: int = 0


def parse_duration(value: Any) -> float:
    """Convert a timeout option to seconds.

    Args:
    ----
        value: A number of seconds, or a string such as "5s", "500ms" or "1m".

    Returns:
    -------
        The duration in seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            msg = f"invalid duration '{value}'"
            raise ConfigError(msg)
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        msg = f"duration must be positive, got '{value}'"
        raise ConfigError(msg)
    return seconds


@dataclass
class ListenerConfig:
    """Listener settings as given by the rulebook; validated by TrapListener.start."""

    service_address: str = DEFAULT_SERVICE_ADDRESS
    timeout: float = DEFAULT_TIMEOUT
    version: str = "2c"
    sec_level: str = ""
    sec_name: str = ""
    auth_protocol: str = ""
    auth_password: str = ""
    priv_protocol: str = ""
    priv_password: str = ""
    sec_engine_id: str = ""
    workers: int = DEFAULT_WORKERS
    queue_size: int = DEFAULT_QUEUE_SIZE
    cache_size: int = 0

    @classmethod
    def from_args(cls, args: dict[str, Any]) -> ListenerConfig:
        """Build a config from plugin arguments.

        Args:
        ----
            args: Configuration arguments.

        Returns:
        -------
            The listener configuration.
        """
        service_address = args.get("service_address")
        if not service_address:
            if "host" in args or "port" in args:
                service_address = f"udp://{args.get('host', '')}:{args.get('port', 162)}"
            else:
                service_address = DEFAULT_SERVICE_ADDRESS

        return cls(
            service_address=service_address,
            timeout=parse_duration(args.get("timeout", DEFAULT_TIMEOUT)),
            version=str(args.get("version", "2c")),
            sec_level=args.get("sec_level") or "",
            sec_name=args.get("sec_name") or "",
            auth_protocol=args.get("auth_protocol") or "",
            auth_password=args.get("auth_password") or "",
            priv_protocol=args.get("priv_protocol") or "",
            priv_password=args.get("priv_password") or "",
            sec_engine_id=args.get("sec_engine_id") or "",
            workers=int(args.get("workers", DEFAULT_WORKERS)),
            queue_size=int(args.get("queue_size", DEFAULT_QUEUE_SIZE)),
            cache_size=int(args.get("cache_size", 0) or 0),
        )


@dataclass(frozen=True)
class UsmParameters:
    sec_name: str
    sec_level: str
    auth_protocol: tuple[int, ...]
    auth_password: str | None
    priv_protocol: tuple[int, ...]
    priv_password: str | None
    engine_id: str = ""


def parse_service_address(address: str) -> tuple[str, int]:
    """Split "udp://host:port" into a bind address.

    Args:
    ----
        address: The service address.

    Returns:
    -------
        Tuple of (host, port). An empty host binds all interfaces.
    """
    scheme, sep, _ = address.partition("://")
    if not sep:
        msg = f"invalid service address: {address}"
        raise ConfigError(msg)

    # asyncio only gives us datagram sockets for udp
    if scheme != "udp":
        msg = f"unknown protocol '{scheme}' in '{address}'"
        raise ConfigError(msg)

    parsed = urlparse(address)
    try:
        port = parsed.port
    except ValueError as exc:
        msg = f"invalid port in service address: {address}"
        raise ConfigError(msg) from exc
    if port is None:
        msg = f"missing port in service address: {address}"
        raise ConfigError(msg)

    return parsed.hostname or "0.0.0.0", port  # noqa: S104


def parse_version(value: str) -> SnmpVersion:
    """Map "1", "2c" or "3" (optionally prefixed with "v") to a version; anything else is 2c."""
    text = str(value).strip().lower()
    if text.startswith("v"):
        text = text[1:]
    try:
        return SnmpVersion(text)
    except ValueError:
        logger.warning("Unknown SNMP version '%s', using 2c", value)
        return SnmpVersion.V2C


def build_usm_parameters(cfg: ListenerConfig) -> UsmParameters:
    """Validate the SNMPv3 security settings.

    Args:
    ----
        cfg: The listener configuration.

    Returns:
    -------
        The USM user to register with the SNMP engine.
    """
    sec_level = SECURITY_LEVELS.get(cfg.sec_level.lower())
    if sec_level is None:
        msg = f"unknown security level '{cfg.sec_level}'"
        raise ConfigError(msg)

    auth_protocol = AUTH_PROTOCOLS.get(cfg.auth_protocol.lower())
    if auth_protocol is None:
        msg = f"unknown authentication protocol '{cfg.auth_protocol}'"
        raise ConfigError(msg)

    priv_protocol = PRIV_PROTOCOLS.get(cfg.priv_protocol.lower())
    if priv_protocol is None:
        msg = f"unknown privacy protocol '{cfg.priv_protocol}'"
        raise ConfigError(msg)

    if not cfg.sec_name:
        msg = "sec_name is required for SNMPv3"
        raise ConfigError(msg)

    uses_auth = sec_level in ("authNoPriv", "authPriv")
    uses_priv = sec_level == "authPriv"

    if uses_auth and auth_protocol == snmp_config.USM_AUTH_NONE:
        msg = f"security level {sec_level} requires an authentication protocol"
        raise ConfigError(msg)
    if uses_priv and priv_protocol == snmp_config.USM_PRIV_NONE:
        msg = f"security level {sec_level} requires a privacy protocol"
        raise ConfigError(msg)
    if uses_auth and len(cfg.auth_password) < MIN_PASSPHRASE_LENGTH:
        msg = f"auth_password must be at least {MIN_PASSPHRASE_LENGTH} characters"
        raise ConfigError(msg)
    if uses_priv and len(cfg.priv_password) < MIN_PASSPHRASE_LENGTH:
        msg = f"priv_password must be at least {MIN_PASSPHRASE_LENGTH} characters"
        raise ConfigError(msg)

    # traps are authenticated against keys localized to the sender's engine ID
    if not cfg.sec_engine_id:
        msg = "sec_engine_id of the trap sender is required for SNMPv3"
        raise ConfigError(msg)
    try:
        engine_id = bytes.fromhex(cfg.sec_engine_id)
    except ValueError as exc:
        msg = f"invalid sec_engine_id '{cfg.sec_engine_id}'"
        raise ConfigError(msg) from exc
    if not engine_id:
        msg = f"invalid sec_engine_id '{cfg.sec_engine_id}'"
        raise ConfigError(msg)

    return UsmParameters(
        sec_name=cfg.sec_name,
        sec_level=sec_level,
        auth_protocol=auth_protocol if uses_auth else snmp_config.USM_AUTH_NONE,
        auth_password=cfg.auth_password if uses_auth else None,
        priv_protocol=priv_protocol if uses_priv else snmp_config.USM_PRIV_NONE,
        priv_password=cfg.priv_password if uses_priv else None,
        engine_id=cfg.sec_engine_id,
    )


def run_command(timeout: float, *argv: str) -> bytes:
    """Run a program and return its stdout, raising on timeout or failure."""
    completed = subprocess.run(  # noqa: S603
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        timeout=timeout,
        check=True,
    )
    return completed.stdout


def parse_mib_entry(oid: str, output: bytes) -> MibEntry:
    """Parse the first line of snmptranslate output ("MIB::name").

    Args:
    ----
        oid: The OID that was translated, for error reporting.
        output: Raw stdout of snmptranslate.

    Returns:
    -------
        The symbolic name of the OID.
    """
    lines = output.decode("utf-8", errors="replace").splitlines()
    first = lines[0].rstrip() if lines else ""
    mib_name, sep, oid_text = first.partition("::")
    if not sep:
        raise ResolutionError(oid, ResolutionError.NOT_FOUND)
    return MibEntry(mib_name=mib_name, oid_text=oid_text)


class SnmpTranslate:
    """Translate OIDs with the net-snmp snmptranslate program."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        run_cmd: Callable[..., bytes] = run_command,
        program: str = "snmptranslate",
    ) -> None:
        self.timeout = timeout
        self.run_cmd = run_cmd
        self.program = program

    def __call__(self, oid: str) -> MibEntry:
        try:
            output = self.run_cmd(self.timeout, self.program, *SNMPTRANSLATE_ARGS, oid)
        except subprocess.TimeoutExpired as exc:
            raise ResolutionError(oid, ResolutionError.TIMEOUT, f"{self.program} took longer than {self.timeout}s") from exc
        except (OSError, subprocess.SubprocessError) as exc:
            raise ResolutionError(oid, ResolutionError.EXEC, str(exc)) from exc
        return parse_mib_entry(oid, output)


class OidCacheStore(Protocol):
    """Backing store for resolved OIDs. Callers serialise access."""

    def get(self, oid: str) -> MibEntry | None: ...

    def put(self, oid: str, entry: MibEntry) -> None: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class OidCache:
    """Unbounded OID cache; grows for the lifetime of the process."""

    def __init__(self) -> None:
        self._entries: dict[str, MibEntry] = {}

    def get(self, oid: str) -> MibEntry | None:
        """Return the cached entry for an OID, or None on a miss."""
        return self._entries.get(oid)

    def put(self, oid: str, entry: MibEntry) -> None:
        """Store a successful resolution."""
        self._entries[oid] = entry

    def clear(self) -> None:
        """Drop every entry."""
        self._entries = {}

    def __len__(self) -> int:
        return len(self._entries)


class LRUOidCache:
    """OID cache holding at most ``maxsize`` entries, evicting the least recently used."""

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            msg = f"maxsize must be positive, got {maxsize}"
            raise ValueError(msg)
        self.maxsize = maxsize
        self._entries: OrderedDict[str, MibEntry] = OrderedDict()

    def get(self, oid: str) -> MibEntry | None:
        """Return the cached entry and mark it most recently used."""
        entry = self._entries.get(oid)
        if entry is not None:
            self._entries.move_to_end(oid)
        return entry

    def put(self, oid: str, entry: MibEntry) -> None:
        """Store an entry, evicting the least recently used ones beyond ``maxsize``.

        Args:
        ----
            oid: Dotted-decimal OID.
            entry: Its resolved name.
        """
        self._entries[oid] = entry
        self._entries.move_to_end(oid)
        while len(self._entries) > self.maxsize:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted OID %s from cache", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class OidResolver:
    """Resolve OIDs to MIB names, caching successful translations.

    A single lock guards the cache and is held while a miss is translated,
    so two lookups of the same unknown OID never run the translator twice.
    Lookups of unrelated OIDs wait behind a miss as well; hits are only
    delayed, never translated again.
    """

    def __init__(
        self,
        translator: Callable[[str], MibEntry],
        cache: OidCacheStore | None = None,
    ) -> None:
        self.translator = translator
        self._cache: OidCacheStore = cache if cache is not None else OidCache()
        self._lock = threading.Lock()

    def resolve(self, oid: str) -> MibEntry:
        """Resolve an OID.

        Args:
        ----
            oid: Dotted-decimal OID, e.g. ".1.3.6.1.6.3.1.1.5.3".

        Returns:
        -------
            The cached or freshly translated entry.
        """
        with self._lock:
            entry = self._cache.get(oid)
            if entry is not None:
                return entry
            # failures propagate and leave the cache untouched
            entry = self.translator(oid)
            self._cache.put(oid, entry)
            return entry

    def clear(self) -> None:
        """Forget every resolution."""
        with self._lock:
            self._cache.clear()

    def preload(self, oid: str, entry: MibEntry) -> None:
        """Seed the cache with a known resolution, skipping snmptranslate."""
        with self._lock:
            self._cache.put(oid, entry)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class MetricSink(Protocol):
    def emit(
        self,
        name: str,
        fields: dict[str, Any],
        tags: dict[str, str],
        timestamp: datetime,
    ) -> None: ...


class QueueSink:
    """Deliver metric events to an ansible-rulebook queue.

    ``emit`` is called from handler threads, so events are handed to the
    queue on the loop that owns it.
    """

    def __init__(self, queue: asyncio.Queue[Any], loop: asyncio.AbstractEventLoop) -> None:
        self.queue = queue
        self.loop = loop

    def emit(
        self,
        name: str,
        fields: dict[str, Any],
        tags: dict[str, str],
        timestamp: datetime,
    ) -> None:
        event = {
            "payload": {
                "name": name,
                "fields": fields,
                "tags": tags,
            },
            "meta": {
                "source": "snmp_trap",
                "received_at": timestamp.isoformat(),
            },
        }
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)


def v1_trap_oid(generic_trap: int, specific_trap: int, enterprise: str) -> str:
    """Derive the SNMPv2 trap OID of a v1 trap (RFC 2576 section 3.1).

    Returns an empty string when the generic trap code is out of range.
    """
    if 0 <= generic_trap < 6:
        return f"{SNMP_TRAPS_PREFIX}{generic_trap + 1}"
    if generic_trap == 6:
        return f"{enterprise}.0.{specific_trap}"
    return ""


class TrapNormalizer:
    """Turn decoded traps into snmp_trap metric events."""

    def __init__(self, resolver: OidResolver, sink: MetricSink) -> None:
        self.resolver = resolver
        self.sink = sink

    def handle(self, packet: TrapEvent, recv_time: datetime | None = None) -> bool:
        """Normalize one trap and emit it.

        Args:
        ----
            packet: The decoded trap.
            recv_time: Event timestamp, defaults to the packet receipt time.

        Returns:
        -------
            True if an event was emitted, False if the trap was dropped.
        """
        try:
            metric_name, fields, tags = self.normalize(packet)
        except ResolutionError as exc:
            logger.error("Error resolving OID %s from %s: %s", exc.oid, packet.source, exc)
            return False
        except MalformedTrapError:
            logger.error("Error parsing packet: %r", packet)
            return False

        fields[metric_name] = 1
        self.sink.emit("snmp_trap", fields, tags, recv_time or packet.received_at)
        return True

    def normalize(self, packet: TrapEvent) -> tuple[str, dict[str, Any], dict[str, str]]:
        """Build the metric name, fields and tags of a trap without emitting it.

        Args:
        ----
            packet: The decoded trap.

        Returns:
        -------
            Tuple of (metric name, fields, tags). The metric name is not yet in fields.
            ResolutionError or MalformedTrapError is raised when the trap is dropped.
        """
        fields: dict[str, Any] = {}
        tags: dict[str, str] = {
            "version": packet.version.value,
            "source": packet.source,
        }

        if packet.version == SnmpVersion.V1:
            trap_oid = v1_trap_oid(packet.generic_trap, packet.specific_trap, packet.enterprise)
            if trap_oid:
                entry = self.resolver.resolve(trap_oid)
                tags["oid"] = trap_oid
                tags["name"] = entry.oid_text
                tags["mib"] = entry.mib_name
            if packet.agent_address:
                tags["agent_address"] = packet.agent_address
            fields["sysUpTimeInstance"] = packet.sys_uptime

        metric_name = ""
        for var in packet.variables:
            if var.oid == SYS_UPTIME_OID:
                continue

            if var.kind == ValueKind.OBJECT_IDENTIFIER:
                entry = self.resolver.resolve(var.value)
                # one snmpTrapOID names the trap; later OID values are metadata
                if var.oid == SNMP_TRAP_OID and not metric_name:
                    metric_name = entry.oid_text
                    tags["oid"] = var.value
                    tags["mib"] = entry.mib_name
                else:
                    tags["oid"] = var.value
                    tags["name"] = entry.oid_text
                    tags["mib"] = entry.mib_name
            elif var.kind == ValueKind.OCTET_STRING:
                entry = self.resolver.resolve(var.oid)
                tags[entry.oid_text] = bytes(var.value).decode("utf-8", errors="replace")
            else:
                entry = self.resolver.resolve(var.oid)
                tags[entry.oid_text] = str(var.value)

        if not metric_name:
            raise MalformedTrapError(repr(packet))

        return metric_name, fields, tags


def _dotted(oid: Any) -> str:
    return "." + ".".join(str(x) for x in oid)


def _unwrap(value: Any) -> Any:
    # ObjectSyntax, SimpleSyntax, NetworkAddress and friends are all CHOICEs
    while isinstance(value, univ.Choice):
        value = value.getComponent()
    return value


def _ip_text(value: Any) -> str:
    return str(ipaddress.IPv4Address(bytes(value)))


def make_variable(name: Any, value: Any) -> Variable:
    """Classify a decoded variable binding.

    Args:
    ----
        name: The variable OID (pyasn1 ObjectIdentifier or tuple).
        value: The bound value as decoded by pyasn1 or pysnmp.

    Returns:
    -------
        The variable with a dotted OID and a plain Python value.
    """
    oid = _dotted(name)
    value = _unwrap(value)

    if isinstance(value, univ.ObjectIdentifier):
        return Variable(oid, ValueKind.OBJECT_IDENTIFIER, _dotted(value))
    if isinstance(value, (rfc1155.IpAddress, rfc1902.IpAddress)):
        return Variable(oid, ValueKind.OTHER, _ip_text(value))
    if isinstance(value, (rfc1155.Opaque, rfc1902.Opaque)):
        return Variable(oid, ValueKind.OTHER, bytes(value).hex())
    # Null (and noSuchObject, noSuchInstance, endOfMibView) subclasses OctetString
    if isinstance(value, univ.Null):
        return Variable(oid, ValueKind.OTHER, None)
    if isinstance(value, univ.OctetString):
        return Variable(oid, ValueKind.OCTET_STRING, bytes(value))
    if isinstance(value, univ.Integer):
        return Variable(oid, ValueKind.INTEGER, int(value))

    return Variable(oid, ValueKind.OTHER, value.prettyPrint())


def _variables(var_bind_list: Any) -> list[Variable]:
    return [make_variable(var_bind[0], var_bind[1]) for var_bind in var_bind_list]


def _decode_message(data: bytes) -> tuple[SnmpVersion | None, Any]:
    # a v1 Trap-PDU tag is not part of the v2c PDU choice and vice versa
    for version, proto in ((SnmpVersion.V2C, v2c), (SnmpVersion.V1, v1)):
        try:
            message, _ = decoder.decode(data, asn1Spec=proto.Message())
        except PyAsn1Error:
            continue
        return version, message
    return None, None


def decode_trap(data: bytes, source: str, received_at: datetime | None = None) -> TrapEvent | None:
    """Decode a v1 or v2c trap datagram.

    Args:
    ----
        data: The raw datagram.
        source: Sender IP address.
        received_at: Receipt time.

    Returns:
    -------
        The decoded trap, or None if the datagram is not a v1/v2c trap.
    """
    version, message = _decode_message(data)
    if message is None:
        logger.debug("Ignoring undecodable datagram from %s", source)
        return None

    received_at = received_at or datetime.now(timezone.utc)
    # Message ::= SEQUENCE { version, community, data }
    pdu = message[2].getComponent()

    if version == SnmpVersion.V1:
        if pdu.tagSet != v1.TrapPDU.tagSet:
            logger.debug("Ignoring non-trap SNMPv1 PDU from %s", source)
            return None
        # Trap-PDU ::= SEQUENCE { enterprise, agent-addr, generic-trap,
        #                         specific-trap, time-stamp, variable-bindings }
        return TrapEvent(
            version=SnmpVersion.V1,
            source=source,
            variables=_variables(pdu[5]),
            received_at=received_at,
            enterprise=_dotted(pdu[0]),
            generic_trap=int(pdu[2]),
            specific_trap=int(pdu[3]),
            agent_address=_ip_text(_unwrap(pdu[1])),
            sys_uptime=int(pdu[4]),
        )

    if pdu.tagSet != v2c.SNMPv2TrapPDU.tagSet:
        logger.debug("Ignoring non-trap SNMPv2c PDU from %s", source)
        return None
    # PDU ::= SEQUENCE { request-id, error-status, error-index, variable-bindings }
    return TrapEvent(
        version=SnmpVersion.V2C,
        source=source,
        variables=_variables(pdu[3]),
        received_at=received_at,
    )


class SNMPTrapProtocol(asyncio.DatagramProtocol):
    """Protocol handler for receiving SNMPv1 and SNMPv2c traps via UDP."""

    def __init__(
        self,
        on_trap: Callable[[TrapEvent], None],
        closed: asyncio.Future[None],
        time_func: Callable[[], datetime],
    ) -> None:
        self.on_trap = on_trap
        self.closed = closed
        self.time_func = time_func
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        """Called when the UDP socket is created."""
        self.transport = transport  # type: ignore[assignment]

    def connection_lost(self, exc: Exception | None) -> None:
        """Called when the connection is lost."""
        logger.debug("SNMP trap listener connection lost")
        if self.closed.done():
            return
        if exc is not None:
            self.closed.set_exception(ListenError(f"trap listener connection lost: {exc}"))
        else:
            self.closed.set_result(None)

    def error_received(self, exc: Exception) -> None:
        logger.warning("SNMP trap listener socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Called when a UDP datagram is received."""
        received_at = self.time_func()
        try:
            packet = decode_trap(data, addr[0], received_at)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error decoding SNMP trap from %s: %s", addr[0], exc)
            return
        if packet is not None:
            self.on_trap(packet)


class ListenerState(enum.Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    LISTENING = "listening"
    STOPPED = "stopped"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TrapListener:
    """Own the trap socket and feed decoded traps to the normalizer."""

    def __init__(
        self,
        resolver: OidResolver,
        sink: MetricSink,
        time_func: Callable[[], datetime] = _now,
    ) -> None:
        self.resolver = resolver
        self.normalizer = TrapNormalizer(resolver, sink)
        self.time_func = time_func
        self.state = ListenerState.CREATED
        self.address: tuple[str, int] | None = None
        self.config: ListenerConfig | None = None
        self.dropped = 0

        self._inbound: asyncio.Queue[TrapEvent] | None = None
        self._closed: asyncio.Future[None] | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._executor: ThreadPoolExecutor | None = None

    async def start(self, cfg: ListenerConfig) -> None:
        """Validate the configuration and start listening.

        Returns once the socket is bound; a bind failure is raised here.

        Args:
        ----
            cfg: The listener configuration.
        """
        if self.state != ListenerState.CREATED:
            msg = f"cannot start a listener in state {self.state.value}"
            raise SnmpTrapError(msg)

        try:
            host, port = parse_service_address(cfg.service_address)
            version = parse_version(cfg.version)
            usm = build_usm_parameters(cfg) if version == SnmpVersion.V3 else None
            if cfg.workers < 1:
                msg = f"workers must be at least 1, got {cfg.workers}"
                raise ConfigError(msg)
            if cfg.queue_size < 1:
                msg = f"queue_size must be at least 1, got {cfg.queue_size}"
                raise ConfigError(msg)
        except ConfigError:
            self.state = ListenerState.FAILED
            raise
        self.config = cfg
        self.state = ListenerState.CONFIGURED

        loop = asyncio.get_running_loop()
        self._inbound = asyncio.Queue(maxsize=cfg.queue_size)
        self._closed = loop.create_future()
        ready = asyncio.Event()

        self._listen_task = asyncio.create_task(self._listen(host, port, version, usm, ready))
        ready_task = asyncio.create_task(ready.wait())
        await asyncio.wait({ready_task, self._listen_task}, return_when=asyncio.FIRST_COMPLETED)

        if not ready.is_set():
            ready_task.cancel()
            self.state = ListenerState.FAILED
            exc = self._listen_task.exception()
            raise exc or ListenError("trap listener exited before listening")

        self._executor = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="snmp-trap")
        self._workers = [asyncio.create_task(self._worker()) for _ in range(cfg.workers)]
        self.state = ListenerState.LISTENING
        logger.info("Listening on udp://%s:%s (version %s)", self.address[0], self.address[1], version.value)

    async def stop(self) -> None:
        """Close the socket and wait for the listener to finish."""
        if self.state != ListenerState.LISTENING:
            return

        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)
        try:
            await self._listen_task
        except Exception as exc:  # noqa: BLE001
            logger.error("Error stopping trap listener %s", exc)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._executor is not None:
            # in-flight snmptranslate calls finish off the event loop
            await asyncio.get_running_loop().run_in_executor(
                None,
                functools.partial(self._executor.shutdown, wait=True),
            )
            self._executor = None
        self.state = ListenerState.STOPPED
        logger.info("SNMP trap listener stopped")

    def gather(self) -> None:
        """Traps are pushed; nothing to collect on a poll."""

    def _enqueue(self, packet: TrapEvent) -> None:
        if self._inbound is None:
            return
        try:
            self._inbound.put_nowait(packet)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dropping SNMP trap from %s: %d traps already waiting (%d dropped so far)",
                packet.source,
                self._inbound.qsize(),
                self.dropped,
            )

    async def _worker(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            packet = await self._inbound.get()
            try:
                await loop.run_in_executor(self._executor, self.normalizer.handle, packet, packet.received_at)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Error handling SNMP trap from %s: %s", packet.source, exc)
            finally:
                self._inbound.task_done()

    async def _listen(
        self,
        host: str,
        port: int,
        version: SnmpVersion,
        usm: UsmParameters | None,
        ready: asyncio.Event,
    ) -> None:
        if usm is not None:
            await self._listen_v3(host, port, usm, ready)
            return

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: SNMPTrapProtocol(self._enqueue, self._closed, self.time_func),
                local_addr=(host, port),
            )
        except OSError as exc:
            msg = f"error listening on {host}:{port}: {exc}"
            raise ListenError(msg) from exc

        self.address = transport.get_extra_info("sockname")[:2]
        ready.set()
        try:
            await self._closed
        finally:
            transport.close()

    async def _listen_v3(self, host: str, port: int, usm: UsmParameters, ready: asyncio.Event) -> None:
        snmp_engine = engine.SnmpEngine()
        kwargs: dict[str, Any] = {}
        if usm.engine_id:
            kwargs["securityEngineId"] = rfc1902.OctetString(hexValue=usm.engine_id)
        snmp_config.add_v3_user(
            snmp_engine,
            usm.sec_name,
            usm.auth_protocol,
            usm.auth_password,
            usm.priv_protocol,
            usm.priv_password,
            **kwargs,
        )

        # open the endpoint ourselves so a bind failure is raised here
        snmp_transport = udp.UdpAsyncioTransport()
        snmp_config.add_transport(snmp_engine, udp.DOMAIN_NAME, snmp_transport)
        ntfrcv.NotificationReceiver(snmp_engine, self._on_v3_notification)

        loop = asyncio.get_running_loop()
        try:
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: snmp_transport,
                    local_addr=(host, port),
                )
            except OSError as exc:
                msg = f"error listening on {host}:{port}: {exc}"
                raise ListenError(msg) from exc

            self.address = transport.get_extra_info("sockname")[:2]
            ready.set()
            try:
                await self._closed
            finally:
                transport.close()
        finally:
            snmp_engine.close_dispatcher()

    def _on_v3_notification(
        self,
        snmp_engine: Any,
        state_reference: Any,
        context_engine_id: Any,
        context_name: Any,
        var_binds: Any,
        cb_ctx: Any,
    ) -> None:
        received_at = self.time_func()
        _, transport_address = snmp_engine.message_dispatcher.get_transport_info(state_reference)
        try:
            variables = [make_variable(name, value) for name, value in var_binds]
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error decoding SNMPv3 trap from %s: %s", transport_address[0], exc)
            return
        self._enqueue(
            TrapEvent(
                version=SnmpVersion.V3,
                source=str(transport_address[0]),
                variables=variables,
                received_at=received_at,
            ),
        )


async def main(queue: asyncio.Queue[Any], args: dict[str, Any]) -> None:
    """Receive events via SNMP traps.

    Args:
    ----
        queue: The queue to put events into.
        args: Configuration arguments.
    """
    cfg = ListenerConfig.from_args(args)
    cache: OidCacheStore = LRUOidCache(cfg.cache_size) if cfg.cache_size > 0 else OidCache()
    resolver = OidResolver(SnmpTranslate(timeout=cfg.timeout), cache)
    listener = TrapListener(resolver, QueueSink(queue, asyncio.get_running_loop()))

    await listener.start(cfg)
    try:
        # Keep running until cancelled
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("SNMP trap listener cancelled")
        raise
    finally:
        await listener.stop()


if __name__ == "__main__":
    """MockQueue if running directly."""

    class MockQueue(asyncio.Queue[Any]):
        """A fake queue."""

        def put_nowait(self: MockQueue, event: dict[str, Any]) -> None:
            """Print the event."""
            print(event)  # noqa: T201

    asyncio.run(
        main(
            MockQueue(),
            {
                "service_address": "udp://0.0.0.0:1162",
                "version": "2c",
            },
        ),
    )
