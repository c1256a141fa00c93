"""Program wide configuration: defaults, config file and command line.

Settings are taken from the defaults first, then from a TOML config file, then from the
command line. Later sources override earlier ones. Some settings, mainly the capacity pool
limits, can only be set in the config file.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import logging
import os
import re
import tomllib
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from beemgmt.cap_pool import CapPoolDynamicLimits, CapPoolLimits

__all__ = [
    "LogTarget",
    "LogLevel",
    "Config",
    "parse_duration",
    "parse_integer_unit",
    "parse_integer_range",
    "build_parser",
    "load_and_parse",
]

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF

DEFAULT_CONFIG_FILE = Path("/etc/beegfs/beegfs-mgmtd.toml")


class LogTarget(enum.Enum):
    """Where log messages are sent to."""

    JOURNALD = "journald"
    STDERR = "stderr"

    @classmethod
    def _missing_(cls, value: object) -> LogTarget | None:
        if value == "std":
            return cls.STDERR
        return None


class LogLevel(enum.Enum):
    """The maximum level of messages to log."""

    OFF = "off"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"

    def to_logging_level(self) -> int:
        """The matching level of the logging module."""
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    LogLevel.OFF: logging.CRITICAL + 10,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.TRACE: 5,
}


@dataclass
class Config:
    """The user configuration."""

    init: bool = False
    fs_uuid: uuid.UUID | None = None
    upgrade: bool = False
    import_from_v7: Path | None = None
    config_file: Path = DEFAULT_CONFIG_FILE
    db_file: Path = Path("/var/lib/beegfs/mgmtd.sqlite")
    log_target: LogTarget = LogTarget.JOURNALD
    log_level: LogLevel = LogLevel.WARN

    beemsg_port: int = 8008
    grpc_port: int = 8010
    port_shift: int = 0
    tls_disable: bool = False
    tls_cert_file: Path = Path("/etc/beegfs/cert.pem")
    tls_key_file: Path = Path("/etc/beegfs/key.pem")
    interfaces: list[str] = field(default_factory=list)
    ipv6_disable: bool = False
    connection_limit: int = 12
    auth_disable: bool = False
    auth_file: Path = Path("/etc/beegfs/conn.auth")

    registration_disable: bool = False
    node_offline_timeout: timedelta = timedelta(seconds=180)
    client_auto_remove_timeout: timedelta = timedelta(minutes=30)
    license_disable: bool = False
    license_cert_file: Path = Path("/etc/beegfs/license.pem")
    license_lib_file: Path = Path("/opt/beegfs/lib/libbeegfs_license.so")
    max_blocking_threads: int = 128

    quota_enable: bool = False
    quota_enforce: bool = False
    quota_update_interval: timedelta = timedelta(seconds=30)
    quota_user_system_ids_min: int | None = None
    quota_user_ids_file: Path | None = None
    quota_user_ids_range: range | None = None
    quota_group_system_ids_min: int | None = None
    quota_group_ids_file: Path | None = None
    quota_group_ids_range: range | None = None

    cap_pool_meta_limits: CapPoolLimits = CapPoolLimits(
        inodes_low=10 * 1000 * 1000,
        inodes_emergency=1000 * 1000,
        space_low=10 * 1024 * 1024 * 1024,
        space_emergency=3 * 1024 * 1024 * 1024,
    )
    cap_pool_dynamic_meta_limits: CapPoolDynamicLimits | None = None
    cap_pool_storage_limits: CapPoolLimits = CapPoolLimits(
        inodes_low=10 * 1000 * 1000,
        inodes_emergency=1000 * 1000,
        space_low=512 * 1024 * 1024 * 1024,
        space_emergency=10 * 1024 * 1024 * 1024,
    )
    cap_pool_dynamic_storage_limits: CapPoolDynamicLimits | None = None

    daemonize: bool = False
    daemonize_pid_file: Path = Path("/run/beegfs/mgmtd.pid")

    def update(self, values: Mapping[str, Any]) -> None:
        """Overwrite settings with the given values, skipping those that are None."""
        names = {f.name for f in dataclasses.fields(self)}
        for name, value in values.items():
            if name not in names:
                raise ValueError(f"Unknown config setting {name!r}")
            if value is not None:
                setattr(self, name, value)

    def check_validity(self) -> None:
        """Raise ValueError if the settings contradict each other."""
        if self.fs_uuid is not None and self.fs_uuid.version != 4:
            raise ValueError("Provided file system UUID is not a valid v4 UUID")

        if self.quota_enforce and not self.quota_enable:
            raise ValueError("Quota enforcement requires quota being enabled")

        _check_with_context(self.cap_pool_meta_limits, "Capacity pool meta limits")
        _check_with_context(self.cap_pool_storage_limits, "Capacity pool storage limits")

        _check_dynamic(
            self.cap_pool_dynamic_meta_limits,
            self.cap_pool_meta_limits,
            "Capacity pool dynamic meta limits",
            "cap-pool-dynamic-meta-limits",
            "cap-pool-meta-limits",
        )
        _check_dynamic(
            self.cap_pool_dynamic_storage_limits,
            self.cap_pool_storage_limits,
            "Capacity pool dynamic storage limits",
            "cap-pool-dynamic-storage-limits",
            "cap-pool-storage-limits",
        )


def _check_with_context(limits: CapPoolLimits | CapPoolDynamicLimits, context: str) -> None:
    try:
        limits.check()
    except ValueError as err:
        raise ValueError(f"{context}: {err}") from err


def _check_dynamic(
    dynamic: CapPoolDynamicLimits | None,
    static: CapPoolLimits,
    context: str,
    dynamic_name: str,
    static_name: str,
) -> None:
    if dynamic is None:
        return
    _check_with_context(dynamic, context)
    if (
        dynamic.space_low < static.space_low
        or dynamic.inodes_low < static.inodes_low
        or dynamic.space_emergency < static.space_emergency
        or dynamic.inodes_emergency < static.inodes_emergency
    ):
        raise ValueError(
            f"At least one of the default or user configured limits in {dynamic_name} "
            f"is lower than the {static_name}"
        )


# Value parsers

_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
_DURATION_PART = re.compile(r"\s*(\d+)\s*(ms|s|m|h|d)")

_INTEGER_UNITS = {
    "": 1,
    "k": 1000,
    "K": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}
_INTEGER_UNIT = re.compile(r"(\d+)\s*([A-Za-z]*)")
_INTEGER_RANGE = re.compile(r"(\d+)\s*-\s*(\d+)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``180s``, ``30m`` or ``1h30m``.

    Units are ms, s, m, h and d. A bare integer counts as seconds.
    """
    stripped = text.strip()
    if stripped.isdigit():
        return timedelta(seconds=int(stripped))
    if not stripped:
        raise ValueError("empty duration")

    total = timedelta(0)
    pos = 0
    while pos < len(stripped):
        match = _DURATION_PART.match(stripped, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += int(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


def parse_integer_unit(text: str) -> int:
    """Parse an unsigned 64 bit integer with an optional unit suffix.

    Suffixes k, M, G, T, P, E are powers of 1000; Ki, Mi, Gi, Ti, Pi, Ei powers of 1024.
    """
    match = _INTEGER_UNIT.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"invalid integer {text!r}")
    number, unit = match.groups()
    if unit not in _INTEGER_UNITS:
        raise ValueError(f"unknown unit {unit!r} in {text!r}")
    value = int(number) * _INTEGER_UNITS[unit]
    if value > _U64_MAX:
        raise ValueError(f"integer {text!r} is too large")
    return value


def parse_integer_range(text: str) -> range:
    """Parse an inclusive range of unsigned 32 bit integers written as ``start-end``."""
    match = _INTEGER_RANGE.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"invalid range {text!r}, expected <start>-<end>")
    start, end = (int(v) for v in match.groups())
    if start > _U32_MAX or end > _U32_MAX:
        raise ValueError(f"range {text!r} exceeds the allowed maximum of {_U32_MAX}")
    if start > end:
        raise ValueError(f"range {text!r} starts after it ends")
    return range(start, end + 1)


def _parse_bounded(upper: int, what: str) -> Callable[[str], int]:
    def parse(text: str) -> int:
        value = int(text)
        if not 0 <= value <= upper:
            raise ValueError(f"{what} must be between 0 and {upper}")
        return value

    parse.__name__ = what
    return parse


_parse_port = _parse_bounded(_U16_MAX, "port")
_parse_u32 = _parse_bounded(_U32_MAX, "id")
_parse_count = _parse_bounded(_U64_MAX, "limit")


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _parse_filters(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


# Command line


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser. Options left out are None in the result."""
    parser = argparse.ArgumentParser(
        prog="beegfs-mgmtd",
        description=(
            "The BeeGFS management service. To set up a new system, use --init. To upgrade "
            "an existing database, use --upgrade. Command line parameters overwrite config "
            "file parameters."
        ),
        argument_default=None,
    )
    parser.add_argument(
        "--version", action="version", version=os.environ.get("VERSION", "undefined")
    )

    def flag(name: str, help_text: str | None) -> None:
        parser.add_argument(
            name,
            nargs="?",
            const=True,
            type=_parse_bool,
            metavar="BOOL",
            help=help_text if help_text is not None else argparse.SUPPRESS,
        )

    def option(name: str, type_: Callable[[str], Any], metavar: str, help_text: str | None):
        parser.add_argument(
            name,
            type=type_,
            metavar=metavar,
            help=help_text if help_text is not None else argparse.SUPPRESS,
        )

    flag("--init", "Creates and initializes a new database, then exits.")
    option("--fs-uuid", uuid.UUID, "UUID", None)
    flag("--upgrade", "Upgrades an outdated management database, then exits.")
    option(
        "--import-from-v7", Path, "PATH", "Imports a v7 installation into a new database."
    )
    option(
        "--config-file",
        Path,
        "PATH",
        f"Loads additional configuration from the given file. [default: {DEFAULT_CONFIG_FILE}]",
    )
    option("--db-file", Path, "PATH", "Database file location.")
    option("--log-target", LogTarget, "IDENT", "The log target to use: journald or stderr.")
    option("--log-level", LogLevel, "IDENT", "The log level to use.")

    option("--beemsg-port", _parse_port, "PORT", "BeeMsg port (TCP and UDP). [default: 8008]")
    option("--grpc-port", _parse_port, "PORT", "gRPC port. [default: 8010]")
    option("--port-shift", _parse_port, "SHIFT", None)
    flag("--tls-disable", "Disables TLS for gRPC communication.")
    option("--tls-cert-file", Path, "PATH", "PEM encoded certificate of the gRPC server.")
    option("--tls-key-file", Path, "PATH", "Private key belonging to the certificate.")
    parser.add_argument(
        "--interfaces",
        action="extend",
        type=_parse_filters,
        metavar="FILTERS",
        help="Comma separated list of interface filters.",
    )
    flag("--ipv6-disable", "Force disable IPv6.")
    option(
        "--connection-limit", _parse_count, "LIMIT", "Maximum outgoing connections per node."
    )
    flag("--auth-disable", "Disables requiring authentication.")
    option("--auth-file", Path, "PATH", "The authentication file location.")

    flag("--registration-disable", "Disables registration of new nodes and targets.")
    option(
        "--node-offline-timeout",
        parse_duration,
        "DURATION",
        "Time without contact after which a node is offline. [default: 180s]",
    )
    option(
        "--client-auto-remove-timeout",
        parse_duration,
        "DURATION",
        "Time without contact after which a client is removed. [default: 30m]",
    )
    flag("--license-disable", "Disables loading the license library.")
    option("--license-cert-file", Path, "PATH", "The license certificate file.")
    option("--license-lib-file", Path, "PATH", "The license library file.")
    option(
        "--max-blocking-threads", _parse_count, "LIMIT", "Maximum blocking worker threads."
    )

    flag("--quota-enable", "Enables quota data collection and checks.")
    flag("--quota-enforce", "Enables quota enforcement.")
    option(
        "--quota-update-interval",
        parse_duration,
        "DURATION",
        "Update interval of quota information. [default: 30s]",
    )
    option("--quota-user-system-ids-min", _parse_u32, "ID", "Minimum system user id.")
    option("--quota-user-ids-file", Path, "PATH", "File with user ids.")
    option("--quota-user-ids-range", parse_integer_range, "RANGE", "Range of user ids.")
    option("--quota-group-system-ids-min", _parse_u32, "ID", "Minimum system group id.")
    option("--quota-group-ids-file", Path, "PATH", "File with group ids.")
    option("--quota-group-ids-range", parse_integer_range, "RANGE", "Range of group ids.")

    flag("--daemonize", None)
    option("--daemonize-pid-file", Path, "PATH", None)
    return parser


# Config file


def _file_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("expected a boolean")
    return value


def _file_int(upper: int) -> Callable[[Any], int]:
    def convert(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("expected an integer")
        if not 0 <= value <= upper:
            raise ValueError(f"must be between 0 and {upper}")
        return value

    return convert


def _file_str(parse: Callable[[str], Any]) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("expected a string")
        return parse(value)

    return convert


def _file_interfaces(value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError("expected a list of strings")
    return [v.strip() for v in value]


def _file_unit(value: Any) -> int:
    if isinstance(value, str):
        return parse_integer_unit(value)
    return _file_int(_U64_MAX)(value)


def _file_limits(cls: type) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        if not isinstance(value, dict):
            raise ValueError("expected a table")
        kwargs = {}
        for f in dataclasses.fields(cls):
            key = f.name.replace("_", "-")
            if key not in value:
                raise ValueError(f"missing field {key!r}")
            kwargs[f.name] = _file_unit(value[key])
        return cls(**kwargs)

    return convert


_path = _file_str(Path)
_duration = _file_str(parse_duration)
_range = _file_str(parse_integer_range)

_FILE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "db_file": _path,
    "log_target": _file_str(LogTarget),
    "log_level": _file_str(LogLevel),
    "beemsg_port": _file_int(_U16_MAX),
    "grpc_port": _file_int(_U16_MAX),
    "port_shift": _file_int(_U16_MAX),
    "tls_disable": _file_bool,
    "tls_cert_file": _path,
    "tls_key_file": _path,
    "interfaces": _file_interfaces,
    "ipv6_disable": _file_bool,
    "connection_limit": _file_int(_U64_MAX),
    "auth_disable": _file_bool,
    "auth_file": _path,
    "registration_disable": _file_bool,
    "node_offline_timeout": _duration,
    "client_auto_remove_timeout": _duration,
    "license_disable": _file_bool,
    "license_cert_file": _path,
    "license_lib_file": _path,
    "max_blocking_threads": _file_int(_U64_MAX),
    "quota_enable": _file_bool,
    "quota_enforce": _file_bool,
    "quota_update_interval": _duration,
    "quota_user_system_ids_min": _file_int(_U32_MAX),
    "quota_user_ids_file": _path,
    "quota_user_ids_range": _range,
    "quota_group_system_ids_min": _file_int(_U32_MAX),
    "quota_group_ids_file": _path,
    "quota_group_ids_range": _range,
    "cap_pool_meta_limits": _file_limits(CapPoolLimits),
    "cap_pool_dynamic_meta_limits": _file_limits(CapPoolDynamicLimits),
    "cap_pool_storage_limits": _file_limits(CapPoolLimits),
    "cap_pool_dynamic_storage_limits": _file_limits(CapPoolDynamicLimits),
    "daemonize": _file_bool,
    "daemonize_pid_file": _path,
}


def _parse_config_file(text: str) -> dict[str, Any]:
    try:
        table = tomllib.loads(text)
        values = {}
        for key, raw in table.items():
            name = key.replace("-", "_")
            convert = _FILE_FIELDS.get(name)
            if convert is None or "_" in key:
                raise ValueError(f"unknown field {key!r}")
            try:
                values[name] = convert(raw)
            except ValueError as err:
                raise ValueError(f"{key}: {err}") from err
        return values
    except (tomllib.TOMLDecodeError, ValueError) as err:
        raise ValueError(f"Could not parse config file: {err}") from err


def load_and_parse(argv: Sequence[str] | None = None) -> tuple[Config, list[str]]:
    """Load the configuration from defaults, config file and command line.

    Returns the config and messages to be logged once logging is set up.
    """
    info_log: list[str] = []
    config = Config()
    command_values = vars(build_parser().parse_args(argv))

    config_file = command_values.get("config_file") or config.config_file
    try:
        text = Path(config_file).read_text(encoding="utf-8")
    except OSError as err:
        if Path(config_file) != config.config_file:
            raise ValueError(f"Could not open config file at {str(config_file)!r}") from err
        info_log.append("No config file found at default location, ignoring")
    else:
        config.update(_parse_config_file(text))
        info_log.append(f"Loaded config file from {str(config_file)!r}")

    config.update(command_values)
    try:
        config.check_validity()
    except ValueError as err:
        raise ValueError(f"Invalid config: {err}") from err

    if config.port_shift != 0:
        for name, label in (("beemsg_port", "beemsg port"), ("grpc_port", "gRPC port")):
            shifted = getattr(config, name) + config.port_shift
            if shifted > _U16_MAX:
                info_log.append(
                    f"Overflow while adding port shift to {label}. "
                    "Resulting port might be unexpected."
                )
            setattr(config, name, shifted & _U16_MAX)

    return config, info_log