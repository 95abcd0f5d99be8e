"""Console configuration from config files and the command line."""

from __future__ import annotations

import argparse
import datetime as _dt
import enum
import functools
import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import platformdirs
import tomli_w

from .options import (
    AllowedWarnings,
    ColorToggles,
    KnownWarnings,
    LogFilter,
    Palette,
    RetainFor,
    ViewOptions,
    default_enabled_warnings,
    default_view_options,
    parse_allowed_warnings,
    parse_known_warning,
    parse_log_filter,
    parse_palette,
    parse_retain_for,
    parse_true_color,
)

_PROG = "taskscope"
_APP_DIR = "tokio-console"
_CONFIG_NAME = "console.toml"
_NS_PER_SEC = 1_000_000_000
_SUBCOMMANDS = ("gen-config", "gen-completion")
_SHELLS = ("bash", "elvish", "fish", "powershell", "zsh")
_TRUECOLOR_VALUES = ("24bit", "truecolor")
_PALETTE_VALUES = ("8", "16", "256", "all", "off")
_VALID_SCHEMES = ("file", "http", "https")

_LEVEL_NUMBERS = {
    "off": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": 5,
}


class ConfigError(Exception):
    """A configuration file or setting could not be used."""


class ConfigPath(enum.Enum):
    """Where configuration files are looked for."""

    HOME = "home"
    CURRENT = "current"

    def into_path(self) -> Path | None:
        if self is ConfigPath.HOME:
            return Path(platformdirs.user_config_dir()) / _APP_DIR / _CONFIG_NAME
        return Path(".") / _CONFIG_NAME


@dataclass(frozen=True)
class _Subcommand:
    name: str
    install: bool = False
    shell: str | None = None


@dataclass(frozen=True)
class _CharsetConfig:
    lang: str | None = None
    ascii_only: bool | None = None


@dataclass(frozen=True)
class _ColorsConfig:
    enabled: bool | None = None
    truecolor: bool | None = None
    palette: Palette | None = None
    enable: ColorToggles | None = None


def _parse_uri(text: str) -> str:
    if not text:
        raise ValueError("empty string")
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in text):
        raise ValueError(f"invalid uri character in {text!r}")
    parts = urlsplit(text)
    parts.port  # raises ValueError on a malformed port
    if parts.scheme and parts.netloc and not parts.path:
        return parts._replace(path="/").geturl()
    return text


def _check_keys(table: dict[str, Any], allowed: tuple[str, ...], where: str) -> None:
    for key in table:
        if key not in allowed:
            expected = ", ".join(f"`{name}`" for name in allowed)
            raise ConfigError(f"unknown field `{key}` in {where}, expected one of {expected}")


def _typed(table: dict[str, Any], key: str, kind: type, where: str) -> Any:
    value = table.get(key)
    if value is None:
        return None
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ConfigError(f"invalid type for `{key}` in {where}: expected {kind.__name__}")
    return value


def _table(table: dict[str, Any], key: str, where: str) -> dict[str, Any] | None:
    return _typed(table, key, dict, where)


def _read_allow_warnings(value: Any) -> AllowedWarnings:
    if value == "All":
        return AllowedWarnings.all_warnings()
    if isinstance(value, dict) and list(value) == ["Explicit"] and isinstance(value["Explicit"], list):
        try:
            return AllowedWarnings.explicit(parse_known_warning(str(w)) for w in value["Explicit"])
        except ValueError as err:
            raise ConfigError(str(err)) from None
    raise ConfigError("invalid value for `allow_warnings`: expected \"All\" or { Explicit = [...] }")


def _read_retention(value: Any) -> RetainFor:
    if isinstance(value, str):
        if not value:
            return RetainFor(None)
        try:
            return parse_retain_for(value)
        except ValueError as err:
            raise ConfigError(f"invalid `retention`: {err}") from None
    if isinstance(value, dict):
        _check_keys(value, ("secs", "nanos"), "retention")
        secs = _typed(value, "secs", int, "retention")
        nanos = _typed(value, "nanos", int, "retention")
        if secs is None or nanos is None or secs < 0 or not 0 <= nanos < _NS_PER_SEC:
            raise ConfigError("invalid `retention`: expected non-negative `secs` and `nanos`")
        return RetainFor(secs * _NS_PER_SEC + nanos)
    raise ConfigError("invalid type for `retention`: expected a duration")


@dataclass
class ConfigFile:
    """The contents of a ``console.toml`` file."""

    default_target_addr: str | None = None
    log: str | None = None
    warnings: list[KnownWarnings] = field(default_factory=list)
    allow_warnings: AllowedWarnings | None = None
    log_directory: Path | None = None
    retention: RetainFor | None = None
    charset: _CharsetConfig | None = None
    colors: _ColorsConfig | None = None

    @staticmethod
    def from_toml(text: str) -> ConfigFile:
        """Parse TOML text, rejecting unknown fields."""
        try:
            raw = tomllib.loads(text)
        except tomllib.TOMLDecodeError as err:
            raise ConfigError(str(err)) from err
        where = "config file"
        _check_keys(
            raw,
            (
                "default_target_addr",
                "log",
                "warnings",
                "allow_warnings",
                "log_directory",
                "retention",
                "charset",
                "colors",
            ),
            where,
        )
        if "warnings" not in raw:
            raise ConfigError("missing field `warnings`")
        warnings = _typed(raw, "warnings", list, where)
        try:
            parsed_warnings = [parse_known_warning(str(w)) for w in warnings]
        except ValueError as err:
            raise ConfigError(str(err)) from None

        charset = None
        charset_raw = _table(raw, "charset", where)
        if charset_raw is not None:
            _check_keys(charset_raw, ("lang", "ascii_only"), "charset")
            charset = _CharsetConfig(
                lang=_typed(charset_raw, "lang", str, "charset"),
                ascii_only=_typed(charset_raw, "ascii_only", bool, "charset"),
            )

        colors = None
        colors_raw = _table(raw, "colors", where)
        if colors_raw is not None:
            _check_keys(colors_raw, ("enabled", "truecolor", "palette", "enable"), "colors")
            palette_raw = _typed(colors_raw, "palette", str, "colors")
            try:
                palette = None if palette_raw is None else parse_palette(palette_raw)
            except ValueError as err:
                raise ConfigError(str(err)) from None
            enable = None
            enable_raw = _table(colors_raw, "enable", "colors")
            if enable_raw is not None:
                _check_keys(enable_raw, ("durations", "terminated"), "colors.enable")
                enable = ColorToggles(
                    durations=_typed(enable_raw, "durations", bool, "colors.enable"),
                    terminated=_typed(enable_raw, "terminated", bool, "colors.enable"),
                )
            colors = _ColorsConfig(
                enabled=_typed(colors_raw, "enabled", bool, "colors"),
                truecolor=_typed(colors_raw, "truecolor", bool, "colors"),
                palette=palette,
                enable=enable,
            )

        log_directory = _typed(raw, "log_directory", str, where)
        allow_raw = raw.get("allow_warnings")
        retention_raw = raw.get("retention")
        return ConfigFile(
            default_target_addr=_typed(raw, "default_target_addr", str, where),
            log=_typed(raw, "log", str, where),
            warnings=parsed_warnings,
            allow_warnings=None if allow_raw is None else _read_allow_warnings(allow_raw),
            log_directory=None if log_directory is None else Path(log_directory),
            retention=None if retention_raw is None else _read_retention(retention_raw),
            charset=charset,
            colors=colors,
        )

    @staticmethod
    def from_path(path: Path | str | ConfigPath | None) -> ConfigFile | None:
        """Load a config file; ``None`` if there is no readable file there."""
        if isinstance(path, ConfigPath):
            path = path.into_path()
        if path is None:
            return None
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        try:
            return ConfigFile.from_toml(text)
        except ConfigError as err:
            raise ConfigError(f"failed to parse {path}: {err}") from err

    def to_toml(self) -> str:
        """Render as TOML, leaving out unset values."""
        data: dict[str, Any] = {}
        if self.default_target_addr is not None:
            data["default_target_addr"] = self.default_target_addr
        if self.log is not None:
            data["log"] = self.log
        data["warnings"] = [str(w) for w in self.warnings]
        if self.allow_warnings is not None:
            if self.allow_warnings.allow_all:
                data["allow_warnings"] = "All"
            else:
                data["allow_warnings"] = {"Explicit": [str(w) for w in sorted(self.allow_warnings.warnings)]}
        if self.log_directory is not None:
            data["log_directory"] = str(self.log_directory)
        if self.retention is not None:
            data["retention"] = str(self.retention)
        if self.charset is not None:
            charset: dict[str, Any] = {}
            if self.charset.lang is not None:
                charset["lang"] = self.charset.lang
            if self.charset.ascii_only is not None:
                charset["ascii_only"] = self.charset.ascii_only
            data["charset"] = charset
        if self.colors is not None:
            colors: dict[str, Any] = {}
            if self.colors.enabled is not None:
                colors["enabled"] = self.colors.enabled
            if self.colors.truecolor is not None:
                colors["truecolor"] = self.colors.truecolor
            if self.colors.palette is not None:
                colors["palette"] = str(self.colors.palette)
            if self.colors.enable is not None:
                enable: dict[str, Any] = {}
                if self.colors.enable.durations is not None:
                    enable["durations"] = self.colors.enable.durations
                if self.colors.enable.terminated is not None:
                    enable["terminated"] = self.colors.enable.terminated
                colors["enable"] = enable
            data["colors"] = colors
        return tomli_w.dumps(data)


def _pick(new: Any, old: Any) -> Any:
    return old if new is None else new


class _TargetFilter(logging.Filter):
    def __init__(self, log_filter: LogFilter) -> None:
        super().__init__()
        self._default = _LEVEL_NUMBERS[log_filter.default_level or "off"]
        self._targets = [
            (target.replace("::", "."), _LEVEL_NUMBERS[level]) for target, level in log_filter.targets
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        for target, level in self._targets:
            if record.name == target or record.name.startswith(target + "."):
                return record.levelno >= level
        return record.levelno >= self._default


@dataclass
class Config:
    """The console's settings, from config files and the command line."""

    target_addr: str | None = None
    log_filter: LogFilter | None = None
    warnings: list[KnownWarnings] = field(default_factory=list)
    allow_warnings: AllowedWarnings | None = None
    log_directory: Path | None = None
    retain_for: RetainFor | None = None
    view_options: ViewOptions = field(default_factory=ViewOptions)
    subcmd: _Subcommand | None = None

    def merge_with(self, other: Config) -> Config:
        """Overlay ``other`` on this config; its set values win."""
        if self.allow_warnings is not None and other.allow_warnings is not None:
            allow = self.allow_warnings.merge(other.allow_warnings)
        else:
            allow = _pick(self.allow_warnings, other.allow_warnings)
        return Config(
            target_addr=_pick(other.target_addr, self.target_addr),
            log_filter=_pick(other.log_filter, self.log_filter),
            warnings=sorted(set(other.warnings) | set(self.warnings)),
            allow_warnings=allow,
            log_directory=_pick(other.log_directory, self.log_directory),
            retain_for=_pick(other.retain_for, self.retain_for),
            view_options=self.view_options.merge_with(other.view_options),
            subcmd=_pick(other.subcmd, self.subcmd),
        )

    def gen_config_file(self) -> str:
        """Render the defaults overridden by this config as a config file."""
        return default_config().merge_with(self).to_file().to_toml()

    def retain_for_duration(self) -> int | None:
        """Nanoseconds to keep closed tasks and resources, or ``None`` for forever."""
        return (self.retain_for if self.retain_for is not None else RetainFor()).nanos

    def resolved_target_addr(self) -> str:
        """The address to connect to, checked for a supported scheme."""
        target = self.target_addr if self.target_addr is not None else default_target_addr()
        if urlsplit(target).scheme not in _VALID_SCHEMES:
            raise ConfigError(
                f"invalid scheme for target address {target!r}, "
                "must be one of 'file', 'http', or 'https'"
            )
        return target

    def issue_metadata(self) -> dict[str, str]:
        """Settings worth including in a bug report."""
        view = self.view_options
        values = {
            "config.subcmd": self.subcmd,
            "config.target_addr": self.target_addr,
            "config.log_filter": self.log_filter,
            "config.log_directory": self.log_directory,
            "config.retain_for": self.retain_for,
            "config.view_options.no_colors": view.no_colors,
            "config.view_options.lang": view.lang,
            "config.view_options.ascii_only": view.ascii_only,
            "config.view_options.truecolor": view.truecolor,
            "config.view_options.palette": view.palette,
            "config.view_options.toggles.color_durations": view.toggles.durations,
            "config.view_options.toggles.color_terminated": view.toggles.terminated,
        }
        return {key: f"`{value!r}`" for key, value in values.items()}

    def trace_init(self) -> Path | None:
        """Send internal logs to a new file in the log directory; return its path."""
        if self.log_filter is None:
            return None
        directory = self.log_directory if self.log_directory is not None else default_log_directory()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise ConfigError(f"creating log directory '{directory}': {err}") from err
        if not directory.is_dir():
            raise ConfigError(f"log directory path '{directory}' is not a directory")
        stamp = _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ").replace(":", "")
        path = directory / f"{stamp}.log"
        try:
            stream = path.open("x", encoding="utf-8")
        except OSError as err:
            raise ConfigError(f"creating log file '{path}': {err}") from err
        handler = logging.StreamHandler(stream)
        handler.addFilter(_TargetFilter(self.log_filter))
        root = logging.getLogger()
        root.addHandler(handler)
        levels = [_LEVEL_NUMBERS[level] for _, level in self.log_filter.targets]
        if self.log_filter.default_level is not None:
            levels.append(_LEVEL_NUMBERS[self.log_filter.default_level])
        if levels and min(levels) < root.level:
            root.setLevel(min(levels))
        return path

    def to_file(self) -> ConfigFile:
        """The config file that holds these settings."""
        view = self.view_options
        return ConfigFile(
            default_target_addr=self.target_addr,
            log=None if self.log_filter is None else str(self.log_filter),
            warnings=list(self.warnings),
            allow_warnings=self.allow_warnings,
            log_directory=self.log_directory,
            retention=self.retain_for,
            charset=_CharsetConfig(lang=view.lang, ascii_only=view.ascii_only),
            colors=_ColorsConfig(
                enabled=not view.no_colors,
                truecolor=view.truecolor,
                palette=view.palette,
                enable=view.toggles,
            ),
        )


def config_from_file(config_file: ConfigFile) -> Config:
    """Build settings from a parsed config file."""
    target_addr = None
    if config_file.default_target_addr is not None:
        try:
            target_addr = _parse_uri(config_file.default_target_addr)
        except ValueError as err:
            raise ConfigError(
                f"failed to parse target address {config_file.default_target_addr!r} as URI: {err}"
            ) from err

    log_filter = None
    if config_file.log is not None and config_file.log != "off":
        try:
            log_filter = parse_log_filter(config_file.log)
        except ValueError as err:
            raise ConfigError(f"failed to parse log filter {config_file.log!r}: {err}") from err

    charset = config_file.charset
    colors = config_file.colors
    enable = colors.enable if colors is not None else None
    return Config(
        target_addr=target_addr,
        log_filter=log_filter,
        warnings=list(config_file.warnings),
        allow_warnings=config_file.allow_warnings,
        log_directory=config_file.log_directory,
        retain_for=config_file.retention,
        view_options=ViewOptions(
            no_colors=colors is not None and colors.enabled is not None and not colors.enabled,
            lang=None if charset is None else charset.lang,
            ascii_only=None if charset is None else charset.ascii_only,
            truecolor=None if colors is None else colors.truecolor,
            palette=None if colors is None else colors.palette,
            toggles=ColorToggles(
                durations=None if enable is None else enable.color_durations(),
                terminated=None if enable is None else enable.color_terminated(),
            ),
        ),
        subcmd=None,
    )


def default_config() -> Config:
    """The settings used when nothing else is configured."""
    return Config(
        target_addr=default_target_addr(),
        log_filter=LogFilter(default_level="off"),
        warnings=default_enabled_warnings(),
        allow_warnings=None,
        log_directory=default_log_directory(),
        retain_for=RetainFor(),
        view_options=default_view_options(),
        subcmd=None,
    )


def default_target_addr() -> str:
    return _parse_uri("http://127.0.0.1:6669")


def default_log_directory() -> Path:
    return Path("/", "tmp", "tokio-console", "logs")


def _arg_type(fn):
    def convert(text: str):
        try:
            return fn(text)
        except ValueError as err:
            raise argparse.ArgumentTypeError(str(err)) from None

    convert.__name__ = fn.__name__
    return convert


def _parse_bool(text: str) -> bool:
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError(f"invalid value {text!r}, expected 'true' or 'false'")


def _parse_warning_list(text: str) -> list[KnownWarnings]:
    return [parse_known_warning(part) for part in text.split(",")]


def build_parser() -> argparse.ArgumentParser:
    """The command-line parser for the console's options."""
    parser = argparse.ArgumentParser(
        prog=_PROG,
        description="Debugger for async applications.",
        epilog=(
            "subcommands:\n"
            "  gen-config            print a config file with the default values,\n"
            "                        overridden by any command-line arguments\n"
            "  gen-completion SHELL  print a shell completion script"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "target_addr",
        nargs="?",
        type=_arg_type(_parse_uri),
        help="address of a console-enabled process [default: http://127.0.0.1:6669]",
    )
    parser.add_argument(
        "--log",
        dest="log_filter",
        type=_arg_type(parse_log_filter),
        help="log level filter for internal diagnostics [env: RUST_LOG] [default: off]",
    )
    parser.add_argument(
        "-W",
        "--warn",
        dest="warnings",
        nargs="+",
        action="extend",
        type=_arg_type(_parse_warning_list),
        help="comma-separated lint warnings to enable",
    )
    parser.add_argument(
        "-A",
        "--allow",
        dest="allow_warnings",
        nargs="+",
        action="extend",
        type=_arg_type(parse_allowed_warnings),
        help="lint warnings to allow, or 'all'",
    )
    parser.add_argument(
        "--log-dir",
        dest="log_directory",
        type=Path,
        help="directory for internal logs [default: /tmp/tokio-console/logs]",
    )
    parser.add_argument("--lang", help="override the terminal's language [env: LANG]")
    parser.add_argument(
        "--ascii-only", type=_arg_type(_parse_bool), metavar="BOOL", help="use only ASCII characters"
    )
    parser.add_argument("--no-colors", action="store_true", help="disable ANSI colors entirely")
    parser.add_argument(
        "--colorterm",
        dest="truecolor",
        choices=_TRUECOLOR_VALUES,
        help="override COLORTERM; enables 24-bit color [env: COLORTERM]",
    )
    parser.add_argument("--palette", choices=_PALETTE_VALUES, help="color palette to use")
    parser.add_argument(
        "--no-duration-colors",
        dest="color_durations",
        type=_arg_type(_parse_bool),
        metavar="BOOL",
        help="disable color-coding for duration units",
    )
    parser.add_argument(
        "--no-terminated-colors",
        dest="color_terminated",
        type=_arg_type(_parse_bool),
        metavar="BOOL",
        help="disable color-coding for terminated tasks",
    )
    parser.add_argument(
        "--retain-for",
        type=_arg_type(parse_retain_for),
        help="how long to keep completed tasks and dropped resources, or 'none' [default: 6s]",
    )
    return parser


def _subcommand_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=_PROG)
    subparsers = parser.add_subparsers(dest="name", required=True)
    subparsers.add_parser("gen-config", help="print a config file")
    completion = subparsers.add_parser("gen-completion", help="print a shell completion script")
    completion.add_argument("--install", action="store_true")
    completion.add_argument("shell", choices=_SHELLS)
    return parser


def _env(name: str) -> str | None:
    return os.environ.get(name) or None


def parse_args(argv: list[str] | None = None) -> Config:
    """Parse command-line arguments, falling back to environment variables."""
    args = list(sys.argv[1:] if argv is None else argv)
    split = next((i for i, arg in enumerate(args) if arg in _SUBCOMMANDS), len(args))
    parser = build_parser()
    ns = parser.parse_args(args[:split])

    if ns.palette is not None and (ns.no_colors or ns.truecolor is not None):
        parser.error("--palette cannot be used with --no-colors or --colorterm")
    if ns.no_colors and (ns.color_durations is not None or ns.color_terminated is not None):
        parser.error("--no-colors cannot be used with color toggles")

    log_filter = ns.log_filter
    if log_filter is None and (raw_log := _env("RUST_LOG")) is not None:
        try:
            log_filter = parse_log_filter(raw_log)
        except ValueError as err:
            parser.error(f"invalid value {raw_log!r} for RUST_LOG: {err}")

    colorterm = ns.truecolor if ns.truecolor is not None else _env("COLORTERM")
    if colorterm is not None and colorterm not in _TRUECOLOR_VALUES:
        parser.error(f"invalid value {colorterm!r} for COLORTERM: expected one of {', '.join(_TRUECOLOR_VALUES)}")

    subcmd = None
    if split < len(args):
        sub = _subcommand_parser().parse_args(args[split:])
        subcmd = _Subcommand(
            name=sub.name,
            install=getattr(sub, "install", False),
            shell=getattr(sub, "shell", None),
        )

    warnings = (
        default_enabled_warnings()
        if ns.warnings is None
        else [warning for group in ns.warnings for warning in group]
    )
    allow = None if ns.allow_warnings is None else functools.reduce(AllowedWarnings.merge, ns.allow_warnings)
    return Config(
        target_addr=ns.target_addr,
        log_filter=log_filter,
        warnings=warnings,
        allow_warnings=allow,
        log_directory=ns.log_directory,
        retain_for=ns.retain_for,
        view_options=ViewOptions(
            lang=ns.lang if ns.lang is not None else _env("LANG"),
            ascii_only=ns.ascii_only,
            no_colors=ns.no_colors,
            truecolor=None if colorterm is None else parse_true_color(colorterm),
            palette=None if ns.palette is None else parse_palette(ns.palette),
            toggles=ColorToggles(durations=ns.color_durations, terminated=ns.color_terminated),
        ),
        subcmd=subcmd,
    )


def _from_path(path: Path | str | ConfigPath) -> Config | None:
    config_file = ConfigFile.from_path(path)
    return None if config_file is None else config_from_file(config_file)


def load_config(
    argv: list[str] | None = None,
    home_path: Path | str | None = None,
    current_path: Path | str | None = None,
) -> Config:
    """Combine the home and current-directory config files with the command line."""
    home = _from_path(home_path if home_path is not None else ConfigPath.HOME)
    current = _from_path(current_path if current_path is not None else ConfigPath.CURRENT)
    if home is not None and current is not None:
        base: Config | None = home.merge_with(current)
    else:
        base = home if home is not None else current
    config = parse_args(argv)
    return config if base is None else base.merge_with(config)