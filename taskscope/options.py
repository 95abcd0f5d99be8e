"""Console options: lint warnings, retention, log filters and view settings."""

from __future__ import annotations

import enum
import logging
import re
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field

_log = logging.getLogger(__name__)

_NS_PER_SEC = 1_000_000_000
_U64_MAX = (1 << 64) - 1


class KnownWarnings(enum.Enum):
    """Lint warnings that can be enabled or allowed, ordered as declared."""

    SELF_WAKES = "self-wakes"
    LOST_WAKER = "lost-waker"
    NEVER_YIELDED = "never-yielded"
    AUTO_BOXED_FUTURE = "auto-boxed-future"
    LARGE_FUTURE = "large-future"

    @property
    def _rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, KnownWarnings):
            return NotImplemented
        return self._rank < other._rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, KnownWarnings):
            return NotImplemented
        return self._rank <= other._rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, KnownWarnings):
            return NotImplemented
        return self._rank > other._rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, KnownWarnings):
            return NotImplemented
        return self._rank >= other._rank

    def __str__(self) -> str:
        return self.value


def parse_known_warning(text: str) -> KnownWarnings:
    """Parse a warning by its kebab-case name."""
    try:
        return KnownWarnings(text)
    except ValueError:
        raise ValueError(f"unknown warning: {text}") from None


def default_enabled_warnings() -> list[KnownWarnings]:
    """All known warnings, in declaration order."""
    return list(KnownWarnings)


@dataclass(frozen=True)
class AllowedWarnings:
    """Either every warning is allowed, or an explicit set of them."""

    allow_all: bool = False
    warnings: frozenset[KnownWarnings] = frozenset()

    @classmethod
    def all_warnings(cls) -> AllowedWarnings:
        return cls(allow_all=True)

    @classmethod
    def explicit(cls, warnings: Iterable[KnownWarnings]) -> AllowedWarnings:
        return cls(allow_all=False, warnings=frozenset(warnings))

    def allows(self, warning: KnownWarnings) -> bool:
        return self.allow_all or warning in self.warnings

    def merge(self, other: AllowedWarnings) -> AllowedWarnings:
        """Union of two allow lists; allowing all wins."""
        if self.allow_all or other.allow_all:
            return AllowedWarnings.all_warnings()
        return AllowedWarnings.explicit(self.warnings | other.warnings)

    def __str__(self) -> str:
        if self.allow_all:
            return "all"
        return ",".join(str(w) for w in sorted(self.warnings))


def parse_allowed_warnings(text: str) -> AllowedWarnings:
    """Parse ``all`` or a comma-separated list of warning names."""
    if text == "all":
        return AllowedWarnings.all_warnings()
    try:
        return AllowedWarnings.explicit(parse_known_warning(part) for part in text.split(","))
    except ValueError as err:
        raise ValueError(f"failed to parse warning: {err}") from None


_UNITS_NS: dict[str, int] = {}
for _names, _ns in (
    (("nsec", "ns"), 1),
    (("usec", "us"), 1_000),
    (("msec", "ms"), 1_000_000),
    (("seconds", "second", "sec", "s"), _NS_PER_SEC),
    (("minutes", "minute", "min", "m"), 60 * _NS_PER_SEC),
    (("hours", "hour", "hr", "h"), 3_600 * _NS_PER_SEC),
    (("days", "day", "d"), 86_400 * _NS_PER_SEC),
    (("weeks", "week", "w"), 604_800 * _NS_PER_SEC),
    (("months", "month", "M"), 2_630_016 * _NS_PER_SEC),
    (("years", "year", "y"), 31_557_600 * _NS_PER_SEC),
):
    for _name in _names:
        _UNITS_NS[_name] = _ns

_SPAN = re.compile(r"\s*(?P<num>\d*)\s*(?P<unit>[^\d\s]*)\s*")


def parse_duration(text: str) -> int:
    """Parse a human duration such as ``5days 2min 2s`` into nanoseconds."""
    if not text.strip():
        raise ValueError("value was empty")
    total = 0
    pos = 0
    while pos < len(text):
        match = _SPAN.match(text, pos)
        if match is None or match.end() == pos:
            raise ValueError(f"invalid character at {pos}")
        number, unit = match.group("num"), match.group("unit")
        if not number:
            raise ValueError(f"expected number at {match.start('num')}")
        if not unit:
            raise ValueError("time unit needed, for example {0}sec or {0}ms".format(number))
        if unit not in _UNITS_NS:
            raise ValueError(f"unknown time unit {unit!r}")
        total += int(number) * _UNITS_NS[unit]
        if total // _NS_PER_SEC > _U64_MAX:
            raise ValueError("number is too large")
        pos = match.end()
    return total


def _fmt_decimal(integer: int, frac: int, divisor: int, suffix: str) -> str:
    digits = []
    while frac > 0 and divisor > 0:
        digits.append(str(frac // divisor))
        frac %= divisor
        divisor //= 10
    if digits:
        return f"{integer}.{''.join(digits)}{suffix}"
    return f"{integer}{suffix}"


def _format_duration(ns: int) -> str:
    secs, nanos = divmod(ns, _NS_PER_SEC)
    if secs > 0:
        return _fmt_decimal(secs, nanos, _NS_PER_SEC // 10, "s")
    if nanos >= 1_000_000:
        return _fmt_decimal(nanos // 1_000_000, nanos % 1_000_000, 100_000, "ms")
    if nanos >= 1_000:
        return _fmt_decimal(nanos // 1_000, nanos % 1_000, 100, "µs")
    return f"{nanos}ns"


@dataclass(frozen=True)
class RetainFor:
    """How long to keep closed tasks and resources; ``None`` keeps them forever."""

    nanos: int | None = 6 * _NS_PER_SEC

    def __str__(self) -> str:
        return "" if self.nanos is None else _format_duration(self.nanos)


def parse_retain_for(text: str) -> RetainFor:
    """Parse ``none`` (any case) or a human duration."""
    if text.lower() == "none":
        return RetainFor(None)
    return RetainFor(parse_duration(text))


_LEVELS = ("off", "error", "warn", "info", "debug", "trace")


def _parse_level(text: str) -> str:
    level = text.strip().lower()
    if level in _LEVELS:
        return level
    if level.isdigit() and int(level) < len(_LEVELS):
        return _LEVELS[int(level)]
    raise ValueError(f"invalid level {text!r}")


@dataclass(frozen=True)
class LogFilter:
    """A default level plus per-target levels."""

    default_level: str | None = None
    targets: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        parts = [] if self.default_level is None else [self.default_level]
        parts.extend(f"{target}={level}" for target, level in self.targets)
        return ",".join(parts)


def parse_log_filter(text: str) -> LogFilter:
    """Parse comma-separated ``level``, ``target`` or ``target=level`` directives."""
    default: str | None = None
    targets: dict[str, str] = {}
    for part in text.split(","):
        if not part:
            continue
        pieces = part.split("=")
        if len(pieces) > 2:
            raise ValueError(f"invalid filter directive {part!r}")
        if len(pieces) == 2:
            target, level = pieces[0], _parse_level(pieces[1])
        else:
            try:
                default = _parse_level(part)
                continue
            except ValueError:
                target, level = part, "trace"
        if not target or "[" in target or "]" in target:
            raise ValueError(f"invalid filter target {target!r}")
        targets[target] = level
    ordered = sorted(targets.items(), key=lambda item: (-len(item[0]), item[0]))
    return LogFilter(default, tuple(ordered))


class Palette(enum.Enum):
    """The color palette the terminal supports."""

    NO_COLORS = "off"
    ANSI8 = "8"
    ANSI16 = "16"
    ANSI256 = "256"
    ALL = "all"

    def __str__(self) -> str:
        return self.value


def parse_palette(text: str) -> Palette:
    """Parse one of ``8``, ``16``, ``256``, ``all`` or ``off``."""
    try:
        return Palette(text.strip())
    except ValueError:
        raise ValueError(f"invalid color palette {text!r}") from None


def parse_true_color(text: str) -> bool:
    """True if ``text`` names 24-bit color support."""
    value = text.strip().lower()
    return value in ("truecolor", "24bit")


@dataclass(frozen=True)
class ColorToggles:
    """Per-element color toggles, keyed as in the config file."""

    durations: bool | None = None
    terminated: bool | None = None

    def color_durations(self) -> bool:
        return True if self.durations is None else not self.durations

    def color_terminated(self) -> bool:
        return True if self.durations is None else not self.durations


@dataclass(frozen=True)
class ViewOptions:
    """Options that control how the console is drawn."""

    lang: str | None = None
    ascii_only: bool | None = None
    no_colors: bool = False
    truecolor: bool | None = None
    palette: Palette | None = None
    toggles: ColorToggles = field(default_factory=ColorToggles)

    def is_utf8(self) -> bool:
        if self.ascii_only:
            return False
        return (self.lang or "").endswith("UTF-8")

    def determine_palette(self) -> Palette:
        """Pick a palette from explicit options, truecolor support, then ``tput colors``."""
        if self.no_colors:
            _log.debug("colors explicitly disabled by `--no-colors`")
            return Palette.NO_COLORS
        if self.palette is not None:
            _log.debug("colors selected via `--palette`: %s", self.palette)
            return self.palette
        if self.truecolor:
            _log.debug("millions of colors enabled via `COLORTERM=truecolor`")
            return Palette.ALL
        try:
            output = subprocess.run(["tput", "colors"], capture_output=True, check=False)
        except OSError as err:
            _log.debug("checking `tput colors` failed: %s", err)
            return Palette.NO_COLORS
        try:
            stdout = output.stdout.decode("utf-8")
        except UnicodeDecodeError as err:
            _log.warning("`tput colors` stdout was not utf-8: %s", err)
            return Palette.NO_COLORS
        try:
            return parse_palette(stdout)
        except ValueError:
            _log.warning("invalid color palette from `tput colors`: %r", stdout)
            return Palette.NO_COLORS

    def merge_with(self, command_line: ViewOptions) -> ViewOptions:
        """Overlay ``command_line`` on these options; its set values win."""

        def pick(new, old):
            return old if new is None else new

        return ViewOptions(
            no_colors=command_line.no_colors or self.no_colors,
            lang=pick(command_line.lang, self.lang),
            ascii_only=pick(command_line.ascii_only, self.ascii_only),
            truecolor=pick(command_line.truecolor, self.truecolor),
            palette=pick(command_line.palette, self.palette),
            toggles=ColorToggles(
                durations=pick(command_line.toggles.durations, self.toggles.durations),
                terminated=pick(command_line.toggles.terminated, self.toggles.terminated),
            ),
        )


def default_view_options() -> ViewOptions:
    """The view options used when nothing else is configured."""
    return ViewOptions(
        lang="en_us.UTF-8",
        ascii_only=False,
        no_colors=False,
        truecolor=True,
        palette=Palette.ALL,
        toggles=ColorToggles(durations=True, terminated=True),
    )