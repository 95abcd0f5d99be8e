import subprocess
from unittest import mock

import pytest

from taskscope.options import (
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
    parse_duration,
    parse_known_warning,
    parse_log_filter,
    parse_palette,
    parse_retain_for,
    parse_true_color,
)


@pytest.mark.parametrize("warning", list(KnownWarnings))
def test_known_warning_round_trip(warning):
    assert parse_known_warning(str(warning)) is warning


def test_unknown_warning_raises():
    with pytest.raises(ValueError, match="unknown warning: bogus"):
        parse_known_warning("bogus")


def test_default_enabled_warnings_are_sorted_and_complete():
    warnings = default_enabled_warnings()
    assert sorted(warnings) == warnings
    assert set(warnings) == set(KnownWarnings)
    assert warnings[0] is KnownWarnings.SELF_WAKES


def test_parse_allowed_all():
    allowed = parse_allowed_warnings("all")
    assert allowed.allow_all
    assert all(allowed.allows(w) for w in KnownWarnings)


def test_parse_allowed_explicit():
    allowed = parse_allowed_warnings("self-wakes,lost-waker")
    assert not allowed.allow_all
    assert allowed.warnings == {KnownWarnings.SELF_WAKES, KnownWarnings.LOST_WAKER}
    assert not allowed.allows(KnownWarnings.LARGE_FUTURE)


def test_parse_allowed_error():
    with pytest.raises(ValueError, match="failed to parse warning"):
        parse_allowed_warnings("self-wakes,nope")


def test_allowed_merge():
    a = AllowedWarnings.explicit([KnownWarnings.SELF_WAKES])
    b = AllowedWarnings.explicit([KnownWarnings.LARGE_FUTURE])
    merged = a.merge(b)
    assert merged.warnings == {KnownWarnings.SELF_WAKES, KnownWarnings.LARGE_FUTURE}
    assert a.merge(AllowedWarnings.all_warnings()).allow_all
    assert AllowedWarnings.all_warnings().merge(b).allow_all


def test_duration_unit_equivalences():
    assert parse_duration("1000ms") == parse_duration("1s")
    assert parse_duration("1000us") == parse_duration("1ms")
    assert parse_duration("1000nsec") == parse_duration("1usec")
    assert parse_duration("1m") == parse_duration("60s")
    assert parse_duration("1h") == parse_duration("60min")
    assert parse_duration("1d") == parse_duration("24hours")
    assert parse_duration("1w") == parse_duration("7days")


def test_duration_month_and_year():
    assert parse_duration("1M") == parse_duration("30d 10h 33m 36s")
    assert parse_duration("1y") == parse_duration("365d 6h")


def test_duration_combination():
    assert parse_duration("5days 2min 2s") == (
        parse_duration("5d") + parse_duration("2m") + parse_duration("2s")
    )


@pytest.mark.parametrize("text", ["", "5", "5 parsecs", "s5", "1.5s"])
def test_duration_errors(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_retain_for_default_display():
    assert str(RetainFor()) == "6s"
    assert RetainFor() == parse_retain_for("6s")


def test_retain_for_none():
    assert parse_retain_for("NONE").nanos is None
    assert str(parse_retain_for("none")) == ""


@pytest.mark.parametrize("text", ["90s", "2s", "500ms"])
def test_retain_for_display_round_trip(text):
    value = parse_retain_for(text)
    assert parse_retain_for(str(value)) == value


def test_log_filter_off():
    assert str(parse_log_filter("off")) == "off"
    assert parse_log_filter("off").default_level == "off"


def test_log_filter_round_trip():
    parsed = parse_log_filter("info,foo=debug,foo::bar=warn")
    assert parsed.default_level == "info"
    assert dict(parsed.targets) == {"foo": "debug", "foo::bar": "warn"}
    assert parse_log_filter(str(parsed)) == parsed


def test_log_filter_bare_target_is_trace():
    assert parse_log_filter("mycrate").targets == (("mycrate", "trace"),)


def test_log_filter_empty():
    assert parse_log_filter("") == LogFilter()


def test_log_filter_bad_level():
    with pytest.raises(ValueError):
        parse_log_filter("foo=bogus")


@pytest.mark.parametrize("text", ["8", "16", "256", "all", "off"])
def test_palette_round_trip(text):
    assert str(parse_palette(text)) == text


def test_palette_invalid():
    with pytest.raises(ValueError):
        parse_palette("lots")


def test_parse_true_color():
    assert parse_true_color("truecolor")
    assert parse_true_color(" 24BIT ")
    assert not parse_true_color("256")


def test_color_toggles():
    assert ColorToggles().color_durations()
    assert not ColorToggles(durations=True).color_durations()
    assert ColorToggles(durations=False).color_durations()
    assert ColorToggles(durations=True, terminated=None).color_terminated() is False


def test_is_utf8():
    assert default_view_options().is_utf8()
    assert not ViewOptions(lang="en_US.UTF-8", ascii_only=True).is_utf8()
    assert not ViewOptions(lang=None).is_utf8()


def test_determine_palette_explicit():
    assert ViewOptions(no_colors=True, palette=Palette.ALL).determine_palette() is Palette.NO_COLORS
    assert ViewOptions(palette=Palette.ANSI16, truecolor=True).determine_palette() is Palette.ANSI16
    assert ViewOptions(truecolor=True).determine_palette() is Palette.ALL


def test_determine_palette_from_tput():
    done = subprocess.CompletedProcess(["tput", "colors"], 0, stdout=b"256\n", stderr=b"")
    with mock.patch("taskscope.options.subprocess.run", return_value=done):
        assert ViewOptions().determine_palette() is Palette.ANSI256


def test_determine_palette_tput_garbage():
    done = subprocess.CompletedProcess(["tput", "colors"], 0, stdout=b"many", stderr=b"")
    with mock.patch("taskscope.options.subprocess.run", return_value=done):
        assert ViewOptions().determine_palette() is Palette.NO_COLORS


def test_determine_palette_without_tput():
    with mock.patch("taskscope.options.subprocess.run", side_effect=FileNotFoundError):
        assert ViewOptions().determine_palette() is Palette.NO_COLORS


def test_view_merge_prefers_command_line():
    base = default_view_options()
    merged = base.merge_with(ViewOptions(lang="C", toggles=ColorToggles(terminated=False)))
    assert merged.lang == "C"
    assert merged.palette is base.palette
    assert merged.toggles.terminated is False
    assert merged.toggles.durations is base.toggles.durations
    assert merged.no_colors is False
    assert base.merge_with(ViewOptions(no_colors=True)).no_colors


def test_view_merge_with_empty_is_identity():
    base = default_view_options()
    assert base.merge_with(ViewOptions()) == base