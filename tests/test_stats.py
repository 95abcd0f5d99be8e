import datetime as dt
import struct

import pytest

from taskscope.stats import (
    AsyncOpStats,
    Histogram,
    PollStats,
    ResourceStats,
    TaskStats,
    TimeAnchor,
)
from taskscope.visitors import WakeKind, WakeOp

ANCHOR = TimeAnchor(mono=1_000, sys=7 * 1_000_000_000 + 5)


def _header(raw):
    return struct.unpack(">IIIIQQd", raw[:40])


def _task():
    return TaskStats(poll_duration_max=1_000_000, scheduled_duration_max=1_000_000, created_at=1_000)


def test_time_anchor_maps_anchor_instant_to_system_time():
    assert ANCHOR.to_timestamp(ANCHOR.mono) == (7, 5)
    assert ANCHOR.to_system_time(ANCHOR.mono) == dt.datetime(1970, 1, 1, 0, 0, 7, tzinfo=dt.timezone.utc)


def test_time_anchor_clamps_instants_before_anchor():
    assert ANCHOR.to_timestamp(ANCHOR.mono - 500) == ANCHOR.to_timestamp(ANCHOR.mono)


def test_time_anchor_is_monotonic():
    assert ANCHOR.to_timestamp(ANCHOR.mono + 10) > ANCHOR.to_timestamp(ANCHOR.mono)


def test_histogram_rejects_too_small_max():
    with pytest.raises(ValueError):
        Histogram(1)


def test_empty_histogram_serialization():
    proto = Histogram(1000).to_proto()
    cookie, length, offset, sigfig, low, high, ratio = _header(proto.raw_histogram)
    assert cookie == 0x1C849313
    assert (offset, sigfig, low, high, ratio) == (0, 2, 1, 1000, 1.0)
    assert length == len(proto.raw_histogram) - 40
    assert proto.raw_histogram[40:] == b"\x00"


def test_histogram_encodes_single_count():
    hist = Histogram(1000)
    hist.record_duration(1)
    assert hist.to_proto().raw_histogram[40:] == b"\x00\x02"


def test_histogram_header_length_matches_payload():
    hist = Histogram(10_000_000)
    for value in (3, 300, 5000, 9_000_000):
        hist.record_duration(value)
    raw = hist.to_proto().raw_histogram
    assert _header(raw)[1] == len(raw) - 40
    assert _header(raw)[5] == 10_000_000


def test_histogram_clamps_outliers():
    hist = Histogram(1000)
    hist.record_duration(5000)
    hist.record_duration(7000)
    hist.record_duration(10)
    proto = hist.to_proto()
    assert proto.high_outliers == 2
    assert proto.highest_outlier == 7000
    assert proto.max_value == 1000


def test_new_task_is_unsent_until_taken():
    task = _task()
    assert task.is_unsent()
    assert task.take_unsent() is True
    assert task.take_unsent() is False
    assert not task.is_unsent()


def test_wake_ops_are_counted():
    task = _task()
    task.take_unsent()
    task.record_wake_op(WakeOp(WakeKind.CLONE), 1_100)
    task.record_wake_op(WakeOp(WakeKind.WAKE, self_wake=True), 1_200)
    task.record_wake_op(WakeOp(WakeKind.WAKE_BY_REF), 1_300)
    task.record_wake_op(WakeOp(WakeKind.DROP), 1_400)
    snap = task.to_proto(ANCHOR)
    assert snap.waker_clones == 1
    assert snap.waker_drops == 2
    assert snap.wakes == 2
    assert snap.self_wakes == 1
    assert snap.last_wake == ANCHOR.to_timestamp(1_300)
    assert task.is_unsent()


def test_poll_records_busy_time():
    task = _task()
    start, end = 2_000, 2_250
    task.start_poll(start)
    task.end_poll(end)
    snap = task.to_proto(ANCHOR)
    assert snap.poll_stats.polls == 1
    assert snap.poll_stats.busy_time == end - start
    assert snap.poll_stats.first_poll == ANCHOR.to_timestamp(start)
    assert snap.poll_stats.last_poll_ended == ANCHOR.to_timestamp(end)


def test_nested_polls_count_once():
    task = _task()
    task.start_poll(2_000)
    task.start_poll(2_100)
    task.end_poll(2_200)
    task.end_poll(2_300)
    snap = task.to_proto(ANCHOR)
    assert snap.poll_stats.polls == 1
    assert snap.poll_stats.last_poll_started == ANCHOR.to_timestamp(2_000)
    assert snap.poll_stats.busy_time == 2_300 - 2_000


def test_scheduled_time_measured_from_wake():
    task = _task()
    wake_at, poll_at = 1_500, 1_800
    task.record_wake_op(WakeOp(WakeKind.WAKE_BY_REF), wake_at)
    task.start_poll(poll_at)
    task.end_poll(poll_at + 10)
    assert task.to_proto(ANCHOR).scheduled_time == poll_at - wake_at


def test_end_before_start_records_no_busy_time():
    task = _task()
    task.start_poll(5_000)
    task.end_poll(4_000)
    snap = task.to_proto(ANCHOR)
    assert snap.poll_stats.busy_time == 0
    assert snap.poll_stats.last_poll_ended == ANCHOR.to_timestamp(4_000)


def test_end_without_start_is_ignored():
    task = _task()
    task.end_poll(4_000)
    snap = task.to_proto(ANCHOR)
    assert snap.poll_stats.polls == 0
    assert snap.poll_stats.last_poll_ended is None


def test_poll_histogram_collects_outliers():
    task = TaskStats(poll_duration_max=1_000, scheduled_duration_max=1_000, created_at=0)
    task.start_poll(0)
    task.end_poll(5_000)
    hist = task.poll_duration_histogram()
    assert hist.high_outliers == 1
    assert hist.highest_outlier == 5_000
    assert task.scheduled_duration_histogram().high_outliers == 0


def test_drop_task_only_once():
    task = _task()
    assert task.dropped_at() is None
    task.drop_task(9_000)
    task.drop_task(9_500)
    assert task.dropped_at() == 9_000
    assert task.to_proto(ANCHOR).dropped_at == ANCHOR.to_timestamp(9_000)


def test_resource_stats():
    res = ResourceStats(created_at=1_200, inherit_child_attributes=True, parent_id=42)
    assert res.parent_id == 42 and res.inherit_child_attributes
    assert res.take_unsent() is True
    res.drop_resource(3_000)
    assert res.is_unsent()
    assert res.dropped_at() == 3_000
    snap = res.to_proto(ANCHOR)
    assert snap.created_at == ANCHOR.to_timestamp(1_200)
    assert snap.dropped_at == ANCHOR.to_timestamp(3_000)


def test_async_op_task_id_and_drop():
    op = AsyncOpStats(created_at=1_000, inherit_child_attributes=False, parent_id=None)
    assert op.task_id() is None
    op.take_unsent()
    op.set_task_id(17)
    assert op.task_id() == 17
    assert op.is_unsent()
    op.drop_async_op(2_000)
    assert op.dropped_at() == 2_000
    snap = op.to_proto(ANCHOR)
    assert snap.task_id == 17
    assert snap.dropped_at == ANCHOR.to_timestamp(2_000)


def test_async_op_polls_without_wakes_have_no_scheduled_time():
    op = AsyncOpStats(created_at=1_000, inherit_child_attributes=False, parent_id=None)
    op.start_poll(1_100)
    op.end_poll(1_400)
    op.start_poll(1_500)
    op.end_poll(1_600)
    snap = op.to_proto(ANCHOR).poll_stats
    assert snap.polls == 2
    assert snap.busy_time == (1_400 - 1_100) + (1_600 - 1_500)


def test_poll_stats_wake_keeps_latest():
    stats = PollStats()
    stats.wake(500)
    stats.wake(300)
    stats.start_poll(600)
    stats.end_poll(700)
    snap = stats.to_proto(ANCHOR)
    assert snap.first_poll == ANCHOR.to_timestamp(600)
    assert snap.busy_time == 700 - 600