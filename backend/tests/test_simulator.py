"""Tests for PositionSimulator cursor movement, arrivals and loop control."""

import datetime

from bustrack.core.simulator import PositionSimulator, TickKind, starting_cursor
from conftest import densify

T0 = datetime.datetime(2026, 3, 2, 2, 30, tzinfo=datetime.timezone.utc)


class Recorder:
    def __init__(self) -> None:
        self.positions = []
        self.arrivals = []

    def on_position(self, sample) -> None:
        self.positions.append((sample.lat, sample.lng))

    def on_arrival(self, stop_index, sample) -> None:
        self.arrivals.append(stop_index)


def build(stops, ticker, points=None, **kwargs):
    rec = Recorder()
    points = points if points is not None else densify([(s.lat, s.lng) for s in stops])
    sim = PositionSimulator(
        points, stops, 60.0, ticker,
        on_position=rec.on_position, on_arrival=rec.on_arrival,
        clock=lambda: T0, **kwargs,
    )
    return sim, rec


def test_first_tick_arrives_at_origin(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    assert ticker.advance()
    assert rec.arrivals == [0]
    assert rec.positions == [(12.97, 77.59)]
    assert sim.running is False
    # Halted: nothing scheduled until resumed
    assert ticker.pending == 0


def test_cursor_is_monotonic_and_stops_at_each_stop(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    cursors = []
    while not sim.finished:
        if not ticker.advance():
            sim.resume()
            continue
        cursors.append(sim.coord_index)
    assert cursors == sorted(cursors)
    assert rec.arrivals == [0, 1, 2]
    lngs = [lng for _, lng in rec.positions]
    assert lngs == sorted(lngs)


def test_no_position_past_next_stop_before_arrival(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    ticker.advance()  # arrival at A
    sim.resume()
    ticker.run()
    assert rec.arrivals == [0, 1]
    # Everything published so far lies between A and B
    assert max(lng for _, lng in rec.positions) <= abc_stops[1].lng + 0.0002


def test_resume_repeats_last_position(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    ticker.advance()
    sim.resume()
    ticker.run()
    last = rec.positions[-1]
    sim.resume()
    ticker.advance()
    # First tick after resuming publishes the coordinate it halted on
    assert rec.positions[-1] == last


def test_halt_and_resume_mid_leg_republishes_held_position(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    ticker.advance()
    sim.resume()
    for _ in range(4):
        ticker.advance()
    sim.halt()
    assert ticker.pending == 0
    held = rec.positions[-1]
    sim.resume()
    ticker.advance()
    assert rec.positions[-1] == held
    ticker.advance()
    assert rec.positions[-1][1] > held[1]


def test_delay_follows_speed(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    ticker.advance()
    sim.resume()
    ticker.advance()
    # 0.001° of longitude ≈ 108 m, at 60 km/h ≈ 6.5 s
    assert 6.0 < ticker.scheduled[-1].delay < 7.0

    sim.set_speed(120.0)
    ticker.advance()
    assert 3.0 < ticker.scheduled[-1].delay < 3.5

    sim.set_speed(0)
    assert sim.speed_kmh == 120.0


def test_time_scale_and_min_tick(abc_stops, ticker):
    sim, _ = build(abc_stops, ticker, time_scale=1000.0, min_tick_s=0.05)
    sim.start()
    ticker.advance()
    sim.resume()
    ticker.advance()
    assert ticker.scheduled[-1].delay == 0.05


def test_exhausted_geometry_snaps_to_final_stop(abc_stops, ticker):
    # Geometry that never comes near C
    points = densify([(12.97, 77.59), (12.97, 77.60)])
    sim, rec = build(abc_stops, ticker, points=points)
    sim.start()
    while not sim.finished:
        if not ticker.advance():
            sim.resume()
    assert rec.arrivals == [0, 1, 2]
    assert rec.positions[-1] == (abc_stops[2].lat, abc_stops[2].lng)


def test_step_reports_final_kind(abc_stops, ticker):
    sim, _ = build(abc_stops, ticker, points=[(12.97, 77.61)], stop_index=2)
    result = sim.step()
    assert result.kind is TickKind.FINAL
    assert result.stop_index == 2


def test_cancel_is_idempotent(abc_stops, ticker):
    sim, rec = build(abc_stops, ticker)
    sim.start()
    sim.cancel()
    sim.cancel()
    assert ticker.advance() is False
    assert rec.positions == []


def test_restart_does_not_double_schedule(abc_stops, ticker):
    sim, _ = build(abc_stops, ticker)
    sim.start()
    sim.start()
    assert ticker.pending == 1


def test_failing_tick_is_retried(abc_stops, ticker):
    calls = []

    def boom(sample):
        calls.append(sample)
        if len(calls) == 1:
            raise RuntimeError("subscriber broke")

    sim = PositionSimulator(
        densify([(12.97, 77.595), (12.97, 77.60)]), abc_stops[1:], 60.0, ticker,
        on_position=lambda s: None, on_arrival=lambda i, s: None, clock=lambda: T0,
    )
    sim._on_position = boom
    sim.start()
    ticker.advance()
    # The error is logged and another tick is armed
    assert sim.running
    assert ticker.pending == 1


def test_starting_cursor_prefers_last_position():
    points = densify([(12.97, 77.59), (12.97, 77.61)], steps=20)
    assert starting_cursor(points, (12.9701, 77.6002), None) == 10
    assert starting_cursor(points, None, None) == 0
    assert starting_cursor([], (1.0, 1.0), None) == 0


def test_failing_arrival_tick_is_replayed(abc_stops, ticker):
    rec = Recorder()
    failures = []

    def flaky(sample):
        if not failures:
            failures.append(sample)
            raise RuntimeError("subscriber broke")
        rec.on_position(sample)

    sim = PositionSimulator(
        densify([(s.lat, s.lng) for s in abc_stops]), abc_stops, 60.0, ticker,
        on_position=flaky, on_arrival=rec.on_arrival, clock=lambda: T0,
    )
    sim.start()
    ticker.advance()
    # The arrival at A failed to publish: the same tick is armed again
    assert rec.arrivals == []
    assert sim.stop_index == 0
    assert ticker.pending == 1

    ticker.run(50)
    assert rec.arrivals == [0]
    assert rec.positions == [(12.97, 77.59)]
    assert sim.stop_index == 1
    assert sim.running is False
    assert ticker.pending == 0


def test_failing_arrival_callback_is_replayed(abc_stops, ticker):
    rec = Recorder()

    def flaky(stop_index, sample):
        if not rec.arrivals:
            rec.arrivals.append(None)
            raise RuntimeError("state store down")
        rec.on_arrival(stop_index, sample)

    sim = PositionSimulator(
        densify([(s.lat, s.lng) for s in abc_stops]), abc_stops, 60.0, ticker,
        on_position=rec.on_position, on_arrival=flaky, clock=lambda: T0,
    )
    sim.start()
    ticker.run(50)
    assert rec.arrivals == [None, 0]
    assert sim.stop_index == 1


def test_failing_tick_after_cancel_stays_stopped(abc_stops, ticker):
    sim = None

    def cancel_then_fail(sample):
        sim.cancel()
        raise RuntimeError("torn down")

    sim = PositionSimulator(
        densify([(s.lat, s.lng) for s in abc_stops]), abc_stops, 60.0, ticker,
        on_position=cancel_then_fail, on_arrival=lambda i, s: None, clock=lambda: T0,
    )
    sim.start()
    ticker.advance()
    assert sim.running is False
    assert ticker.pending == 0


def test_three_stop_journey_on_stop_points_only(abc_stops, ticker):
    # No routed geometry: one coordinate per stop
    points = [(s.lat, s.lng) for s in abc_stops]
    sim, rec = build(abc_stops, ticker, points=points)
    sim.start()
    cursors = []
    while not sim.finished:
        if not ticker.advance():
            sim.resume()
            continue
        cursors.append(sim.coord_index)
    assert rec.arrivals == [0, 1, 2]
    # Resuming after an arrival republishes the stop before moving on
    assert list(dict.fromkeys(rec.positions)) == points
    assert cursors == sorted(cursors)
    # One leg of ~1.08 km at 60 km/h between A and B
    assert 60 < max(ticker.delays) < 70
