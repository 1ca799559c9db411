"""Tests for flowsense.session -- the asyncio session actor."""

import asyncio
import time

import pytest

from flowsense.config import EngineConfig
from flowsense.engine import FlowEngine
from flowsense.models import FlowState
from flowsense.session import (
    FlowSession,
    SessionAlreadyActiveError,
    SessionNotActiveError,
)

from tests.conftest import Recorder, alternating_rr, beat_times, make_baseline


def make_session(recorder: Recorder, **config) -> FlowSession:
    settings = dict(tick_interval_sec=0.05, debounce_sec=0.02, initial_delay_sec=0.0)
    settings.update(config)
    engine = FlowEngine(
        make_baseline(),
        config=EngineConfig(**settings),
        on_score=recorder.score,
        on_haptic=recorder.cue,
    )
    return FlowSession(engine)


def produce(session: FlowSession, hr: float = 72.0) -> None:
    """Producer running on a worker thread."""
    now = time.time()
    for rr in alternating_rr(30):
        session.submit_interval(rr, now)
    session.submit_heart_rate(hr, now)


class TestLifecycle:
    def test_start_twice_raises(self):
        async def run():
            session = make_session(Recorder())
            await session.start()
            try:
                with pytest.raises(SessionAlreadyActiveError):
                    await session.start()
            finally:
                await session.stop()

        asyncio.run(run())

    def test_stop_when_idle_raises(self):
        async def run():
            with pytest.raises(SessionNotActiveError):
                await make_session(Recorder()).stop()

        asyncio.run(run())

    def test_submit_when_idle_is_ignored(self):
        session = make_session(Recorder())
        assert not session.submit_heart_rate(70.0)
        assert not session.request_recompute()

    def test_stop_returns_summary_and_clears(self):
        async def run():
            recorder = Recorder()
            session = make_session(recorder)
            await session.start(sleep_quality=80.0)
            await asyncio.to_thread(produce, session)
            await asyncio.sleep(0.15)
            summary = await session.stop()
            return session, summary, recorder

        session, summary, recorder = asyncio.run(run())
        assert summary.cycles >= 1
        assert recorder.scores
        assert not session.is_active
        assert session.engine.processor.intervals == []
        assert session.engine.state is FlowState.BASELINE
        assert not session.submit_heart_rate(70.0)


class TestProducers:
    def test_thread_producer_feeds_engine(self):
        async def run():
            recorder = Recorder()
            session = make_session(recorder)
            await session.start()
            await asyncio.to_thread(produce, session)
            await asyncio.sleep(0.15)
            ctx = session.engine.context
            result = (ctx.heart_rate, ctx.rmssd, list(recorder.scores))
            await session.stop()
            return result

        heart_rate, rmssd, scores = asyncio.run(run())
        assert heart_rate == 72.0
        assert rmssd == pytest.approx(40.0)
        assert scores[-1].hr_subscore == 30.0

    def test_events_applied_in_order(self):
        async def run():
            session = make_session(Recorder(), tick_interval_sec=60.0, initial_delay_sec=60.0)
            await session.start()
            rr = [800.0, 820.0, 850.0, 830.0]

            def beats():
                for t in beat_times(rr, start=100.0):
                    session.submit_beat(t)

            await asyncio.to_thread(beats)
            await asyncio.sleep(0.01)
            await session.drain()
            intervals = session.engine.processor.intervals
            await session.stop()
            return intervals

        intervals = asyncio.run(run())
        assert intervals == pytest.approx([800.0, 820.0, 850.0, 830.0])

    def test_queue_full_drops_newest(self):
        async def run():
            session = make_session(Recorder(), queue_maxsize=1)
            await session.start()
            # No await in between: the consumer has not run yet
            session.submit_heart_rate(70.0)
            session.submit_heart_rate(71.0)
            dropped = session.dropped
            await session.drain()
            hr = session.engine.context.heart_rate
            await session.stop()
            return dropped, hr

        dropped, hr = asyncio.run(run())
        assert dropped == 1
        assert hr == 70.0


class TestScheduling:
    def test_debounce_coalesces_burst(self):
        async def run():
            recorder = Recorder()
            # Periodic tick effectively disabled
            session = make_session(
                recorder, tick_interval_sec=60.0, initial_delay_sec=60.0, debounce_sec=0.05
            )
            await session.start()
            now = time.time()
            for i in range(10):
                session.submit_heart_rate(70.0 + i, now)
            await session.drain()
            assert recorder.scores == []
            await asyncio.sleep(0.2)
            count = len(recorder.scores)
            await session.stop()
            return count, recorder.scores

        count, scores = asyncio.run(run())
        assert count == 1
        assert scores[0].hr_subscore == pytest.approx(30.0 - 15.0 * (79.0 / 60.0 - 1.3) / 0.2)

    def test_periodic_tick_recomputes(self):
        async def run():
            recorder = Recorder()
            session = make_session(recorder, tick_interval_sec=0.03, debounce_sec=0.01)
            await session.start()
            session.submit_heart_rate(72.0)
            await asyncio.sleep(0.2)
            await session.stop()
            return recorder.scores

        scores = asyncio.run(run())
        assert len(scores) >= 3

    def test_stop_cancels_pending_debounce(self):
        async def run():
            recorder = Recorder()
            session = make_session(
                recorder, tick_interval_sec=60.0, initial_delay_sec=60.0, debounce_sec=0.05
            )
            await session.start()
            session.submit_heart_rate(72.0)
            await session.drain()
            await session.stop()
            await asyncio.sleep(0.1)
            return recorder.scores

        assert asyncio.run(run()) == []

    def test_no_residue_across_sessions(self):
        async def run():
            recorder = Recorder()
            session = make_session(recorder, tick_interval_sec=60.0, initial_delay_sec=60.0)
            await session.start()
            await asyncio.to_thread(produce, session)
            await asyncio.sleep(0.01)
            await session.drain()
            await session.stop()

            await session.start()
            engine = session.engine
            state = (engine.processor.intervals, engine.context.heart_rate,
                     engine.machine.history, engine.state)
            await session.stop()
            return state

        intervals, heart_rate, history, state = asyncio.run(run())
        assert intervals == []
        assert heart_rate is None
        assert history == []
        assert state is FlowState.CALIBRATING

    def test_interval_does_not_arm_debounce(self):
        async def run():
            recorder = Recorder()
            session = make_session(
                recorder, tick_interval_sec=60.0, initial_delay_sec=60.0, debounce_sec=0.02
            )
            await session.start()
            session.submit_heart_rate(72.0)
            await asyncio.sleep(0.1)
            after_hr = len(recorder.scores)
            now = time.time()
            for rr in alternating_rr(10):
                session.submit_interval(rr, now)
            await asyncio.sleep(0.1)
            after_rr = len(recorder.scores)
            await session.stop()
            return after_hr, after_rr

        after_hr, after_rr = asyncio.run(run())
        assert after_hr == 1
        assert after_rr == 1


class TestRobustness:
    def test_malformed_events_do_not_kill_consumer(self):
        async def run():
            session = make_session(Recorder(), tick_interval_sec=60.0, initial_delay_sec=60.0)
            await session.start()
            session.submit_beat("garbage")
            session.submit_interval(None)
            session.submit_heart_rate("fast")
            session.submit_heart_rate(75.0)
            await session.drain()
            result = (session.engine.context.heart_rate, session._consumer.done())
            await session.stop()
            return result

        heart_rate, consumer_done = asyncio.run(run())
        assert heart_rate == 75.0
        assert not consumer_done

    def test_engine_error_is_dropped(self, monkeypatch):
        async def run():
            session = make_session(Recorder(), tick_interval_sec=60.0, initial_delay_sec=60.0)
            calls = []

            def broken(*args):
                calls.append(args)
                raise ValueError("bad payload")

            monkeypatch.setattr(session.engine, "set_substances", broken)
            await session.start()
            session.submit_substances({"caffeine": 100.0})
            session.submit_heart_rate(70.0)
            await session.drain()
            result = (calls, session.engine.context.heart_rate, session.is_active)
            await session.stop()
            return result

        calls, heart_rate, active = asyncio.run(run())
        assert len(calls) == 1
        assert heart_rate == 70.0
        assert active

    def test_start_while_stop_in_progress(self):
        async def run():
            session = make_session(Recorder(), tick_interval_sec=60.0, initial_delay_sec=60.0)
            await session.start()
            session.submit_heart_rate(60.0)
            await session.drain()

            stopping = asyncio.create_task(session.stop())
            await asyncio.sleep(0)  # stop() is now waiting on its cancelled tasks
            await session.start()
            session.submit_heart_rate(75.0)
            await stopping
            await session.drain()

            engine = session.engine
            result = (session.is_active, engine.is_active, engine.context.heart_rate)
            await session.stop()
            return result

        session_active, engine_active, heart_rate = asyncio.run(run())
        assert session_active
        assert engine_active
        assert heart_rate == 75.0
