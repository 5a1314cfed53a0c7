"""Tests for schedule parsing and the cron scheduler."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from cron_schedule import (CronSchedule, CronScheduler, EverySchedule, ScheduleError,
                           parse_duration, parse_schedule)

START = datetime(2024, 1, 1, 12, 3, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return CronScheduler(clock=clock, inline=True)


class TestParsing:
    @pytest.mark.parametrize('text,expected', [
        ('45s', timedelta(seconds=45)),
        ('10m', timedelta(minutes=10)),
        ('1h30m', timedelta(hours=1, minutes=30)),
        ('1.5h', timedelta(minutes=90)),
        ('500ms', timedelta(milliseconds=500)),
    ])
    def test_parse_duration(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize('text', ['', 'abc', '10', '10x', 'm10'])
    def test_parse_duration_invalid(self, text):
        with pytest.raises(ScheduleError):
            parse_duration(text)

    def test_every(self):
        assert parse_schedule('@every 10m') == EverySchedule(timedelta(minutes=10))

    def test_every_below_one_second(self):
        with pytest.raises(ScheduleError):
            parse_schedule('@every 500ms')

    def test_cron_expression(self):
        schedule = parse_schedule('*/5 * * * *')
        assert isinstance(schedule, CronSchedule)
        assert schedule.next(START) == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)

    def test_cron_alias(self):
        schedule = parse_schedule('@hourly')
        assert schedule.next(START) == datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize('expression', ['', '   ', 'not a cron', '@every', '61 * * * *'])
    def test_invalid(self, expression):
        with pytest.raises(ScheduleError):
            parse_schedule(expression)


class TestCronScheduler:
    def test_fires_when_due(self, scheduler, clock):
        calls = []
        scheduler.register('a', '@every 10s', lambda: calls.append('a'))

        assert scheduler.run_pending() == []
        clock.advance(seconds=10)
        assert scheduler.run_pending() == ['a']
        assert calls == ['a']
        assert scheduler.next_run('a') == clock.now + timedelta(seconds=10)

    def test_jobs_fire_independently(self, scheduler, clock):
        calls = []
        scheduler.register('fast', '@every 10s', lambda: calls.append('fast'))
        scheduler.register('slow', '@every 1m', lambda: calls.append('slow'))

        for _ in range(6):
            clock.advance(seconds=10)
            scheduler.run_pending()

        assert calls.count('fast') == 6
        assert calls.count('slow') == 1

    def test_register_twice(self, scheduler):
        scheduler.register('a', '@every 10s', lambda: None)
        with pytest.raises(ValueError):
            scheduler.register('a', '@every 20s', lambda: None)

    def test_register_invalid_expression(self, scheduler):
        with pytest.raises(ScheduleError):
            scheduler.register('a', 'bogus', lambda: None)
        assert scheduler.job_ids() == []

    def test_update(self, scheduler, clock):
        scheduler.register('a', '@every 10s', lambda: None)
        scheduler.update('a', '@every 1h')
        assert scheduler.expression('a') == '@every 1h'
        assert scheduler.next_run('a') == clock.now + timedelta(hours=1)

    def test_update_unknown_job(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.update('missing', '@every 1h')

    def test_unregister(self, scheduler, clock):
        calls = []
        scheduler.register('a', '@every 10s', lambda: calls.append('a'))
        scheduler.unregister('a')
        scheduler.unregister('a')

        clock.advance(minutes=1)
        assert scheduler.run_pending() == []
        assert calls == []
        assert scheduler.expression('a') is None

    def test_failing_job_does_not_stop_others(self, scheduler, clock):
        calls = []

        def fail():
            raise RuntimeError("boom")

        scheduler.register('bad', '@every 10s', fail)
        scheduler.register('good', '@every 10s', lambda: calls.append('good'))
        clock.advance(seconds=10)

        assert scheduler.run_pending() == ['bad', 'good']
        assert calls == ['good']

    def test_dispatcher_thread(self):
        scheduler = CronScheduler()
        fired = threading.Event()
        scheduler.register('a', '@every 1s', fired.set)
        scheduler.start()
        try:
            assert fired.wait(5)
        finally:
            scheduler.stop()
