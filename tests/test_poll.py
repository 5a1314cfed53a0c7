"""Tests for the polling watcher and its jobs."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from credentials import CredentialsHelpers, StaticCredentialsHelper
from cron_schedule import CronScheduler
from events import TrackedImage, TriggerType
from image_ref import parse_image
from poll import (PollManager, RepositoryWatcher, WatchDetails, WatchError,
                  WatchRepositoryTagsJob, WatchTagJob, get_image_identifier)
from policy import get_policy
from registry import RegistryError, RepositoryTags

OLD_DIGEST = 'sha256:123abc'
NEW_DIGEST = 'sha256:0604b6a8f3b4d4f0f3b44a3d1cd1b6e4cfa3ff1e4c5a2b1d9e8f7a6b5c4d3e2f'


class FakeProviders:
    def __init__(self, images=None):
        self.images = images or []
        self.events = []

    def submit(self, event):
        self.events.append(event)

    def tracked_images(self):
        return list(self.images)


class FakeRegistry:
    def __init__(self, digest=NEW_DIGEST, tags=None):
        self.digest_value = digest
        self.tags = tags or []
        self.fail = False
        self.digest_calls = []
        self.get_calls = []

    def digest(self, opts):
        self.digest_calls.append(opts)
        if self.fail:
            raise RegistryError("registry unavailable")
        return self.digest_value

    def get(self, opts):
        self.get_calls.append(opts)
        if self.fail:
            raise RegistryError("registry unavailable")
        return RepositoryTags(name=opts.name, tags=list(self.tags))


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _image(ref, policy='all', schedule='@every 10m', channels=None, trigger=TriggerType.POLL, tags=None):
    return TrackedImage(
        image=parse_image(ref),
        tags=list(tags or []),
        trigger=trigger,
        poll_schedule=schedule,
        policy=get_policy(policy),
        semver_pre_release_tags=dict(channels or {}),
    )


def _tags(providers):
    return [e.repository.tag for e in providers.events]


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return CronScheduler(clock=clock, inline=True)


class TestIdentifier:
    def test_versioned_tag_uses_repository(self):
        assert get_image_identifier(parse_image('foo/bar:1.0'), False) == 'index.docker.io/foo/bar'

    def test_moving_tag_keeps_tag(self):
        assert get_image_identifier(parse_image('foo/bar:latest'), False) == 'index.docker.io/foo/bar:latest'

    def test_keep_tag(self):
        assert get_image_identifier(parse_image('foo/bar:1.0'), True) == 'index.docker.io/foo/bar:1.0'


class TestWatchTagJob:
    def test_digest_change_emits_one_event(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)
        job = WatchTagJob(providers, FakeRegistry(digest=NEW_DIGEST), details)

        job.run()

        assert len(providers.events) == 1
        repository = providers.events[0].repository
        assert repository.name == 'index.docker.io/foo/bar'
        assert repository.tag == '1.1'
        assert repository.digest == NEW_DIGEST
        assert providers.events[0].trigger_name == 'poll'
        assert details.digest == NEW_DIGEST

    def test_same_digest_emits_nothing(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)
        WatchTagJob(providers, FakeRegistry(digest=OLD_DIGEST), details).run()
        assert providers.events == []
        assert details.digest == OLD_DIGEST

    def test_second_run_after_change_is_quiet(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)
        job = WatchTagJob(providers, FakeRegistry(digest=NEW_DIGEST), details)
        job.run()
        job.run()
        assert len(providers.events) == 1

    def test_registry_failure_leaves_state(self, providers):
        registry = FakeRegistry()
        registry.fail = True
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)

        WatchTagJob(providers, registry, details).run()

        assert providers.events == []
        assert details.digest == OLD_DIGEST

    def test_uses_credentials(self, providers):
        helpers = CredentialsHelpers()
        helpers.register('static', StaticCredentialsHelper(
            {'index.docker.io': {'username': 'user', 'password': 'secret'}}))
        registry = FakeRegistry()
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)

        WatchTagJob(providers, registry, details, helpers).run()

        opts = registry.digest_calls[0]
        assert (opts.username, opts.password) == ('user', 'secret')
        assert opts.registry == 'https://index.docker.io'
        assert opts.name == 'foo/bar'
        assert opts.tag == '1.1'
        assert 'secret' not in repr(opts)

    def test_missing_credentials_fall_back_to_anonymous(self, providers):
        registry = FakeRegistry()
        details = WatchDetails(tracked_image=_image('ghcr.io/org/app:1.1', 'force'), digest=OLD_DIGEST)

        WatchTagJob(providers, registry, details, CredentialsHelpers()).run()

        assert registry.digest_calls[0].username == ''
        assert len(providers.events) == 1

    def test_runs_of_one_entry_are_serialized(self, providers):
        class SlowRegistry(FakeRegistry):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.max_active = 0
                self._lock = threading.Lock()

            def digest(self, opts):
                with self._lock:
                    self.active += 1
                    self.max_active = max(self.max_active, self.active)
                time.sleep(0.05)
                with self._lock:
                    self.active -= 1
                return self.digest_value

        registry = SlowRegistry()
        details = WatchDetails(tracked_image=_image('foo/bar:1.1', 'force'), digest=OLD_DIGEST)
        job = WatchTagJob(providers, registry, details)

        threads = [threading.Thread(target=job.run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.max_active == 1
        assert len(providers.events) == 1


class TestWatchRepositoryTagsJob:
    def test_fan_out_over_pre_release_channels(self, providers):
        image = _image('foo/bar:1.1.0', 'all', channels={'dev': '1.2.0-dev'})
        details = WatchDetails(tracked_image=image)
        registry = FakeRegistry(tags=['1.3.0-dev', '1.5.0', '1.8.0-alpha'])

        WatchRepositoryTagsJob(providers, registry, details).run()

        assert _tags(providers) == ['1.8.0-alpha', '1.3.0-dev']
        assert all(e.repository.name == 'index.docker.io/foo/bar' for e in providers.events)
        assert details.latest == '1.8.0-alpha'
        assert image.semver_pre_release_tags == {'dev': '1.3.0-dev'}

    def test_scope_is_respected(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:1.4.0', 'minor'))
        registry = FakeRegistry(tags=['1.4.0', '1.4.2', '2.0.0'])

        WatchRepositoryTagsJob(providers, registry, details).run()

        # collapse keeps only the highest release, 2.0.0, which minor rejects
        assert providers.events == []

    def test_no_newer_tag(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:2.0.0', 'all'))
        WatchRepositoryTagsJob(providers, FakeRegistry(tags=['1.0.0', '2.0.0', 'latest']), details).run()
        assert providers.events == []
        assert details.latest == '2.0.0'

    def test_channel_at_image_tag_is_skipped(self, providers):
        image = _image('foo/bar:1.2.0-dev', 'minor', channels={'dev': '1.2.0-dev'})
        details = WatchDetails(tracked_image=image)

        WatchRepositoryTagsJob(providers, FakeRegistry(tags=['1.3.0-dev']), details).run()

        assert _tags(providers) == ['1.3.0-dev']

    def test_images_sharing_repository_deduplicate_events(self, providers):
        first = _image('foo/bar:1.0.0', 'all')
        second = _image('foo/bar:1.1.0', 'major')
        details = WatchDetails(tracked_image=first, images=[first, second])

        WatchRepositoryTagsJob(providers, FakeRegistry(tags=['1.2.0']), details).run()

        assert _tags(providers) == ['1.2.0']

    def test_glob_policy_ranks_its_own_matches(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:latest.1', 'glob:latest.*'))
        registry = FakeRegistry(tags=['latest.2', 'latest.3', 'other', '9.9.9'])

        WatchRepositoryTagsJob(providers, registry, details).run()

        assert _tags(providers) == ['latest.3']

    def test_main_channel_reports_a_new_tag_once(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:1.0.0', 'all'))
        job = WatchRepositoryTagsJob(providers, FakeRegistry(tags=['1.0.0', '1.1.0']), details)

        job.run()
        job.run()

        assert _tags(providers) == ['1.1.0']
        assert details.latest == '1.1.0'

    def test_regexp_image_on_its_highest_tag_stays_put(self, providers):
        details = WatchDetails(tracked_image=_image('foo/bar:build-5', r'regexp:^build-\d+$'))
        job = WatchRepositoryTagsJob(providers, FakeRegistry(tags=['build-3', 'build-5']), details)

        job.run()
        job.run()

        assert providers.events == []
        assert details.latest == 'build-5'

    def test_regexp_compare_group_ranks_numerically(self, providers):
        image = _image('foo/bar:build-9', r'regexp:^build-(?P<compare>\d+)$')
        registry = FakeRegistry(tags=['build-3', 'build-9', 'build-10'])

        WatchRepositoryTagsJob(providers, registry, WatchDetails(tracked_image=image)).run()

        assert _tags(providers) == ['build-10']

    def test_registry_failure_emits_nothing(self, providers):
        registry = FakeRegistry(tags=['9.0.0'])
        registry.fail = True
        details = WatchDetails(tracked_image=_image('foo/bar:1.0.0', 'all'))

        WatchRepositoryTagsJob(providers, registry, details).run()

        assert providers.events == []
        assert details.latest == '1.0.0'


class TestRepositoryWatcher:
    def test_watch_versioned_image(self, providers, scheduler):
        registry = FakeRegistry(tags=['1.0.0', '1.1.0'])
        watcher = RepositoryWatcher(providers, registry, scheduler=scheduler)

        assert watcher.watch(_image('foo/bar:1.0.0', 'all')) == ['index.docker.io/foo/bar']

        details = watcher.get('index.docker.io/foo/bar')
        assert details.digest == NEW_DIGEST
        assert details.schedule == '@every 10m'
        assert scheduler.job_ids() == ['index.docker.io/foo/bar']
        # the new job runs once right away
        assert _tags(providers) == ['1.1.0']

    def test_watch_moving_tag(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:latest', 'force'))
        assert list(watcher.watched) == ['index.docker.io/foo/bar:latest']
        assert providers.events == []

    def test_force_policy_on_version_tag_watches_digest(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0', 'force'))
        assert list(watcher.watched) == ['index.docker.io/foo/bar:1.0']

    def test_images_are_grouped_by_identifier(self, providers, scheduler):
        registry = FakeRegistry()
        watcher = RepositoryWatcher(providers, registry, scheduler=scheduler)

        watcher.watch(_image('foo/bar:1.0.0', 'all'), _image('foo/bar:2.0.0', 'major', schedule='@every 1h'))

        details = watcher.get('index.docker.io/foo/bar')
        assert [i.image.tag for i in details.images] == ['1.0.0', '2.0.0']
        assert details.schedule == '@every 10m'
        assert len(registry.digest_calls) == 1

    def test_rewatch_same_schedule_refreshes_images(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0.0', 'all'))
        next_run = scheduler.next_run('index.docker.io/foo/bar')

        watcher.watch(_image('foo/bar:1.1.0', 'all'))

        details = watcher.get('index.docker.io/foo/bar')
        assert details.tracked_image.image.tag == '1.1.0'
        assert scheduler.next_run('index.docker.io/foo/bar') == next_run

    def test_rewatch_restarts_from_lowest_tag_in_use(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(tags=['1.0.0', '1.1.0']), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0.0', 'all', tags=['1.0.0']))
        assert watcher.get('index.docker.io/foo/bar').latest == '1.1.0'

        # 1.1.0 was not applied, so the next scan still reports 1.0.0
        watcher.watch(_image('foo/bar:1.0.0', 'all', tags=['1.0.1', '1.0.0']))

        assert watcher.get('index.docker.io/foo/bar').latest == '1.0.0'

    def test_rewatch_new_schedule_updates_job(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0.0', 'all'))
        watcher.watch(_image('foo/bar:1.0.0', 'all', schedule='@every 1h'))

        assert scheduler.expression('index.docker.io/foo/bar') == '@every 1h'
        assert watcher.get('index.docker.io/foo/bar').schedule == '@every 1h'

    def test_invalid_schedule_does_not_stop_siblings(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)

        with pytest.raises(WatchError):
            watcher.watch(_image('foo/bad:1.0.0', 'all', schedule='bogus'),
                          _image('foo/empty:1.0.0', 'all', schedule=''),
                          _image('foo/good:1.0.0', 'all'))

        assert list(watcher.watched) == ['index.docker.io/foo/good']

    def test_initial_digest_failure(self, providers, scheduler):
        registry = FakeRegistry()
        registry.fail = True
        watcher = RepositoryWatcher(providers, registry, scheduler=scheduler)

        with pytest.raises(WatchError):
            watcher.watch(_image('foo/bar:1.0.0', 'all'))

        assert watcher.watched == {}
        assert scheduler.job_ids() == []

    def test_non_poll_images_are_ignored(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        assert watcher.watch(_image('foo/bar:1.0.0', 'all', trigger=TriggerType.DEFAULT)) == []
        assert watcher.watched == {}

    def test_remove(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0.0', 'all'))

        watcher.remove('index.docker.io/foo/bar')
        watcher.remove('index.docker.io/foo/bar')

        assert watcher.watched == {}
        assert scheduler.job_ids() == []

    def test_unwatch_by_image_name(self, providers, scheduler):
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        watcher.watch(_image('foo/bar:1.0.0', 'all'))
        watcher.unwatch('foo/bar:1.0.0')
        assert watcher.watched == {}

    def test_scheduled_runs(self, providers, scheduler, clock):
        registry = FakeRegistry(digest=OLD_DIGEST)
        watcher = RepositoryWatcher(providers, registry, scheduler=scheduler)
        watcher.watch(_image('foo/bar:latest', 'force', schedule='@every 1m'))

        clock.advance(minutes=1)
        scheduler.run_pending()
        assert providers.events == []

        registry.digest_value = NEW_DIGEST
        clock.advance(minutes=1)
        assert scheduler.run_pending() == ['index.docker.io/foo/bar:latest']
        assert len(providers.events) == 1
        assert watcher.get('index.docker.io/foo/bar:latest').digest == NEW_DIGEST


class TestPollManager:
    def test_scan_adds_and_prunes(self, scheduler):
        providers = FakeProviders([_image('foo/bar:1.0.0', 'all'), _image('foo/baz:latest', 'force')])
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        manager = PollManager(providers, watcher)

        assert manager.scan() == 2
        assert sorted(watcher.watched) == ['index.docker.io/foo/bar', 'index.docker.io/foo/baz:latest']

        providers.images = [_image('foo/bar:1.0.0', 'all')]
        assert manager.scan() == 1
        assert list(watcher.watched) == ['index.docker.io/foo/bar']
        assert scheduler.job_ids() == ['index.docker.io/foo/bar']

    def test_scan_survives_watch_errors(self, scheduler):
        providers = FakeProviders([_image('foo/bar:1.0.0', 'all', schedule='bogus')])
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        assert PollManager(providers, watcher).scan() == 1
        assert watcher.watched == {}

    def test_start_returns_when_stopped(self, scheduler):
        providers = FakeProviders([_image('foo/bar:1.0.0', 'all')])
        watcher = RepositoryWatcher(providers, FakeRegistry(), scheduler=scheduler)
        stop = threading.Event()
        stop.set()

        PollManager(providers, watcher, scan_interval=60).start(stop)

        assert list(watcher.watched) == ['index.docker.io/foo/bar']
