"""Polling trigger.

The RepositoryWatcher keeps one scheduled job per watched image identifier:

  * images on a moving tag ('latest', 'master', ...) or with the 'force'
    policy are watched by digest with a WatchTagJob, keyed by
    'registry/name:tag';
  * versioned images and images with a glob or regexp policy are watched
    through the repository tag list with a WatchRepositoryTagsJob, keyed by
    'registry/name', so that every tracked image sharing the repository is
    evaluated by a single job. A job only advances an image past the tag it
    last reported, never back below it.

Every job run holds its WatchDetails lock exclusively, which serializes
overlapping ticks of the same image while distinct images run in parallel.
A failed run leaves the stored state untouched; the next tick retries.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from credentials import CredentialsHelpers, CredentialsNotAvailableError
from cron_schedule import CronScheduler, ScheduleError, parse_schedule
from events import Event, Repository, TrackedImage, TriggerType
from image_ref import ImageReference, parse_image
from policy import PolicyType, collapse
from registry import RegistryClient, RegistryError, RegistryOpts
from version_utils import VersionError, is_version, lowest, pre_release_of

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL = 55  # seconds


class WatchError(Exception):
    """One or more images could not be watched."""


def get_image_identifier(ref: ImageReference, keep_tag: bool) -> str:
    """Key of the watch entry for an image.

    Non-version tags are watched by digest and keep their tag in the key.
    """
    if keep_tag or not is_version(ref.tag):
        return f"{ref.repository}:{ref.tag}"
    return ref.repository


def watches_tag_list(image: TrackedImage) -> bool:
    """True when the image is watched through the repository tag list."""
    if image.policy.type == PolicyType.FORCE:
        return False
    if image.policy.type in (PolicyType.GLOB, PolicyType.REGEXP):
        return True
    return is_version(image.image.tag)


def identifier_for(image: TrackedImage) -> str:
    if watches_tag_list(image):
        return image.image.repository
    return f"{image.image.repository}:{image.image.tag}"


@dataclass
class WatchDetails:
    """Mutable state of one watch entry. Only touched while holding `lock`."""
    tracked_image: TrackedImage
    digest: str = ''
    latest: str = ''
    schedule: str = ''
    images: List[TrackedImage] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if not self.images:
            self.images = [self.tracked_image]
        if not self.latest:
            self.latest = self.tracked_image.image.tag

    @property
    def image_ref(self) -> ImageReference:
        return self.tracked_image.image


def _registry_opts(image: TrackedImage, helpers: Optional[CredentialsHelpers], tag: str) -> RegistryOpts:
    opts = RegistryOpts(registry=image.image.registry_url, name=image.image.short_name, tag=tag)
    if helpers is None:
        return opts
    try:
        creds = helpers.get_credentials(image)
    except CredentialsNotAvailableError:
        logger.debug("no credentials for %s, querying anonymously", image.image.remote)
        return opts
    opts.username = creds.username
    opts.password = creds.password
    return opts


class WatchTagJob:
    """Watches a single tag by digest."""

    def __init__(self, providers, registry_client: RegistryClient, details: WatchDetails,
                 credentials_helpers: Optional[CredentialsHelpers] = None):
        self.providers = providers
        self.registry_client = registry_client
        self.details = details
        self.credentials_helpers = credentials_helpers

    def run(self) -> None:
        with self.details.lock:
            ref = self.details.image_ref
            opts = _registry_opts(self.details.tracked_image, self.credentials_helpers, ref.tag)

            try:
                current_digest = self.registry_client.digest(opts)
            except RegistryError as e:
                logger.error("failed to check digest of %s: %s", ref.remote, e)
                return

            logger.debug("checking digest of %s: stored %s, registry %s",
                         ref.remote, self.details.digest, current_digest)

            if current_digest == self.details.digest:
                return

            event = Event(
                repository=Repository(name=ref.repository, tag=ref.tag,
                                      digest=current_digest, host=ref.registry),
                trigger_name=TriggerType.POLL.value,
            )
            logger.info("digest change detected for %s (%s), submitting event to providers",
                        ref.remote, current_digest)
            self.providers.submit(event)

            self.details.digest = current_digest


class WatchRepositoryTagsJob:
    """Watches the tag list of a repository for every image that uses it.

    Each tracked image advances its main channel (its current tag) and each
    of its pre-release channels to the highest candidate its own policy
    accepts. Pre-release channels only consider tags of the same channel.
    """

    def __init__(self, providers, registry_client: RegistryClient, details: WatchDetails,
                 credentials_helpers: Optional[CredentialsHelpers] = None):
        self.providers = providers
        self.registry_client = registry_client
        self.details = details
        self.credentials_helpers = credentials_helpers

    def run(self) -> None:
        with self.details.lock:
            image = self.details.tracked_image
            opts = _registry_opts(image, self.credentials_helpers, self.details.latest)

            try:
                repository = self.registry_client.get(opts)
            except RegistryError as e:
                logger.error("failed to get repository tags of %s: %s", image.image.remote, e)
                return

            logger.debug("checking tags of %s (current %s): %s",
                         image.image.repository, image.image.tag, repository.tags)

            for event in self.process_tags(repository.tags):
                logger.info("new tag %s available for %s, submitting event to providers",
                            event.repository.tag, event.repository.name)
                self.providers.submit(event)

    def process_tags(self, tags: List[str]) -> List[Event]:
        """Compute the events for a tag list. Caller holds the details lock."""
        collapsed = collapse(tags)
        events: List[Event] = []
        seen: Set[str] = set()

        def emit(image: TrackedImage, tag: str) -> None:
            if tag in seen:
                return
            seen.add(tag)
            events.append(Event(
                repository=Repository(name=image.image.repository, tag=tag, host=image.image.registry),
                trigger_name=TriggerType.POLL.value,
            ))

        for image in self.details.images:
            primary = image is self.details.tracked_image
            current = self.details.latest if primary else image.image.tag

            best = self._highest_accepted(image, current, self._candidates(image, tags, collapsed, current))
            if best:
                if primary:
                    self.details.latest = best
                emit(image, best)

            for channel, current in sorted(image.semver_pre_release_tags.items()):
                if current == image.image.tag:
                    continue
                in_channel = [t for t in collapsed if pre_release_of(t) == channel]
                best = self._highest_accepted(image, current, in_channel)
                if best:
                    image.semver_pre_release_tags[channel] = best
                    emit(image, best)

        return events

    @staticmethod
    def _candidates(image: TrackedImage, tags: List[str], collapsed: List[str], current: str) -> List[str]:
        """Tags the policy ranks above current, highest first."""
        if image.policy.type == PolicyType.SEMVER:
            return collapsed
        # regexp policies accept any match, only tags ranked above current count
        ranked = image.policy.filter(tags)
        if current in ranked:
            return ranked[:ranked.index(current)]
        return ranked

    @staticmethod
    def _highest_accepted(image: TrackedImage, current: str, candidates: Iterable[str]) -> Optional[str]:
        for candidate in candidates:
            if candidate == current:
                continue
            try:
                if image.policy.should_update(current, candidate):
                    return candidate
            except VersionError as e:
                logger.debug("skipping tag %s for %s (policy %s): %s",
                             candidate, image.image.remote, image.policy.name, e)
        return None


class RepositoryWatcher:
    def __init__(self, providers, registry_client: RegistryClient,
                 credentials_helpers: Optional[CredentialsHelpers] = None,
                 scheduler: Optional[CronScheduler] = None):
        self.providers = providers
        self.registry_client = registry_client
        self.credentials_helpers = credentials_helpers
        self.scheduler = scheduler or CronScheduler()

        # identifier -> watch state
        self._watched: Dict[str, WatchDetails] = {}
        self._lock = threading.Lock()

    @property
    def watched(self) -> Dict[str, WatchDetails]:
        with self._lock:
            return dict(self._watched)

    def get(self, identifier: str) -> Optional[WatchDetails]:
        with self._lock:
            return self._watched.get(identifier)

    def start(self, stop_event: threading.Event) -> None:
        """Start the cron dispatcher and stop it once stop_event is set."""
        self.scheduler.start()

        def _stop_on_event():
            stop_event.wait()
            self.scheduler.stop()

        threading.Thread(target=_stop_on_event, name='tagwatch-cron-stopper', daemon=True).start()

    def watch(self, *images: TrackedImage) -> List[str]:
        """Start watching images; refresh entries that are already watched.

        Returns:
            Identifiers of the entries now watched for these images

        Raises:
            WatchError: after processing every image, if any could not be watched
        """
        errors: List[str] = []
        grouped: Dict[str, List[TrackedImage]] = {}

        for image in images:
            if image.trigger != TriggerType.POLL:
                continue
            try:
                parse_schedule(image.poll_schedule)
            except ScheduleError as e:
                logger.error("invalid cron schedule for %s (schedule %r): %s",
                             image.image.remote, image.poll_schedule, e)
                errors.append(f"{image.image.remote}: {e}")
                continue
            grouped.setdefault(identifier_for(image), []).append(image)

        tracked = []
        for key, group in grouped.items():
            try:
                self._watch(key, group)
            except (RegistryError, ScheduleError, KeyError, ValueError) as e:
                logger.error("failed to watch %s (schedule %r, policy %s): %s",
                             group[0].image.remote, group[0].poll_schedule, group[0].policy.name, e)
                errors.append(f"{group[0].image.remote}: {e}")
                continue
            tracked.append(key)

        if errors:
            raise WatchError(f"encountered errors while adding images: {', '.join(errors)}")
        return tracked

    def _watch(self, key: str, group: List[TrackedImage]) -> None:
        primary = group[0]
        details = self.get(key)
        if details is None:
            self._add_job(key, primary, group)
            return

        with details.lock:
            schedule_changed = details.schedule != primary.poll_schedule
            if schedule_changed:
                self.scheduler.update(key, primary.poll_schedule)
                details.schedule = primary.poll_schedule
            details.tracked_image = primary
            details.images = list(group)
            # restart from the lowest tag the provider reports in use
            details.latest = lowest(primary.tags) or primary.image.tag

        if schedule_changed:
            logger.info("schedule of %s changed to %s", key, primary.poll_schedule)

    def _add_job(self, key: str, primary: TrackedImage, group: List[TrackedImage]) -> None:
        opts = _registry_opts(primary, self.credentials_helpers, primary.image.tag)
        try:
            digest = self.registry_client.digest(opts)
        except RegistryError:
            logger.error("failed to get initial digest of %s (username %r, password %s)",
                         primary.image.remote, opts.username, '*' * len(opts.password))
            raise

        details = WatchDetails(tracked_image=primary, digest=digest,
                               latest=lowest(primary.tags) or primary.image.tag,
                               schedule=primary.poll_schedule, images=list(group))

        if watches_tag_list(primary):
            job = WatchRepositoryTagsJob(self.providers, self.registry_client, details,
                                         self.credentials_helpers)
            kind = 'repository tags'
        else:
            job = WatchTagJob(self.providers, self.registry_client, details, self.credentials_helpers)
            kind = 'tag digest'

        with self._lock:
            if key in self._watched:
                return
            self._watched[key] = details

        try:
            self.scheduler.register(key, primary.poll_schedule, job.run)
        except (ScheduleError, ValueError):
            with self._lock:
                self._watched.pop(key, None)
            raise

        logger.info("new watch %s job added: %s (digest %s, schedule %s)",
                    kind, key, digest, primary.poll_schedule)

        job.run()

    def remove(self, identifier: str) -> None:
        """Stop watching an identifier. No-op when it is not watched."""
        with self._lock:
            details = self._watched.pop(identifier, None)
        if details is None:
            return
        self.scheduler.unregister(identifier)
        logger.info("stopped watching %s (schedule %s)", identifier, details.schedule)

    def unwatch(self, image_name: str) -> None:
        """Stop watching an image given by name, e.g. 'foo/bar:1.0'."""
        ref = parse_image(image_name)
        self.remove(get_image_identifier(ref, keep_tag=False))

    def retain(self, identifiers: Set[str]) -> None:
        """Remove every watch entry whose identifier is not in `identifiers`."""
        with self._lock:
            stale = [key for key in self._watched if key not in identifiers]
        for key in stale:
            logger.info("image %s is not tracked anymore, removing watcher", key)
            self.remove(key)


class PollManager:
    """Re-derives the tracked images from providers on a fixed tick."""

    def __init__(self, providers, watcher: RepositoryWatcher,
                 scan_interval: float = DEFAULT_SCAN_INTERVAL):
        self.providers = providers
        self.watcher = watcher
        self.scan_interval = scan_interval

    def scan(self) -> int:
        """Watch every poll-triggered image and drop watches nothing uses anymore.

        Returns:
            Number of poll-triggered images found
        """
        images = [i for i in self.providers.tracked_images() if i.trigger == TriggerType.POLL]

        try:
            self.watcher.watch(*images)
        except WatchError as e:
            logger.error("failed to start watching some images: %s", e)

        self.watcher.retain({identifier_for(i) for i in images})
        return len(images)

    def start(self, stop_event: threading.Event) -> None:
        """Scan until stop_event is set."""
        logger.info("polling trigger configured, scanning every %s seconds", self.scan_interval)
        self.watcher.start(stop_event)

        while True:
            try:
                tracked = self.scan()
                logger.debug("scan complete, %d images tracked", tracked)
            except Exception as e:
                logger.error("scan failed: %s", e)

            if stop_event.wait(self.scan_interval):
                break

        logger.info("polling trigger stopped")
