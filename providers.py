"""Providers own tracked images and apply the updates jobs discover.

Providers fans every event out to all registered providers. The bundled
ConfigProvider tracks the images listed in the configuration file and
records applied updates in a JSON state file.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from approvals import (ApprovalManager, ApprovalNotFoundError, DEFAULT_DEADLINE_HOURS,
                       approval_identifier, is_approved)
from events import Event, TrackedImage, TriggerType
from image_ref import ImageReference, InvalidImageReferenceError, parse_image
from notify import EVENT_APPROVAL_REQUIRED, EVENT_UPDATE_APPLIED, send_notifications
from policy import Policy, PolicyType, get_policy
from state_file import file_lock, read_json, write_json
from version_utils import VersionError, pre_release_of

logger = logging.getLogger(__name__)

DEFAULT_POLL_SCHEDULE = '@every 1m'
DEFAULT_NAMESPACE = 'default'


class Provider(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def submit(self, event: Event) -> None:
        ...

    @abstractmethod
    def tracked_images(self) -> List[TrackedImage]:
        ...

    def stop(self) -> None:
        pass


class Providers:
    """Fan-out over every registered provider."""

    def __init__(self, providers: Iterable[Provider] = (),
                 approval_manager: Optional[ApprovalManager] = None):
        self._providers: 'OrderedDict[str, Provider]' = OrderedDict()
        self._lock = threading.Lock()
        for provider in providers:
            self.add(provider)

        if approval_manager is not None:
            approval_manager.subscribe_approved(self._on_approved)

    def add(self, provider: Provider) -> None:
        with self._lock:
            self._providers[provider.name] = provider
        logger.info("provider %s registered", provider.name)

    def get(self, name: str) -> Optional[Provider]:
        with self._lock:
            return self._providers.get(name)

    def list(self) -> List[str]:
        with self._lock:
            return list(self._providers)

    def _all(self) -> List[Provider]:
        with self._lock:
            return list(self._providers.values())

    def submit(self, event: Event) -> None:
        for provider in self._all():
            try:
                provider.submit(event)
            except Exception as e:
                logger.error("provider %s failed to process event for %s:%s: %s",
                             provider.name, event.repository.name, event.repository.tag, e)

    def tracked_images(self) -> List[TrackedImage]:
        images: List[TrackedImage] = []
        for provider in self._all():
            try:
                images.extend(provider.tracked_images())
            except Exception as e:
                logger.error("failed to get tracked images from provider %s: %s", provider.name, e)
        return images

    def stop(self) -> None:
        for provider in self._all():
            provider.stop()

    def _on_approved(self, approval) -> None:
        if approval.event is None:
            logger.warning("approval %s has no event attached, nothing to submit", approval.identifier)
            return

        event = Event(repository=approval.event.repository, trigger_name=TriggerType.APPROVAL.value)
        provider = self.get(approval.provider)
        if provider is None:
            logger.info("provider %s of approval %s not found, submitting to all providers",
                        approval.provider, approval.identifier)
            self.submit(event)
            return

        logger.info("approval %s approved, submitting event to provider %s",
                    approval.identifier, provider.name)
        try:
            provider.submit(event)
        except Exception as e:
            logger.error("provider %s failed to process approved event for %s: %s",
                         provider.name, approval.identifier, e)


# ---------------------------------------------------------------------------
# Config file provider
# ---------------------------------------------------------------------------

@dataclass
class ImageState:
    tag: str
    digest: str
    last_updated: str
    pre_release_tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class _ImageEntry:
    config: Dict[str, Any]
    image: ImageReference
    name: str
    namespace: str
    policy: Policy

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def votes_required(self) -> int:
        return int(self.config.get('approvals', 0))


class ConfigProvider(Provider):
    """Tracks the images of the configuration file.

    The tag an image currently runs is the last update recorded in the state
    file, or the tag from the configuration when nothing was applied yet.
    """

    def __init__(self, config: Dict[str, Any], state_file: str,
                 approval_manager: Optional[ApprovalManager] = None,
                 dry_run: bool = False, stop_event: Optional[threading.Event] = None):
        """
        Args:
            config: Validated configuration
            state_file: Path of the JSON file recording applied updates
            approval_manager: Gates images that require approvals
            dry_run: If True, only log what would be recorded
            stop_event: Cancels notification retries on shutdown
        """
        self.config = config
        self.state_file = Path(state_file)
        self.approval_manager = approval_manager
        self.dry_run = dry_run
        self.stop_event = stop_event
        self.default_schedule = config.get('poll_schedule') or DEFAULT_POLL_SCHEDULE
        self.notifications = config.get('notifications')
        self._lock = threading.RLock()
        self._entries = self._load_entries()

        if approval_manager is not None:
            approval_manager.subscribe(self._on_approval_requested)

    @property
    def name(self) -> str:
        return 'config'

    def _load_entries(self) -> List[_ImageEntry]:
        entries = []
        seen: Dict[str, str] = {}
        for image_config in self.config.get('images', []):
            try:
                ref = parse_image(image_config['image'])
            except InvalidImageReferenceError as e:
                logger.error("skipping image %r: %s", image_config.get('image'), e)
                continue

            policy = get_policy(image_config.get('policy', 'never'),
                                image_config.get('match_tag', False),
                                image_config.get('match_pre_release', True))
            if policy.type == PolicyType.NONE:
                logger.debug("image %s has no update policy, not tracking", ref.remote)
                continue

            entry = _ImageEntry(
                config=image_config,
                image=ref,
                name=image_config.get('name') or ref.short_name.rsplit('/', 1)[-1],
                namespace=image_config.get('namespace') or DEFAULT_NAMESPACE,
                policy=policy,
            )
            # state records and approval identifiers are keyed by namespace/name
            if entry.key in seen:
                logger.error("skipping image %s: %s is already used by %s, set a distinct "
                             "'name' or 'namespace'", ref.remote, entry.key, seen[entry.key])
                continue
            seen[entry.key] = ref.remote
            entries.append(entry)
        return entries

    def _load_state(self) -> Dict[str, ImageState]:
        with file_lock(self.state_file):
            data = read_json(self.state_file, default={}) or {}

        state = {}
        for key, image_data in data.items():
            try:
                state[key] = ImageState(**image_data)
            except (TypeError, KeyError) as e:
                logger.warning("invalid state data for %s: %s", key, e)
        return state

    def _save_state(self, state: Dict[str, ImageState]) -> None:
        if self.dry_run:
            logger.info("[DRY RUN] would save state to %s", self.state_file)
            return
        with file_lock(self.state_file):
            write_json(self.state_file, {key: asdict(s) for key, s in state.items()})

    def tracked_images(self) -> List[TrackedImage]:
        state = self._load_state()
        images = []
        for entry in self._entries:
            applied = state.get(entry.key)
            ref = entry.image
            channels = dict(entry.config.get('pre_release_tags') or {})
            if applied is not None:
                if not ref.is_digest:
                    ref = ref.with_tag(applied.tag)
                channels.update(applied.pre_release_tags)

            images.append(TrackedImage(
                image=ref,
                trigger=TriggerType(entry.config.get('trigger', TriggerType.POLL.value)),
                poll_schedule=entry.config.get('schedule') or self.default_schedule,
                provider=self.name,
                namespace=entry.namespace,
                policy=entry.policy,
                secrets=list(entry.config.get('secrets') or []),
                semver_pre_release_tags=channels,
                tags=[ref.tag],
            ))
        return images

    def submit(self, event: Event) -> None:
        for entry in self._entries:
            if entry.image.repository != event.repository.name:
                continue
            self._process(entry, event)

    def _process(self, entry: _ImageEntry, event: Event) -> None:
        new_tag = event.repository.tag

        with self._lock:
            state = self._load_state()
            applied = state.get(entry.key)
            current_tag = applied.tag if applied else entry.image.tag
            current_digest = applied.digest if applied else ''
            channels = dict(entry.config.get('pre_release_tags') or {})
            if applied is not None:
                channels.update(applied.pre_release_tags)

            # Tags of a tracked pre-release channel advance that channel only
            channel = pre_release_of(new_tag)
            if channel and channel != pre_release_of(current_tag) and channel in channels:
                current = channels[channel]
            else:
                channel = None
                current = current_tag

            if new_tag == current and (not event.repository.digest or event.repository.digest == current_digest):
                logger.debug("%s already at %s", entry.key, new_tag)
                return

            try:
                should_update = entry.policy.should_update(current, new_tag)
            except VersionError as e:
                logger.debug("ignoring tag %s for %s (policy %s): %s",
                             new_tag, entry.key, entry.policy.name, e)
                return
            if should_update and entry.policy.type == PolicyType.REGEXP:
                # a regexp accepts any match, the new tag must also rank above current
                should_update = entry.policy.filter([current, new_tag])[0] == new_tag
            if not should_update:
                logger.debug("policy %s rejected %s -> %s for %s",
                             entry.policy.name, current, new_tag, entry.key)
                return

            identifier = approval_identifier(entry.namespace, entry.name, new_tag)
            if entry.votes_required > 0:
                if self.approval_manager is None:
                    logger.warning("%s requires approvals but no approval manager is configured",
                                   entry.key)
                    return
                deadline = int(entry.config.get('approval_deadline', DEFAULT_DEADLINE_HOURS))
                if not is_approved(self.approval_manager, event, self.name, identifier,
                                   current, entry.votes_required, deadline):
                    logger.info("update %s -> %s for %s is waiting for approval",
                                current, new_tag, entry.key)
                    return

            now = datetime.now(timezone.utc).isoformat()
            if channel is None:
                state[entry.key] = ImageState(tag=new_tag, digest=event.repository.digest,
                                              last_updated=now, pre_release_tags=channels)
            else:
                channels[channel] = new_tag
                state[entry.key] = ImageState(tag=current_tag, digest=current_digest,
                                              last_updated=now, pre_release_tags=channels)
            self._save_state(state)

        logger.info("%s updated %s -> %s (trigger %s)", entry.key, current, new_tag, event.trigger_name)

        send_notifications(self.notifications, entry.image.with_tag(new_tag).name, current, new_tag,
                           EVENT_UPDATE_APPLIED, event.repository.digest,
                           stop_event=self.stop_event)

        if entry.votes_required > 0 and not self.dry_run:
            try:
                self.approval_manager.archive(identifier)
            except ApprovalNotFoundError:
                logger.debug("approval %s already archived", identifier)

    def _on_approval_requested(self, approval) -> None:
        if approval.provider != self.name:
            return
        send_notifications(self.notifications, approval.identifier, approval.current_version,
                           approval.new_version, EVENT_APPROVAL_REQUIRED, approval.digest,
                           votes_required=approval.votes_required, stop_event=self.stop_event)
