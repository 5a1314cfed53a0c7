"""Shared value types passed between triggers, jobs and providers."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List

from image_ref import ImageReference
from policy import NonePolicy, Policy


class TriggerType(enum.Enum):
    DEFAULT = 'default'
    POLL = 'poll'
    APPROVAL = 'approval'

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Credentials:
    username: str = ''
    password: str = ''

    def __repr__(self):
        return f"Credentials(username={self.username!r}, password={'*' * len(self.password)!r})"


@dataclass(frozen=True)
class Repository:
    name: str
    tag: str
    digest: str = ''
    host: str = ''


@dataclass(frozen=True)
class Event:
    """An update notification created by a job and handed to providers."""
    repository: Repository
    trigger_name: str = TriggerType.POLL.value
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc),
                                 compare=False)

    def to_dict(self) -> Dict[str, str]:
        return {
            'name': self.repository.name,
            'tag': self.repository.tag,
            'digest': self.repository.digest,
            'host': self.repository.host,
            'trigger': self.trigger_name,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'Event':
        created_at = data.get('created_at')
        return cls(
            repository=Repository(
                name=data['name'],
                tag=data.get('tag', ''),
                digest=data.get('digest', ''),
                host=data.get('host', ''),
            ),
            trigger_name=data.get('trigger', TriggerType.POLL.value),
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc),
        )


@dataclass
class TrackedImage:
    """One (resource, container) the controller watches for updates."""
    image: ImageReference
    trigger: TriggerType = TriggerType.POLL
    poll_schedule: str = ''
    provider: str = ''
    namespace: str = ''
    policy: Policy = field(default_factory=NonePolicy)
    secrets: List[str] = field(default_factory=list)
    # pre-release channel -> last seen tag, e.g. {'dev': '1.2.0-dev'}
    semver_pre_release_tags: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def __str__(self):
        return (f"namespace:{self.namespace},image:{self.image.repository}:{self.image.tag},"
                f"provider:{self.provider},trigger:{self.trigger},sched:{self.poll_schedule},"
                f"policy:{self.policy.name},semver:{self.semver_pre_release_tags}")
