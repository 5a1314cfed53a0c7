"""Approval workflow.

An update that needs approvals is not applied when it is first seen. Instead
a pending Approval is stored under the identifier 'namespace/name:version'
and the update is deferred. Voters approve it (each voter counts once) or
reject it. Once enough votes arrive, approved-listeners are notified so the
owning provider can apply the update; the provider then archives the
approval, which frees its identifier. Approvals past their deadline are
deleted by the expiry service.
"""

import copy
import enum
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from events import Event
from state_file import file_lock, read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_HOURS = 24
DEFAULT_EXPIRY_INTERVAL = 3600  # seconds


class ApprovalStatus(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ApprovalError(Exception):
    """Base class for approval workflow errors."""


class ApprovalNotFoundError(ApprovalError):
    def __init__(self, identifier: str):
        super().__init__(f"approval '{identifier}' not found")
        self.identifier = identifier


class ApprovalAlreadyExistsError(ApprovalError):
    def __init__(self, identifier: str):
        super().__init__(f"approval '{identifier}' already exists")
        self.identifier = identifier


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_deadline() -> datetime:
    return _now() + timedelta(hours=DEFAULT_DEADLINE_HOURS)


def approval_identifier(namespace: str, name: str, version: str) -> str:
    return f"{namespace}/{name}:{version}"


@dataclass
class Approval:
    identifier: str
    provider: str = ''
    event: Optional[Event] = None
    message: str = ''
    current_version: str = ''
    new_version: str = ''
    digest: str = ''
    votes_required: int = 1
    votes_received: int = 0
    voters: Set[str] = field(default_factory=set)
    rejected: bool = False
    archived: bool = False
    deadline: datetime = field(default_factory=_default_deadline)
    id: str = ''
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def status(self) -> ApprovalStatus:
        if self.rejected:
            return ApprovalStatus.REJECTED
        if self.votes_received >= self.votes_required:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.PENDING

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _now()) > self.deadline

    def delta(self) -> str:
        return f"{self.current_version} -> {self.new_version}"

    def add_voter(self, voter: str) -> bool:
        """Record a vote. Returns False when the voter already voted."""
        if voter in self.voters:
            return False
        self.voters.add(voter)
        self.votes_received += 1
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'identifier': self.identifier,
            'provider': self.provider,
            'event': self.event.to_dict() if self.event else None,
            'message': self.message,
            'current_version': self.current_version,
            'new_version': self.new_version,
            'digest': self.digest,
            'votes_required': self.votes_required,
            'votes_received': self.votes_received,
            'voters': sorted(self.voters),
            'rejected': self.rejected,
            'archived': self.archived,
            'deadline': self.deadline.isoformat(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Approval':
        def _dt(key):
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data.get('id', ''),
            identifier=data['identifier'],
            provider=data.get('provider', ''),
            event=Event.from_dict(data['event']) if data.get('event') else None,
            message=data.get('message', ''),
            current_version=data.get('current_version', ''),
            new_version=data.get('new_version', ''),
            digest=data.get('digest', ''),
            votes_required=data.get('votes_required', 1),
            votes_received=data.get('votes_received', 0),
            voters=set(data.get('voters') or []),
            rejected=data.get('rejected', False),
            archived=data.get('archived', False),
            deadline=_dt('deadline') or _default_deadline(),
            created_at=_dt('created_at'),
            updated_at=_dt('updated_at'),
        )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class ApprovalStore(ABC):
    """Persistence for approvals.

    Approvals are keyed by id. At most one non-archived approval exists per
    identifier; archived ones are kept for history.
    """

    @abstractmethod
    def create(self, approval: Approval) -> Approval:
        """Raises ApprovalAlreadyExistsError if the identifier is in use."""

    @abstractmethod
    def get(self, identifier: str) -> Approval:
        """Raises ApprovalNotFoundError if there is no active approval."""

    @abstractmethod
    def list(self, archived: bool = False) -> List[Approval]:
        ...

    @abstractmethod
    def save(self, approval: Approval) -> None:
        ...

    @abstractmethod
    def delete(self, approval_id: str) -> None:
        ...

    @abstractmethod
    def modify(self, identifier: str, fn: Callable[[Approval], None]) -> Approval:
        """Apply fn to the active approval and persist it as one transaction.

        Raises:
            ApprovalNotFoundError: if there is no active approval
        """


class _DictApprovalStore(ApprovalStore):
    """Shared logic for stores that load and save the whole id -> approval map."""

    @abstractmethod
    def _locked(self):
        ...

    @abstractmethod
    def _load(self) -> Dict[str, Approval]:
        ...

    @abstractmethod
    def _save(self, approvals: Dict[str, Approval]) -> None:
        ...

    @staticmethod
    def _active(approvals: Dict[str, Approval], identifier: str) -> Optional[Approval]:
        for approval in approvals.values():
            if approval.identifier == identifier and not approval.archived:
                return approval
        return None

    def create(self, approval: Approval) -> Approval:
        with self._locked():
            approvals = self._load()
            if self._active(approvals, approval.identifier) is not None:
                raise ApprovalAlreadyExistsError(approval.identifier)
            approvals[approval.id] = copy.deepcopy(approval)
            self._save(approvals)
        return approval

    def get(self, identifier: str) -> Approval:
        with self._locked():
            found = self._active(self._load(), identifier)
        if found is None:
            raise ApprovalNotFoundError(identifier)
        return copy.deepcopy(found)

    def list(self, archived: bool = False) -> List[Approval]:
        with self._locked():
            approvals = self._load()
        selected = [a for a in approvals.values() if a.archived == archived]
        selected.sort(key=lambda a: (a.created_at or datetime.min.replace(tzinfo=timezone.utc), a.id))
        return [copy.deepcopy(a) for a in selected]

    def save(self, approval: Approval) -> None:
        with self._locked():
            approvals = self._load()
            approvals[approval.id] = copy.deepcopy(approval)
            self._save(approvals)

    def delete(self, approval_id: str) -> None:
        with self._locked():
            approvals = self._load()
            if approvals.pop(approval_id, None) is not None:
                self._save(approvals)

    def modify(self, identifier: str, fn: Callable[[Approval], None]) -> Approval:
        with self._locked():
            approvals = self._load()
            approval = self._active(approvals, identifier)
            if approval is None:
                raise ApprovalNotFoundError(identifier)
            fn(approval)
            self._save(approvals)
            return copy.deepcopy(approval)


class MemoryApprovalStore(_DictApprovalStore):
    def __init__(self):
        self._approvals: Dict[str, Approval] = {}
        self._lock = threading.RLock()

    def _locked(self):
        return self._lock

    def _load(self) -> Dict[str, Approval]:
        return copy.deepcopy(self._approvals)

    def _save(self, approvals: Dict[str, Approval]) -> None:
        self._approvals = approvals


class JsonApprovalStore(_DictApprovalStore):
    """Approvals kept in a JSON file, safe to share between processes."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self):
        with self._lock, file_lock(self.path):
            yield

    def _load(self) -> Dict[str, Approval]:
        data = read_json(self.path, default={}) or {}
        approvals = {}
        for approval_id, item in data.items():
            try:
                approvals[approval_id] = Approval.from_dict(item)
            except (TypeError, KeyError, ValueError) as e:
                logger.warning("invalid approval data for %s: %s", approval_id, e)
        return approvals

    def _save(self, approvals: Dict[str, Approval]) -> None:
        write_json(self.path, {approval_id: a.to_dict() for approval_id, a in approvals.items()})


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

Listener = Callable[[Approval], None]


class ApprovalManager:
    def __init__(self, store: Optional[ApprovalStore] = None):
        self.store = store or MemoryApprovalStore()
        self._listeners: List[Listener] = []
        self._approved_listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Listener) -> None:
        """Call `callback` for every newly created approval request."""
        with self._lock:
            self._listeners.append(callback)

    def subscribe_approved(self, callback: Listener) -> None:
        """Call `callback` whenever an approval reaches the approved status."""
        with self._lock:
            self._approved_listeners.append(callback)

    def unsubscribe(self, callback: Listener) -> None:
        with self._lock:
            for listeners in (self._listeners, self._approved_listeners):
                if callback in listeners:
                    listeners.remove(callback)

    def _publish(self, listeners: List[Listener], approval: Approval) -> None:
        with self._lock:
            listeners = list(listeners)
        for callback in listeners:
            try:
                callback(copy.deepcopy(approval))
            except Exception as e:
                logger.error("approval listener failed for %s: %s", approval.identifier, e)

    def create(self, approval: Approval) -> Approval:
        """Store a new approval request.

        Raises:
            ApprovalAlreadyExistsError: if an active approval has the same identifier
        """
        now = _now()
        approval.id = approval.id or str(uuid.uuid4())
        approval.created_at = now
        approval.updated_at = now

        self.store.create(approval)
        logger.info("approval %s created (%s, %d votes required)",
                    approval.identifier, approval.delta(), approval.votes_required)

        self._publish(self._listeners, approval)
        return approval

    def get(self, identifier: str) -> Approval:
        return self.store.get(identifier)

    def list(self, archived: bool = False) -> List[Approval]:
        return self.store.list(archived)

    def update(self, approval: Approval) -> Approval:
        """Persist changes to an approval; publishes if it is now approved."""
        try:
            previous = self.store.get(approval.identifier).status()
        except ApprovalNotFoundError:
            previous = None

        approval.updated_at = _now()
        self.store.save(approval)

        if approval.status() == ApprovalStatus.APPROVED and previous != ApprovalStatus.APPROVED:
            self._publish(self._approved_listeners, approval)
        return approval

    def approve(self, identifier: str, voter: str) -> Approval:
        """Add a vote. A voter is only counted once.

        Raises:
            ApprovalNotFoundError: if there is no active approval
            ApprovalError: if the approval was rejected
        """
        became_approved = False

        def _vote(approval: Approval):
            nonlocal became_approved
            if approval.rejected:
                raise ApprovalError(f"approval '{identifier}' was rejected")
            was_approved = approval.status() == ApprovalStatus.APPROVED
            if approval.add_voter(voter):
                approval.updated_at = _now()
            became_approved = not was_approved and approval.status() == ApprovalStatus.APPROVED

        approval = self.store.modify(identifier, _vote)
        logger.info("approval %s voted by %s (%d/%d)",
                    identifier, voter, approval.votes_received, approval.votes_required)

        if became_approved:
            self._publish(self._approved_listeners, approval)
        return approval

    def reject(self, identifier: str) -> Approval:
        def _reject(approval: Approval):
            approval.rejected = True
            approval.updated_at = _now()

        approval = self.store.modify(identifier, _reject)
        logger.info("approval %s rejected", identifier)
        return approval

    def archive(self, identifier: str) -> Approval:
        def _archive(approval: Approval):
            approval.archived = True
            approval.updated_at = _now()

        approval = self.store.modify(identifier, _archive)
        logger.info("approval %s archived", identifier)
        return approval

    def delete(self, approval: Approval) -> None:
        self.store.delete(approval.id)

    def expire_entries(self, now: Optional[datetime] = None) -> int:
        """Delete every active approval past its deadline. Returns the count."""
        expired = [a for a in self.store.list() if a.expired(now)]
        for approval in expired:
            self.store.delete(approval.id)
            logger.info("approval %s expired (deadline %s), deleted",
                        approval.identifier, approval.deadline.isoformat())
        return len(expired)

    def start_expiry_service(self, stop_event: threading.Event,
                             interval: float = DEFAULT_EXPIRY_INTERVAL) -> threading.Thread:
        """Expire approvals now and then every `interval` seconds until stop_event is set."""
        def _loop():
            while True:
                try:
                    self.expire_entries()
                except Exception as e:
                    logger.error("failed to expire approvals: %s", e)
                if stop_event.wait(interval):
                    break

        thread = threading.Thread(target=_loop, name='tagwatch-approval-expiry', daemon=True)
        thread.start()
        return thread


def is_approved(manager: ApprovalManager, event: Event, provider: str, identifier: str,
                current_version: str, votes_required: int,
                deadline_hours: int = DEFAULT_DEADLINE_HOURS, message: str = '') -> bool:
    """Decide whether an update may be applied now.

    With no votes required the update proceeds. Otherwise an existing approval
    decides; when none exists a pending one is created and the update waits.
    """
    if votes_required <= 0:
        return True

    try:
        existing = manager.get(identifier)
    except ApprovalNotFoundError:
        approval = Approval(
            identifier=identifier,
            provider=provider,
            event=event,
            message=message or f"New image available for {identifier}",
            current_version=current_version,
            new_version=event.repository.tag,
            digest=event.repository.digest,
            votes_required=votes_required,
            deadline=_now() + timedelta(hours=deadline_hours),
        )
        try:
            manager.create(approval)
        except ApprovalAlreadyExistsError:
            logger.debug("approval %s created concurrently", identifier)
        return False

    return existing.status() == ApprovalStatus.APPROVED
