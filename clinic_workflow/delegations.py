"""
Delegation Registry Module

Time-bounded substitution of one approver for another, optionally scoped to
specific workflow codes. The approver resolver consults the registry for the
base approver only; a delegate's own delegation is never followed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import time
import uuid

from .async_storage import AsyncStorageInterface
from .directory import DirectoryInterface
from .exceptions import DelegationNotFoundError, DelegationScopeError
from .logging_config import log_action
from .storage import StorageRecord, parse_datetime, serialize_datetime, utc_now
from .tenancy import get_current_tenant

logger = logging.getLogger("clinic_workflow.delegations")


@dataclass
class ApprovalDelegation(StorageRecord):
    """Delegation of approval authority for a validity window"""
    delegator_id: str
    delegate_id: str
    starts_at: datetime
    ends_at: datetime
    workflow_codes: List[str] = field(default_factory=list)  # empty = every workflow
    reason: str = ""
    created_by: Optional[str] = None
    is_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None

    def is_active_at(self, at: datetime) -> bool:
        return not self.is_cancelled and self.starts_at <= at < self.ends_at

    def covers(self, workflow_code: str) -> bool:
        return not self.workflow_codes or workflow_code in self.workflow_codes

    def overlaps(self, other: 'ApprovalDelegation') -> bool:
        if self.starts_at >= other.ends_at or other.starts_at >= self.ends_at:
            return False
        if not self.workflow_codes or not other.workflow_codes:
            return True
        return bool(set(self.workflow_codes) & set(other.workflow_codes))

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'delegator_id': self.delegator_id,
            'delegate_id': self.delegate_id,
            'starts_at': serialize_datetime(self.starts_at),
            'ends_at': serialize_datetime(self.ends_at),
            'workflow_codes': list(self.workflow_codes),
            'reason': self.reason,
            'created_by': self.created_by,
            'is_cancelled': self.is_cancelled,
            'cancelled_at': serialize_datetime(self.cancelled_at),
            'cancelled_by': self.cancelled_by,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalDelegation':
        return cls(
            **cls.base_fields(data),
            delegator_id=data['delegator_id'],
            delegate_id=data['delegate_id'],
            starts_at=parse_datetime(data['starts_at']),
            ends_at=parse_datetime(data['ends_at']),
            workflow_codes=data.get('workflow_codes', []),
            reason=data.get('reason', ''),
            created_by=data.get('created_by'),
            is_cancelled=data.get('is_cancelled', False),
            cancelled_at=parse_datetime(data.get('cancelled_at')),
            cancelled_by=data.get('cancelled_by'),
        )


class DelegationRegistry:
    """Create, cancel and look up approval delegations"""

    TABLE = "approval_delegations"

    def __init__(self, storage: AsyncStorageInterface, directory: DirectoryInterface,
                 cache_ttl_seconds: float = 30,
                 clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.directory = directory
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock
        self._cache: Dict[Tuple[Optional[str], str], Tuple[float, List[ApprovalDelegation]]] = {}

    async def create_delegation(self, delegator_id: str, delegate_id: str,
                                starts_at: datetime, ends_at: datetime,
                                workflow_codes: Optional[List[str]] = None,
                                reason: str = "",
                                created_by: Optional[str] = None) -> ApprovalDelegation:
        """
        Register a delegation.

        Raises:
            DelegationScopeError: self-delegation, empty or past window, unknown
                or inactive employees, or an overlapping delegation for the
                same delegator and workflow scope
        """
        if delegator_id == delegate_id:
            raise DelegationScopeError("Cannot delegate to yourself")
        if ends_at <= starts_at:
            raise DelegationScopeError("Delegation must end after it starts")
        now = self.clock()
        if ends_at <= now:
            raise DelegationScopeError("Delegation window is already over")

        delegator = await self.directory.get_employee(delegator_id)
        if not delegator:
            raise DelegationScopeError(f"Unknown delegator {delegator_id}")
        delegate = await self.directory.get_employee(delegate_id)
        if not delegate or not delegate.is_active:
            raise DelegationScopeError(f"Delegate {delegate_id} is not an active employee")

        delegation = ApprovalDelegation(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            starts_at=starts_at,
            ends_at=ends_at,
            workflow_codes=sorted(set(workflow_codes or [])),
            reason=reason,
            created_by=created_by or delegator_id,
        )

        for existing in await self._load_for_delegator(delegator_id):
            if not existing.is_cancelled and existing.ends_at > now and existing.overlaps(delegation):
                raise DelegationScopeError(
                    f"Delegation {existing.id} already covers this period",
                    {"conflicting_delegation_id": existing.id},
                )

        await self.storage.save(self.TABLE, delegation.id, delegation.to_dict())
        self._cache.clear()

        log_action(logger, "info", "Delegation created",
                   user_id=delegation.created_by, action="create_delegation",
                   resource=delegation.id,
                   extra={"delegator_id": delegator_id, "delegate_id": delegate_id,
                          "workflow_codes": delegation.workflow_codes})
        return delegation

    async def cancel_delegation(self, delegation_id: str,
                                cancelled_by: Optional[str] = None) -> ApprovalDelegation:
        """Cancel a delegation; cancelling twice is a no-op"""
        data = await self.storage.load(self.TABLE, delegation_id)
        if not data:
            raise DelegationNotFoundError(delegation_id)
        delegation = ApprovalDelegation.from_dict(data)

        if cancelled_by and cancelled_by not in (delegation.delegator_id, delegation.created_by):
            raise DelegationScopeError(
                f"{cancelled_by} may not cancel delegation {delegation_id}"
            )
        if delegation.is_cancelled:
            return delegation

        now = self.clock()
        delegation.is_cancelled = True
        delegation.cancelled_at = now
        delegation.cancelled_by = cancelled_by
        delegation.updated_at = now
        await self.storage.save(self.TABLE, delegation.id, delegation.to_dict())
        self._cache.clear()

        log_action(logger, "info", "Delegation cancelled",
                   user_id=cancelled_by, action="cancel_delegation", resource=delegation.id)
        return delegation

    async def get_delegation(self, delegation_id: str) -> Optional[ApprovalDelegation]:
        data = await self.storage.load(self.TABLE, delegation_id)
        return ApprovalDelegation.from_dict(data) if data else None

    async def get_active_delegations(self, employee_id: Optional[str] = None,
                                     at: Optional[datetime] = None) -> List[ApprovalDelegation]:
        """Delegations in force now, given or received by employee_id when set"""
        at = at or self.clock()
        records = await self.storage.find(self.TABLE, {'is_cancelled': False})
        delegations = [ApprovalDelegation.from_dict(r) for r in records]
        active = [
            d for d in delegations
            if d.is_active_at(at) and (
                employee_id is None or employee_id in (d.delegator_id, d.delegate_id)
            )
        ]
        active.sort(key=lambda d: (d.starts_at, d.id))
        return active

    async def find_active_delegation(self, delegator_id: str, workflow_code: str,
                                     at: Optional[datetime] = None) -> Optional[ApprovalDelegation]:
        """
        The delegation substituting delegator_id for workflow_code at the given time.

        Cached lists only short-cut a hit, which is re-read so a cancellation
        is never missed. Without a usable cached entry storage is queried, so a
        delegation created through another engine is seen at once.
        """
        at = at or self.clock()
        cached = self._cached_for_delegator(delegator_id)
        if cached is not None:
            for delegation in self._in_scope(cached, workflow_code, at):
                current = await self.get_delegation(delegation.id)
                if current and current.is_active_at(at):
                    return current

        fresh = await self._refresh_delegator(delegator_id)
        return next(iter(self._in_scope(fresh, workflow_code, at)), None)

    @staticmethod
    def _in_scope(delegations: List[ApprovalDelegation], workflow_code: str,
                  at: datetime) -> List[ApprovalDelegation]:
        return [d for d in delegations if d.is_active_at(at) and d.covers(workflow_code)]

    async def _load_for_delegator(self, delegator_id: str) -> List[ApprovalDelegation]:
        records = await self.storage.find(self.TABLE, {'delegator_id': delegator_id})
        return [ApprovalDelegation.from_dict(r) for r in records]

    def _cached_for_delegator(self, delegator_id: str) -> Optional[List[ApprovalDelegation]]:
        cached = self._cache.get((get_current_tenant(), delegator_id))
        if cached and cached[0] > time.monotonic():
            return cached[1]
        return None

    async def _refresh_delegator(self, delegator_id: str) -> List[ApprovalDelegation]:
        delegations = [d for d in await self._load_for_delegator(delegator_id) if not d.is_cancelled]
        key = (get_current_tenant(), delegator_id)
        if delegations and self.cache_ttl_seconds > 0:
            self._cache[key] = (time.monotonic() + self.cache_ttl_seconds, delegations)
        else:
            self._cache.pop(key, None)
        return delegations
