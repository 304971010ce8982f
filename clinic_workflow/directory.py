"""
Employee Directory Module

Identity, role membership and department hierarchy lookups consumed by the
approver resolver. The engine only reads the directory; the seeding helpers
exist for administration scripts and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord, utc_now


@dataclass
class Employee(StorageRecord):
    """Staff member who can initiate or approve workflows"""
    name: str
    email: str = ""
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'name': self.name,
            'email': self.email,
            'department_id': self.department_id,
            'manager_id': self.manager_id,
            'roles': list(self.roles),
            'is_active': self.is_active,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Employee':
        return cls(
            **cls.base_fields(data),
            name=data['name'],
            email=data.get('email', ''),
            department_id=data.get('department_id'),
            manager_id=data.get('manager_id'),
            roles=data.get('roles', []),
            is_active=data.get('is_active', True),
        )


@dataclass
class Department(StorageRecord):
    """Organisational unit; departments form a tree through parent_id"""
    name: str
    head_id: Optional[str] = None
    parent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'name': self.name,
            'head_id': self.head_id,
            'parent_id': self.parent_id,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Department':
        return cls(
            **cls.base_fields(data),
            name=data['name'],
            head_id=data.get('head_id'),
            parent_id=data.get('parent_id'),
        )


class DirectoryInterface(ABC):
    """Read-only identity lookups used for approver resolution"""

    @abstractmethod
    async def get_employee(self, employee_id: str) -> Optional[Employee]:
        pass

    @abstractmethod
    async def get_department(self, department_id: str) -> Optional[Department]:
        pass

    @abstractmethod
    async def get_role_members(self, role_id: str) -> List[Employee]:
        """Active employees holding the role"""
        pass

    @abstractmethod
    async def get_department_members(self, department_id: str) -> List[Employee]:
        """Active employees of the department"""
        pass


class StorageDirectory(DirectoryInterface):
    """Directory backed by the engine's async storage"""

    EMPLOYEES = "directory_employees"
    DEPARTMENTS = "directory_departments"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def add_employee(self, employee_id: str, name: str, *, email: str = "",
                           department_id: Optional[str] = None,
                           manager_id: Optional[str] = None,
                           roles: Optional[List[str]] = None,
                           is_active: bool = True) -> Employee:
        now = utc_now()
        employee = Employee(
            id=employee_id,
            created_at=now,
            updated_at=now,
            name=name,
            email=email,
            department_id=department_id,
            manager_id=manager_id,
            roles=list(roles or []),
            is_active=is_active,
        )
        await self.storage.save(self.EMPLOYEES, employee.id, employee.to_dict())
        return employee

    async def add_department(self, department_id: str, name: str, *,
                             head_id: Optional[str] = None,
                             parent_id: Optional[str] = None) -> Department:
        now = utc_now()
        department = Department(
            id=department_id,
            created_at=now,
            updated_at=now,
            name=name,
            head_id=head_id,
            parent_id=parent_id,
        )
        await self.storage.save(self.DEPARTMENTS, department.id, department.to_dict())
        return department

    async def deactivate_employee(self, employee_id: str) -> bool:
        employee = await self.get_employee(employee_id)
        if not employee:
            return False
        employee.is_active = False
        employee.updated_at = utc_now()
        await self.storage.save(self.EMPLOYEES, employee.id, employee.to_dict())
        return True

    async def get_employee(self, employee_id: str) -> Optional[Employee]:
        data = await self.storage.load(self.EMPLOYEES, employee_id)
        return Employee.from_dict(data) if data else None

    async def get_department(self, department_id: str) -> Optional[Department]:
        data = await self.storage.load(self.DEPARTMENTS, department_id)
        return Department.from_dict(data) if data else None

    async def get_role_members(self, role_id: str) -> List[Employee]:
        records = await self.storage.find(self.EMPLOYEES, {'is_active': True})
        members = [Employee.from_dict(r) for r in records if role_id in r.get('roles', [])]
        members.sort(key=lambda e: e.id)
        return members

    async def get_department_members(self, department_id: str) -> List[Employee]:
        records = await self.storage.find(
            self.EMPLOYEES, {'department_id': department_id, 'is_active': True}
        )
        members = [Employee.from_dict(r) for r in records]
        members.sort(key=lambda e: e.id)
        return members
