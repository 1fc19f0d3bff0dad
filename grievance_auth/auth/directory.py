"""
User Directories
================

Role-specific user stores and the composite that resolves a provider email
to an application Principal.

Each InMemoryUserDirectory owns exactly one role. CompositeUserDirectory
searches its members in the declared priority order (petitioner, official,
admin by default); the first directory that knows the email fixes the role.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Union

from ..models import Principal, Role, UserRecord

logger = logging.getLogger(__name__)


DEFAULT_PRIORITY = (Role.PETITIONER, Role.OFFICIAL, Role.ADMIN)

# Seed file keys for each role
SEED_KEYS = {
    Role.PETITIONER: "petitioners",
    Role.OFFICIAL: "officials",
    Role.ADMIN: "admins",
}


class UserDirectory(Protocol):
    """Read access to application users."""

    async def find_by_email(self, email: str) -> Optional[Principal]:
        ...

    async def find_by_id(self, user_id: str) -> Optional[Principal]:
        ...


class InMemoryUserDirectory:
    """
    Users of a single role, keyed by id.

    Email lookups are case-insensitive.
    """

    def __init__(self, role: Role, records: Iterable[UserRecord] = ()):
        self.role = role
        self._records: Dict[str, UserRecord] = {}
        for record in records:
            self.add(record)

    def add(self, record: UserRecord) -> Principal:
        """
        Insert a record.

        Raises:
            ValueError: If the id or the email is already taken
        """
        if record.id in self._records:
            raise ValueError(f"Duplicate user id: {record.id}")
        if self._by_email(record.email) is not None:
            raise ValueError(f"Duplicate email in {self.role.value} directory")

        self._records[record.id] = record
        return record.to_principal(self.role)

    async def find_by_email(self, email: str) -> Optional[Principal]:
        record = self._by_email(email)
        return record.to_principal(self.role) if record else None

    async def find_by_id(self, user_id: str) -> Optional[Principal]:
        record = self._records.get(str(user_id))
        return record.to_principal(self.role) if record else None

    def records(self) -> List[UserRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def _by_email(self, email: str) -> Optional[UserRecord]:
        if not email:
            return None
        needle = email.strip().lower()
        for record in self._records.values():
            if record.email.strip().lower() == needle:
                return record
        return None


class CompositeUserDirectory:
    """
    Ordered collection of role directories.

    Args:
        directories: Role directories in lookup priority order
        seed_path: Seed file that save() writes back to, if any
    """

    def __init__(
        self,
        directories: Sequence[InMemoryUserDirectory],
        seed_path: Optional[Union[str, Path]] = None,
    ):
        roles = [d.role for d in directories]
        if len(set(roles)) != len(roles):
            raise ValueError("Each role may appear only once in a composite directory")
        self._directories: List[InMemoryUserDirectory] = list(directories)
        self.seed_path = Path(seed_path) if seed_path else None

    @property
    def priority(self) -> List[Role]:
        return [d.role for d in self._directories]

    def for_role(self, role: Union[Role, str]) -> Optional[InMemoryUserDirectory]:
        try:
            wanted = Role.parse(role)
        except ValueError:
            return None
        for directory in self._directories:
            if directory.role is wanted:
                return directory
        return None

    async def find_by_email(self, email: str) -> Optional[Principal]:
        """First match across the member directories wins."""
        for directory in self._directories:
            principal = await directory.find_by_email(email)
            if principal is not None:
                return principal
        return None

    async def find_by_id(self, user_id: str) -> Optional[Principal]:
        for directory in self._directories:
            principal = await directory.find_by_id(user_id)
            if principal is not None:
                return principal
        return None

    def to_seed(self) -> Dict[str, list]:
        """Records in the seed file layout read by build_directory()."""
        return {
            SEED_KEYS[directory.role]: [
                record.model_dump(by_alias=True, exclude_none=True, mode="json")
                for record in directory.records()
            ]
            for directory in self._directories
        }

    def save(self) -> bool:
        """
        Write every record back to the seed file.

        The file is replaced in one step through a sibling temp file.

        Returns:
            False when the directory has no seed file

        Raises:
            OSError: If the file cannot be written
        """
        if self.seed_path is None:
            return False

        tmp_path = self.seed_path.with_suffix(self.seed_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self.to_seed(), indent=2), encoding="utf-8")
        tmp_path.replace(self.seed_path)
        logger.debug(f"Saved user directory to {self.seed_path}")
        return True


def build_directory(
    seed: Optional[Dict[str, list]] = None,
    priority: Sequence[Role] = DEFAULT_PRIORITY,
) -> CompositeUserDirectory:
    """
    Create the composite directory, optionally seeded.

    Args:
        seed: Mapping of ``petitioners``/``officials``/``admins`` to lists
              of user record dicts
        priority: Lookup order of the role directories
    """
    seed = seed or {}
    directories = []
    for role in priority:
        records = [UserRecord.model_validate(item) for item in seed.get(SEED_KEYS[role], [])]
        directories.append(InMemoryUserDirectory(role, records))
    return CompositeUserDirectory(directories)


def load_directory(path: Union[str, Path]) -> CompositeUserDirectory:
    """
    Load user records from a JSON seed file.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not valid JSON or holds invalid records
    """
    with open(path, "r", encoding="utf-8") as fh:
        seed = json.load(fh)

    directory = build_directory(seed)
    directory.seed_path = Path(path)
    logger.info(
        f"Loaded user directory from {path}",
        extra={role.value: len(directory.for_role(role)) for role in directory.priority},
    )
    return directory
