from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from portal.config import Settings
from portal.logging import get_logger
from portal.storage.errors import StorageResult
from portal.storage.models import OrganizationEmployee

logger = get_logger(__name__)


class OrganizationDirectory(Protocol):
    def get_employee_by_email(self, email: str) -> StorageResult[Optional[OrganizationEmployee]]: ...


@dataclass
class Eligibility:
    eligible: bool
    employee: Optional[OrganizationEmployee] = None
    via_home_domain: bool = False


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""


class DirectoryService:
    """Decides who may register: directory members and home-domain addresses."""

    def __init__(self, directory: OrganizationDirectory, settings: Settings) -> None:
        self.directory = directory
        self.home_domain = settings.home_email_domain

    def lookup(self, email: str) -> Optional[OrganizationEmployee]:
        result = self.directory.get_employee_by_email(email.strip().lower())
        if not result.ok:
            # directory outages degrade to "not listed"
            logger.warning("directory_lookup_failed", error=result.error.message)
            return None
        return result.value

    def is_home_domain(self, email: str) -> bool:
        return email_domain(email) == self.home_domain

    def eligibility(self, email: str) -> Eligibility:
        employee = self.lookup(email)
        if employee:
            return Eligibility(eligible=True, employee=employee)
        if self.is_home_domain(email):
            return Eligibility(eligible=True, via_home_domain=True)
        return Eligibility(eligible=False)
