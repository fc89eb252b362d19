"""
Borrower Module

Minimal borrower records scoped to an owner: contact details used for
notifications and the status flag flipped when a loan defaults.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid
import re

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ConflictingIdentifierError, InvalidParametersError, NotFoundError
from .logging_config import get_logger, log_action


class BorrowerStatus(Enum):
    """Borrower standing"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEFAULTER = "defaulter"   # Set when one of their loans defaults


@dataclass
class Borrower(StorageRecord):
    """Borrower profile owned by a lender"""
    owner_id: str
    name: str
    mobile: str
    business_name: Optional[str] = None
    address: Optional[str] = None
    guarantor_mobile: Optional[str] = None
    sms_enabled: bool = True
    status: BorrowerStatus = BorrowerStatus.ACTIVE

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise InvalidParametersError("Borrower name is required")
        if not re.match(r'^\+?\d{10,15}$', self.mobile or ''):
            raise InvalidParametersError(f"Invalid mobile number: {self.mobile!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Borrower':
        data = dict(data)
        data['status'] = BorrowerStatus(data['status'])
        return super().from_dict(data)


class BorrowerRegistry:
    """Registers and looks up borrowers"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "borrowers"
        self.logger = get_logger("microlend.borrowers")

    def register_borrower(
        self,
        owner_id: str,
        name: str,
        mobile: str,
        business_name: Optional[str] = None,
        address: Optional[str] = None,
        guarantor_mobile: Optional[str] = None,
        sms_enabled: bool = True
    ) -> Borrower:
        """
        Register a borrower under an owner

        Raises:
            ConflictingIdentifierError: If the owner already has a borrower with this mobile
        """
        if self.find_by_mobile(owner_id, mobile):
            raise ConflictingIdentifierError(f"Borrower with mobile {mobile} already exists")

        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            name=name,
            mobile=mobile,
            business_name=business_name,
            address=address,
            guarantor_mobile=guarantor_mobile,
            sms_enabled=sms_enabled
        )
        self.storage.save(self.table_name, borrower.id, borrower.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.BORROWER_REGISTERED,
                entity_type="borrower",
                entity_id=borrower.id,
                metadata={"name": name, "mobile": mobile},
                user_id=owner_id
            )
        return borrower

    def get_borrower(self, owner_id: str, borrower_id: str) -> Borrower:
        """
        Raises:
            NotFoundError: If absent or owned by someone else
        """
        borrower = self.find_borrower(borrower_id)
        if not borrower or borrower.owner_id != owner_id:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    def find_borrower(self, borrower_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, borrower_id)
        if data:
            return Borrower.from_dict(data)
        return None

    def find_by_mobile(self, owner_id: str, mobile: str) -> Optional[Borrower]:
        found = self.storage.find(self.table_name, {"owner_id": owner_id, "mobile": mobile})
        if found:
            return Borrower.from_dict(found[0])
        return None

    def get_owner_borrowers(self, owner_id: str) -> List[Borrower]:
        return [Borrower.from_dict(d) for d in self.storage.find(self.table_name, {"owner_id": owner_id})]

    def mark_defaulter(self, borrower_id: str) -> Optional[Borrower]:
        """Flip a borrower to the defaulter marker"""
        borrower = self.find_borrower(borrower_id)
        if not borrower:
            return None
        if borrower.status != BorrowerStatus.DEFAULTER:
            borrower.status = BorrowerStatus.DEFAULTER
            borrower.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, borrower.id, borrower.to_dict())
            log_action(
                self.logger, "info", "Borrower marked as defaulter",
                user_id=borrower.owner_id, action="mark_defaulter",
                resource=f"borrower:{borrower.id}"
            )
        return borrower
