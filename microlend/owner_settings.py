"""
Owner Settings Module

Per-owner lending defaults. The late fee per day feeds payment allocation;
owners without a stored value get the configured default.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .exceptions import InvalidParametersError
from .money import Numeric, ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord


@dataclass
class OwnerSettings(StorageRecord):
    """Lending defaults for one owner"""
    owner_id: str
    late_fee_per_day: Decimal
    default_interest_rate: Optional[Decimal] = None
    default_installments: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OwnerSettings':
        data = dict(data)
        data['late_fee_per_day'] = Decimal(data['late_fee_per_day'])
        if data.get('default_interest_rate') is not None:
            data['default_interest_rate'] = Decimal(data['default_interest_rate'])
        return super().from_dict(data)


class OwnerSettingsStore:
    """Reads and updates owner settings"""

    def __init__(
        self,
        storage: StorageInterface,
        default_late_fee_per_day: Optional[Numeric] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "owner_settings"
        if default_late_fee_per_day is None:
            default_late_fee_per_day = get_config().default_late_fee_per_day
        self.default_late_fee_per_day = round_money(default_late_fee_per_day)

    def get_settings(self, owner_id: str) -> OwnerSettings:
        """Stored settings, or defaults when the owner has none"""
        data = self.storage.load(self.table_name, owner_id)
        if data:
            return OwnerSettings.from_dict(data)
        now = datetime.now(timezone.utc)
        return OwnerSettings(
            id=owner_id,
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            late_fee_per_day=self.default_late_fee_per_day
        )

    def get_late_fee_per_day(self, owner_id: str) -> Decimal:
        return self.get_settings(owner_id).late_fee_per_day

    def update_settings(
        self,
        owner_id: str,
        late_fee_per_day: Optional[Numeric] = None,
        default_interest_rate: Optional[Numeric] = None,
        default_installments: Optional[int] = None
    ) -> OwnerSettings:
        """
        Update only the provided fields

        Raises:
            InvalidParametersError: On a negative fee, a rate outside [0, 100]
                or a non-positive installment count
        """
        settings = self.get_settings(owner_id)

        if late_fee_per_day is not None:
            late_fee_per_day = round_money(late_fee_per_day)
            if late_fee_per_day < ZERO:
                raise InvalidParametersError("Late fee per day cannot be negative")
            settings.late_fee_per_day = late_fee_per_day
        if default_interest_rate is not None:
            default_interest_rate = to_decimal(default_interest_rate)
            if default_interest_rate < 0 or default_interest_rate > 100:
                raise InvalidParametersError("Default interest rate must be between 0 and 100")
            settings.default_interest_rate = default_interest_rate
        if default_installments is not None:
            if default_installments <= 0:
                raise InvalidParametersError("Default installments must be greater than 0")
            settings.default_installments = default_installments

        settings.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, owner_id, settings.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SETTINGS_UPDATED,
                entity_type="owner_settings",
                entity_id=owner_id,
                metadata={
                    "late_fee_per_day": settings.late_fee_per_day,
                    "default_interest_rate": settings.default_interest_rate,
                    "default_installments": settings.default_installments
                },
                user_id=owner_id
            )
        return settings
