# app/core/errors.py
from __future__ import annotations


class CommissionCoreError(RuntimeError):
    """Base error for the commission & referral core."""


class NotFoundError(CommissionCoreError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id!r} not found.")


class ValidationError(CommissionCoreError, ValueError):
    """Malformed input: bad policy, negative amount, unknown filter field."""


class InvalidReferrerError(CommissionCoreError):
    """Referrer cannot issue referrals (inactive, no policy, issuance disabled)."""


class InvalidStateTransitionError(CommissionCoreError):
    def __init__(
        self,
        record_id: str,
        current: str,
        action: str,
        reason: str | None = None,
        *,
        entity: str = "referral",
    ):
        self.record_id = record_id
        self.referral_id = record_id
        self.entity = entity
        self.current = current
        self.action = action
        message = f"Cannot {action} {entity} {record_id!r} in status {current!r}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)


class DuplicatePrimaryError(CommissionCoreError):
    def __init__(self, pharmacy_id: str, city_id: str, existing_id: str):
        self.pharmacy_id = pharmacy_id
        self.city_id = city_id
        self.existing_id = existing_id
        super().__init__(
            f"Pharmacy {pharmacy_id!r} already has an active primary assignment "
            f"for city {city_id!r} ({existing_id})."
        )


class PartialUpdateError(CommissionCoreError):
    """Batch rejected as a whole; `invalid_id` is the first bad id seen."""

    def __init__(self, invalid_id: str):
        self.invalid_id = invalid_id
        super().__init__(f"Bulk update rejected: assignment {invalid_id!r} not found. No records were changed.")


class ConcurrentModificationError(CommissionCoreError):
    """A record changed between read and write (optimistic lock conflict)."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id!r} was modified concurrently; reload and try again.")
