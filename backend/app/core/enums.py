# app/core/enums.py

import enum


class RateType(str, enum.Enum):
    FIXED = "fixed"
    TIERED = "tiered"   # whole-amount rate picked by threshold, not marginal


class ReferralSource(str, enum.Enum):
    QR_CODE = "qr_code"
    LINK = "link"
    DIRECT = "direct"


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    CONVERTED = "converted"
    EXPIRED = "expired"     # usually derived at read time, see ReferralRecord.effective_status
    CANCELLED = "cancelled"


class ReferrerStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Timeframe(str, enum.Enum):
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"
    LAST_3_MONTHS = "3m"
    LAST_6_MONTHS = "6m"
    LAST_YEAR = "1y"

    @property
    def days(self) -> int:
        return TIMEFRAME_DAYS[self]

    @property
    def label(self) -> str:
        return TIMEFRAME_LABELS[self]


TIMEFRAME_DAYS: dict[Timeframe, int] = {
    Timeframe.LAST_7_DAYS: 7,
    Timeframe.LAST_30_DAYS: 30,
    Timeframe.LAST_90_DAYS: 90,
    Timeframe.LAST_3_MONTHS: 90,
    Timeframe.LAST_6_MONTHS: 180,
    Timeframe.LAST_YEAR: 365,
}

TIMEFRAME_LABELS: dict[Timeframe, str] = {
    Timeframe.LAST_7_DAYS: "Last 7 Days",
    Timeframe.LAST_30_DAYS: "Last 30 Days",
    Timeframe.LAST_90_DAYS: "Last 90 Days",
    Timeframe.LAST_3_MONTHS: "Last 3 Months",
    Timeframe.LAST_6_MONTHS: "Last 6 Months",
    Timeframe.LAST_YEAR: "Last Year",
}
