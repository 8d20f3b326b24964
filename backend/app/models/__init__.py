# Import models here so metadata.create_all() can discover every table.
from app.models.referrer_profile import ReferrerProfile  # noqa: F401
from app.models.referral import Referral  # noqa: F401
from app.models.pharmacy_city_assignment import PharmacyCityAssignment  # noqa: F401
from app.models.order_record import OrderRecord  # noqa: F401
from app.models.commission_payout import CommissionPayout  # noqa: F401
