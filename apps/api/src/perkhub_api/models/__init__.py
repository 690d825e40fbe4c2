from .establishment import Establishment, EstablishmentStatusEnum  # noqa: F401
from .notification import Notification, NotificationCategoryEnum, NotificationStatusEnum  # noqa: F401
from .payment_event import PaymentEventRecord, PaymentEventStatusEnum  # noqa: F401
from .subscription import (  # noqa: F401
    BillingIntervalUnitEnum,
    PartnerLink,
    PaymentProviderEnum,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatusEnum,
)
from .user import User, UserRoleEnum, UserStatusEnum  # noqa: F401
from .voucher import GenerationThrottle, Voucher, VoucherStatusEnum  # noqa: F401
