from app.models.catalog import Plan  # noqa: F401
from app.models.network import MacBinding, MacBindingStatus  # noqa: F401
from app.models.orders import (  # noqa: F401
    AutologinStatus,
    Order,
    OrderStatus,
    PaymentLog,
    PaymentLogStatus,
)
from app.models.payment_provider import (  # noqa: F401
    PaymentProviderConfig,
    ProviderEnvironment,
)
from app.models.radius import RadAcct, RadCheck, RadReply, RadUserGroup  # noqa: F401
from app.models.vouchers import (  # noqa: F401
    FlaggedIp,
    SecurityEventType,
    SecuritySeverity,
    Voucher,
    VoucherSecurityLog,
    VoucherSourceKind,
    VoucherStatus,
    VoucherUsage,
)
