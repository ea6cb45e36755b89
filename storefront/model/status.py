# Payment is authoritative for financial state; Order mirrors it.

# Payment.status
PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCESS = "SUCCESS"
PAYMENT_EXPIRED = "EXPIRED"
PAYMENT_FAILED = "FAILED"

PAYMENT_STATUSES = (
    PAYMENT_PENDING, PAYMENT_SUCCESS, PAYMENT_EXPIRED, PAYMENT_FAILED,
)

# Order.status
ORDER_PENDING = "PENDING"
ORDER_PAID = "PAID"
ORDER_EXPIRED = "EXPIRED"
ORDER_FAILED = "FAILED"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PAID, ORDER_EXPIRED, ORDER_FAILED)

# Payment status -> Order status it propagates to
ORDER_STATUS_FOR = {
    PAYMENT_PENDING: ORDER_PENDING,
    PAYMENT_SUCCESS: ORDER_PAID,
    PAYMENT_EXPIRED: ORDER_EXPIRED,
    PAYMENT_FAILED: ORDER_FAILED,
}

# status query answer for references that resolve to nothing
UNKNOWN = "UNKNOWN"
