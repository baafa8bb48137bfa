from enum import Enum


class OrderStatus(str, Enum):
    CREATED = "Created"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: "str | OrderStatus") -> "OrderStatus":
        """Case-insensitive lookup by value or member name."""
        if isinstance(value, cls):
            return value
        needle = str(value).strip().lower()
        for member in cls:
            if needle in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown order status: {value!r}")

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    AUTHORIZED = "Authorized"
    CAPTURED = "Captured"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class ShippingStatus(str, Enum):
    NOT_SHIPPED = "NotShipped"
    PREPARING = "Preparing"
    SHIPPED = "Shipped"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    RETURNED = "Returned"


class OrderSortBy(str, Enum):
    ORDER_DATE_ASC = "OrderDateAsc"
    ORDER_DATE_DESC = "OrderDateDesc"
    TOTAL_AMOUNT_ASC = "TotalAmountAsc"
    TOTAL_AMOUNT_DESC = "TotalAmountDesc"
    STATUS_ASC = "StatusAsc"
    STATUS_DESC = "StatusDesc"
