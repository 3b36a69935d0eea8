from enum import Enum


class BeneficiaryType(str, Enum):
    SELLER = "Seller"
    DELIVERY_PARTNER = "DeliveryPartner"


class CommissionStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
