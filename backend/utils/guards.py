from bson import ObjectId

from utils.errors import Forbidden, ValidationError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ValidationError(f"Invalid {name}")


# -------------------------------
# Ownership Guard
# -------------------------------

def assert_order_owner(order: dict, customer_id) -> None:
    if str(order.get("customer_id")) != str(customer_id):
        raise Forbidden("Order does not belong to this customer")
