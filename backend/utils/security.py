from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from bson import ObjectId

from database import get_db
from models.commission import BeneficiaryType
from utils.errors import Forbidden
from utils.jwt import Unauthorized, decode_token

security = HTTPBearer()

ROLE_CUSTOMER = "customer"
ROLE_SELLER = "seller"
ROLE_DELIVERY = "delivery"
ROLE_ADMIN = "admin"

BENEFICIARY_BY_ROLE = {
    ROLE_SELLER: BeneficiaryType.SELLER,
    ROLE_DELIVERY: BeneficiaryType.DELIVERY_PARTNER,
}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    payload = decode_token(credentials.credentials)

    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid token payload")

    user = await db.users.find_one({"_id": ObjectId(user_id)})
    if not user:
        raise Unauthorized("User not found")

    return user


def require_role(*roles: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise Forbidden("Insufficient permissions")
        return user

    return checker


async def get_beneficiary(
    user=Depends(require_role(ROLE_SELLER, ROLE_DELIVERY)),
) -> dict:
    """
    Wallet owner behind the request: id + Seller/DeliveryPartner.
    """
    return {
        "beneficiary_id": user["_id"],
        "beneficiary_type": BENEFICIARY_BY_ROLE[user["role"]],
    }
