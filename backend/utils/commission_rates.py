import logging

from config.env import DEFAULT_DELIVERY_COMMISSION_RATE, DEFAULT_SELLER_COMMISSION_RATE
from utils.guards import parse_object_id

logger = logging.getLogger(__name__)

RATE_SOURCE_BENEFICIARY = "beneficiary"
RATE_SOURCE_GLOBAL = "global"
RATE_SOURCE_DEFAULT = "default"

SETTINGS_ID = "platform"


async def _global_rate(db, field: str, session=None):
    settings = await db.app_settings.find_one({"_id": SETTINGS_ID}, session=session)
    if settings and settings.get(field) is not None:
        return float(settings[field])
    return None


async def get_seller_commission_rate(db, seller_id, *, session=None) -> tuple[float, str]:
    """
    Platform cut for a seller: seller override > global setting > default.
    Returns (rate, source).
    """
    seller = await db.sellers.find_one({"_id": parse_object_id(seller_id, "seller_id")}, session=session)
    if not seller:
        logger.warning("COMMISSION_RATE seller=%s not found, using fallback rates", seller_id)
    elif seller.get("commission_rate") is not None:
        return float(seller["commission_rate"]), RATE_SOURCE_BENEFICIARY

    rate = await _global_rate(db, "global_commission_rate", session=session)
    if rate is not None:
        return rate, RATE_SOURCE_GLOBAL

    return float(DEFAULT_SELLER_COMMISSION_RATE), RATE_SOURCE_DEFAULT


async def get_delivery_commission_rate(db, delivery_partner_id, *, session=None) -> tuple[float, str]:
    partner = await db.delivery_partners.find_one(
        {"_id": parse_object_id(delivery_partner_id, "delivery_partner_id")},
        session=session,
    )
    if not partner:
        logger.warning("COMMISSION_RATE delivery_partner=%s not found, using fallback rates", delivery_partner_id)
    elif partner.get("commission_rate") is not None:
        return float(partner["commission_rate"]), RATE_SOURCE_BENEFICIARY

    rate = await _global_rate(db, "delivery_commission_rate", session=session)
    if rate is not None:
        return rate, RATE_SOURCE_GLOBAL

    return float(DEFAULT_DELIVERY_COMMISSION_RATE), RATE_SOURCE_DEFAULT
