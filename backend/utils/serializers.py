from bson import ObjectId
from datetime import datetime


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict | None, *, hidden: tuple = ()) -> dict | None:
    if not doc:
        return doc

    out = {}
    for k, v in doc.items():
        if k in hidden:
            continue
        out["id" if k == "_id" else k] = serialize_value(v)
    return out


def serialize_docs(docs, *, hidden: tuple = ()):
    return [serialize_doc(d, hidden=hidden) for d in docs]


def serialize_withdrawal(doc: dict) -> dict:
    return serialize_doc(doc, hidden=("account_details_encrypted",))
