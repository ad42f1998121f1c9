from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException


def to_object_id(value) -> ObjectId | None:
    if value is None or isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc

    doc = dict(doc)
    for k, v in doc.items():
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, dict):
            doc[k] = serialize_doc(v)
    return doc


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]


def parse_object_id(value: str, name: str = "id") -> ObjectId:
    """Path parameters: a malformed id is the client's mistake."""
    oid = to_object_id(value)
    if oid is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    return oid
