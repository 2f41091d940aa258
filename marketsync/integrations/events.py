"""
Purpose: Defines the messages tabs exchange through the shared store, plus the leader record.

Contents:
BroadcastMessage: tagged union keyed by `type`, one payload shape per variant
(ProductUpdate, CacheInvalidate, PurchaseUpdate, SyncRequest). Serialized with camelCase
aliases so the wire format is `{"type", "payload", "timestamp", "originId"}`.
LeaderRecord: `{"ownerId", "claimedAt"}` stored under the leader key.
"""

import time
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from marketsync.core.enums import MessageType
from marketsync.core.exceptions import MessageParseError


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


# --- payloads ---

class ProductUpdatePayload(WireModel):
    product_id: str
    update_fields: Dict[str, Any] = Field(default_factory=dict)


class CacheInvalidatePayload(WireModel):
    key_paths: List[List[str]]


class PurchaseUpdatePayload(WireModel):
    product_id: str
    new_quantity: int


class SyncRequestPayload(WireModel):
    requester_id: str


# --- messages ---

class _MessageBase(WireModel):
    timestamp: int = Field(default_factory=now_ms)
    origin_id: str

    @property
    def message_type(self) -> MessageType:
        return MessageType(self.type)


class ProductUpdateMessage(_MessageBase):
    type: Literal["PRODUCT_UPDATE"] = MessageType.PRODUCT_UPDATE.value
    payload: ProductUpdatePayload


class CacheInvalidateMessage(_MessageBase):
    type: Literal["CACHE_INVALIDATE"] = MessageType.CACHE_INVALIDATE.value
    payload: CacheInvalidatePayload


class PurchaseUpdateMessage(_MessageBase):
    type: Literal["PURCHASE_UPDATE"] = MessageType.PURCHASE_UPDATE.value
    payload: PurchaseUpdatePayload


class SyncRequestMessage(_MessageBase):
    type: Literal["SYNC_REQUEST"] = MessageType.SYNC_REQUEST.value
    payload: SyncRequestPayload


BroadcastMessage = Annotated[
    Union[ProductUpdateMessage, CacheInvalidateMessage, PurchaseUpdateMessage, SyncRequestMessage],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(BroadcastMessage)


def parse_message(raw: str) -> BroadcastMessage:
    """Parse a serialized message; raises MessageParseError when malformed"""
    try:
        return _message_adapter.validate_json(raw)
    except ValidationError as e:
        raise MessageParseError(f"Malformed broadcast message: {e.error_count()} validation error(s)") from e


class LeaderRecord(WireModel):
    owner_id: str
    claimed_at: int

    def is_stale(self, now: int, threshold_ms: int) -> bool:
        return now - self.claimed_at > threshold_ms
