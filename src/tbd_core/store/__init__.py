"""On-disk entity storage: canonical codec, atomic writes, local index."""

from .codec import blob_id, content_hash, decode, encode
from .entity_store import EntityListing, EntityStore
from .index import LocalIndex

__all__ = [
    "EntityListing",
    "EntityStore",
    "LocalIndex",
    "blob_id",
    "content_hash",
    "decode",
    "encode",
]
