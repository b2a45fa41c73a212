"""Convenience exports for the gateway layer."""
from .auth import AuthEvent, AuthEventKind, AuthProvider, AuthSession
from .base import (
    Filter,
    FilterOp,
    Gateway,
    MutationKind,
    Order,
    Related,
    asc,
    desc,
    eq,
    gt,
    gte,
    ilike,
    in_,
    is_,
    lt,
    lte,
    matches_all,
    neq,
    not_in,
)
from .feed import ChangeFeed
from .local import LocalBackend, SqlGateway
from .local_auth import LocalAuthProvider
from .rest import RestAuthProvider, RestGateway
from .storage import LocalObjectStorage, ObjectStorage, SpacesObjectStorage, build_storage

__all__ = [
    "AuthEvent",
    "AuthEventKind",
    "AuthProvider",
    "AuthSession",
    "ChangeFeed",
    "Filter",
    "FilterOp",
    "Gateway",
    "LocalAuthProvider",
    "LocalBackend",
    "LocalObjectStorage",
    "MutationKind",
    "ObjectStorage",
    "Order",
    "Related",
    "RestAuthProvider",
    "RestGateway",
    "SpacesObjectStorage",
    "SqlGateway",
    "asc",
    "build_storage",
    "desc",
    "eq",
    "gt",
    "gte",
    "ilike",
    "in_",
    "is_",
    "lt",
    "lte",
    "matches_all",
    "neq",
    "not_in",
]
