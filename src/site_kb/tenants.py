"""
Multi-Tenant Support

This module provides tenant isolation for serving many customer knowledge
bases from a single deployment.

Architecture
------------
- Each customer is identified by a unique `tenant_id` (e.g., "acme-co")
- Each crawled site is a `collection_id` inside that tenant
- Every vector lives in a namespace derived strictly from `tenant_id`
- Tenant context is extracted from authenticated requests, never from
  request bodies or paths

Security
--------
- Identifiers are validated to prevent path traversal and key injection
- Only alphanumeric characters, hyphens, and underscores allowed
- Maximum 64 characters
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from .core.errors import InvalidTenantError


# ---------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
NAMESPACE_PREFIX = "tenant_"


def validate_identifier(kind: str, value: str) -> str:
    if not value or not isinstance(value, str):
        raise InvalidTenantError(f"{kind} is required")

    value = value.strip()

    if not IDENTIFIER_PATTERN.match(value):
        raise InvalidTenantError(
            f"Invalid {kind} '{value}': must be 1-64 alphanumeric chars, hyphens, or underscores"
        )

    # Extra safety: reject any path-like patterns
    if ".." in value or "/" in value or "\\" in value:
        raise InvalidTenantError(f"Invalid {kind} '{value}': path traversal detected")

    return value


# ---------------------------------------------------------------------
# Tenant Context Model
# ---------------------------------------------------------------------

class TenantContext(BaseModel):
    """
    Represents one tenant-scoped collection.

    This is typically derived from the `tenant_id` JWT claim plus the
    collection addressed by the request.
    """

    tenant_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Unique identifier for the customer tenant.",
    )
    collection_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Tenant-scoped collection (one crawled site).",
    )

    @field_validator("tenant_id", mode="before")
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        return validate_identifier("tenant_id", v)

    @field_validator("collection_id", mode="before")
    @classmethod
    def validate_collection_id(cls, v: str) -> str:
        return validate_identifier("collection_id", v)

    @property
    def namespace(self) -> str:
        return tenant_namespace(self.tenant_id)


def validate_scope(tenant_id: str, collection_id: str) -> TenantContext:
    """
    Validate a (tenant, collection) pair.

    Raises
    ------
    InvalidTenantError
        If either identifier is malformed.
    """
    return TenantContext(tenant_id=tenant_id, collection_id=collection_id)


def tenant_namespace(tenant_id: str) -> str:
    """
    Derive the vector namespace for a tenant.

    The namespace is the only key the vector backends accept, so every
    read and write is scoped by construction.
    """
    return f"{NAMESPACE_PREFIX}{validate_identifier('tenant_id', tenant_id)}"


def validate_namespace(namespace: str) -> str:
    """
    Check that `namespace` was derived by `tenant_namespace`.
    """
    if not namespace or not namespace.startswith(NAMESPACE_PREFIX):
        raise InvalidTenantError(f"Invalid namespace '{namespace}'")
    validate_identifier("tenant_id", namespace[len(NAMESPACE_PREFIX):])
    return namespace


# ---------------------------------------------------------------------
# Tenant Path Utilities
# ---------------------------------------------------------------------

def get_namespace_data_path(data_root: str, namespace: str) -> Path:
    """
    Get the on-disk directory for a namespace's persisted vectors.
    """
    return Path(data_root) / validate_namespace(namespace)

