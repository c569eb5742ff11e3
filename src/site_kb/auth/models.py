"""
Authentication Models

Strongly-typed caller context produced by JWT verification.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..tenants import validate_identifier


class CallerContext(BaseModel):
    """
    Authenticated caller derived from a verified JWT.

    `tenant_id` is the only source of tenant identity for every protected
    route; paths and bodies never carry it.
    """

    tenant_id: str = Field(
        ...,
        description="Tenant the token was issued for.",
    )

    subject: str = Field(
        ...,
        min_length=1,
        description="Caller identity (user or service account).",
    )

    scopes: List[str] = Field(
        default_factory=list,
        description="Operations granted to the caller.",
    )

    client_id: str = Field(
        ...,
        min_length=1,
        description="Platform component that requested the token (dashboard, widget backend).",
    )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",             # Prevents claim injection via unexpected fields
    )

    @field_validator("tenant_id", mode="before")
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        return validate_identifier("tenant_id", v)
