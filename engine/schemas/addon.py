"""Addon records, accounts and their local policy fields."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-safe dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AddonManifest(CamelModel):
    """Externally supplied addon descriptor.

    Only ``id`` and ``version`` carry meaning for reconciliation; every other
    key (including unknown ones) is preserved verbatim.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = ""
    name: str = ""
    version: str = ""
    description: str | None = None
    logo: str | None = None
    types: list[str] = Field(default_factory=list)
    resources: list[Any] = Field(default_factory=list)
    catalogs: list[Any] = Field(default_factory=list)


class AddonFlags(CamelModel):
    """Local-only policy flags. Never supplied by the third-party service."""

    enabled: bool = True
    protected: bool = False


class AddonMetadata(CamelModel):
    """Local overrides and the edit timestamp guarding them."""

    custom_name: str | None = None
    custom_logo: str | None = None
    custom_description: str | None = None
    catalog_overrides: dict[str, Any] | None = None
    last_updated: datetime | None = None


class AddonRecord(CamelModel):
    """One addon installed on one account, identified by its transport URL."""

    transport_url: str
    transport_name: str = ""
    manifest: AddonManifest = Field(default_factory=AddonManifest)
    flags: AddonFlags = Field(default_factory=AddonFlags)
    metadata: AddonMetadata = Field(default_factory=AddonMetadata)


class AccountStatus(StrEnum):
    ACTIVE = "active"
    ERROR = "error"


class Account(CamelModel):
    """One external identity with an ordered addon list.

    ``auth_key`` and ``password`` hold vault ciphertext, never plaintext.
    """

    id: str
    name: str = ""
    email: str | None = None
    auth_key: str
    password: str | None = None
    addons: list[AddonRecord] = Field(default_factory=list)
    last_sync: datetime | None = None
    status: AccountStatus = AccountStatus.ACTIVE
