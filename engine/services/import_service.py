"""Export file building and tolerant parsing of current and legacy JSON shapes.

Each sub-domain is located by a chain of small parsers tried in order. A
parser returns a normalized structure or None for "not my shape". Items that
fail validation are skipped and logged; nothing here raises on bad input.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import ValidationError

from engine.schemas.addon import Account, AddonManifest, AddonRecord
from engine.schemas.failover import FailoverRule, WebhookConfig
from engine.schemas.library import SavedAddon
from engine.schemas.snapshot import LIBRARY_FORMAT_VERSION
from engine.services.addon_identity import sanitize_manifest
from engine.services.datetime_service import format_iso, now_utc, parse_timestamp

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "2.0.0"


class ImportMode(StrEnum):
    MERGE = "merge"
    MIRROR = "mirror"


T = TypeVar("T")
Parser = Callable[[Any], T | None]


def first_match(parsers: Sequence[Parser[T]], data: Any) -> T | None:
    """Return the first non-None parser result."""
    for parser in parsers:
        result = parser(data)
        if result is not None:
            return result
    return None


def manifest_key(manifest: AddonManifest) -> str:
    return f"{manifest.id}:{manifest.version}"


# Accounts


def _accounts_from_array(data: Any) -> list[Any] | None:
    return data if isinstance(data, list) else None


def _accounts_from_object(data: Any) -> list[Any] | None:
    if not isinstance(data, dict):
        return None
    inner = data.get("accounts")
    if isinstance(inner, list):
        return inner
    if isinstance(inner, dict) and isinstance(inner.get("accounts"), list):
        return inner["accounts"]
    return None


ACCOUNT_PARSERS: tuple[Parser[list[Any]], ...] = (_accounts_from_array, _accounts_from_object)


# Library


def _library_from_saved_addons(data: Any) -> list[Any] | None:
    if isinstance(data, dict) and isinstance(data.get("savedAddons"), list):
        return data["savedAddons"]
    return None


def _library_from_templates(data: Any) -> list[Any] | None:
    if isinstance(data, dict) and isinstance(data.get("templates"), list):
        return data["templates"]
    return None


def _library_from_addons_key(data: Any) -> list[Any] | None:
    if not isinstance(data, dict):
        return None
    inner = data.get("addons")
    if isinstance(inner, list):
        return inner
    return first_match((_library_from_saved_addons, _library_from_templates), inner)


def _library_from_array(data: Any) -> list[Any] | None:
    return data if isinstance(data, list) else None


LIBRARY_PARSERS: tuple[Parser[list[Any]], ...] = (
    _library_from_saved_addons,
    _library_from_templates,
    _library_from_addons_key,
    _library_from_array,
)


# Failover


@dataclass
class ParsedFailover:
    rules: list[Any]
    webhook: Any = None


def _failover_from_array(data: Any) -> ParsedFailover | None:
    return ParsedFailover(rules=data) if isinstance(data, list) else None


def _failover_from_object(data: Any) -> ParsedFailover | None:
    if isinstance(data, dict) and isinstance(data.get("rules"), list):
        return ParsedFailover(rules=data["rules"], webhook=data.get("webhook"))
    return None


def _failover_from_wrapper(data: Any) -> ParsedFailover | None:
    if isinstance(data, dict) and "failover" in data:
        return first_match((_failover_from_array, _failover_from_object), data["failover"])
    return None


FAILOVER_PARSERS: tuple[Parser[ParsedFailover], ...] = (
    _failover_from_wrapper,
    _failover_from_object,
    _failover_from_array,
)


# Item coercion


def coerce_addon(raw: Any, manifests: dict[str, Any]) -> AddonRecord | None:
    """Build an AddonRecord from an exported or snapshot entry."""
    if not isinstance(raw, dict) or not raw.get("transportUrl"):
        return None
    url = str(raw["transportUrl"])
    manifest_raw = raw.get("manifest") or manifests.get(str(raw.get("manifestId", "")))
    try:
        return AddonRecord.model_validate(
            {
                "transportUrl": url,
                "transportName": raw.get("transportName") or "",
                "manifest": sanitize_manifest(url, manifest_raw),
                "flags": raw.get("flags") or {},
                "metadata": raw.get("metadata") or {},
            }
        )
    except ValidationError:
        logger.warning("Skipping malformed addon %s", url)
        return None


@dataclass
class RawAccount:
    """An imported account before credential handling and reconciliation."""

    id: str
    name: str
    email: str | None
    auth_key: str
    password: str | None
    addons: list[AddonRecord] = field(default_factory=list)


def coerce_accounts(items: list[Any], manifests: dict[str, Any]) -> list[RawAccount]:
    accounts: list[RawAccount] = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            logger.warning("Skipping account entry %d: not an object", index)
            continue
        addons_raw = raw.get("addons") if isinstance(raw.get("addons"), list) else []
        addons = [a for a in (coerce_addon(item, manifests) for item in addons_raw) if a]
        accounts.append(
            RawAccount(
                id=str(raw.get("id") or uuid.uuid4()),
                name=str(raw.get("name") or "Imported Account"),
                email=str(raw["email"]) if raw.get("email") else None,
                auth_key=str(raw.get("authKey") or ""),
                password=str(raw["password"]) if raw.get("password") else None,
                addons=addons,
            )
        )
    return accounts


def coerce_saved_addons(items: list[Any], manifests: dict[str, Any]) -> list[SavedAddon]:
    saved: list[SavedAddon] = []
    now = now_utc()
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            logger.warning("Skipping library entry %d: not an object", index)
            continue
        install_url = raw.get("installUrl") or raw.get("transportUrl")
        manifest_raw = raw.get("manifest") or manifests.get(str(raw.get("manifestId", "")))
        if not install_url or not isinstance(manifest_raw, dict):
            logger.warning("Skipping library entry %d: missing installUrl or manifest", index)
            continue
        manifest = sanitize_manifest(str(install_url), manifest_raw)
        data = {
            **raw,
            "id": raw.get("id") or str(uuid.uuid4()),
            "name": raw.get("name") or manifest.name,
            "installUrl": str(install_url),
            "manifest": manifest,
            "tags": [t for t in raw.get("tags") or [] if isinstance(t, str)],
            "createdAt": parse_timestamp(raw.get("createdAt")) or now,
            "updatedAt": parse_timestamp(raw.get("updatedAt")) or now,
            "lastUsed": parse_timestamp(raw.get("lastUsed")),
        }
        data.pop("manifestId", None)
        try:
            saved.append(SavedAddon.model_validate(data))
        except ValidationError:
            logger.warning("Skipping invalid library entry %d", index, exc_info=True)
    return saved


def _legacy_chain(raw: dict[str, Any], accounts: Sequence[Account]) -> list[str]:
    """Rebuild a chain from primary/backup URL or addon-id fields."""

    def resolve(url_key: str, id_key: str) -> str:
        url = raw.get(url_key)
        if url:
            return str(url)
        addon_id = raw.get(id_key)
        if not addon_id:
            return ""
        account = next((a for a in accounts if a.id == raw.get("accountId")), None)
        if account is None:
            return ""
        match = next((a for a in account.addons if a.manifest.id == addon_id), None)
        return match.transport_url if match else ""

    chain = [resolve("primaryUrl", "primaryAddonId"), resolve("backupUrl", "backupAddonId")]
    return [url for url in chain if url]


def coerce_rules(items: list[Any], accounts: Sequence[Account] = ()) -> list[FailoverRule]:
    rules: list[FailoverRule] = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("accountId"):
            logger.warning("Skipping failover rule %d: missing id or accountId", index)
            continue
        chain = raw.get("priorityChain")
        if not isinstance(chain, list) or not chain:
            chain = _legacy_chain(raw, accounts)
        chain = [str(url) for url in chain if url]
        if not chain:
            logger.warning("Skipping failover rule %s: empty priority chain", raw["id"])
            continue
        data = {**raw, "priorityChain": chain}
        try:
            rules.append(FailoverRule.model_validate(data))
        except ValidationError:
            logger.warning("Skipping invalid failover rule %s", raw["id"], exc_info=True)
    return rules


def coerce_webhook(raw: Any) -> WebhookConfig | None:
    if not isinstance(raw, dict):
        return None
    try:
        return WebhookConfig.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring invalid webhook config")
        return None


# Bundles


@dataclass
class ImportBundle:
    """Everything recognized in an import document. Absent sections are None."""

    accounts: list[RawAccount] | None = None
    saved_addons: list[SavedAddon] | None = None
    rules: list[FailoverRule] | None = None
    webhook: WebhookConfig | None = None
    profiles: list[Any] | None = None
    name: str | None = None


def _profiles(data: Any) -> list[Any] | None:
    if not isinstance(data, dict):
        return None
    profiles = data.get("profiles")
    if isinstance(profiles, dict):
        profiles = list(profiles.values())
    return profiles if isinstance(profiles, list) else None


def parse_import(data: Any, accounts_for_migration: Sequence[Account] = ()) -> ImportBundle:
    """Locate every sub-domain in an export file or a legacy document."""
    manifests = data.get("manifests") if isinstance(data, dict) else None
    manifests = manifests if isinstance(manifests, dict) else {}
    bundle = ImportBundle(profiles=_profiles(data))

    account_items = first_match(ACCOUNT_PARSERS, data)
    if account_items is not None:
        bundle.accounts = coerce_accounts(account_items, manifests)

    if isinstance(data, dict):
        library_items = first_match(LIBRARY_PARSERS[:3], data)
        if library_items is not None:
            bundle.saved_addons = coerce_saved_addons(library_items, manifests)

        failover = first_match(FAILOVER_PARSERS[:2], data)
        if failover is not None:
            bundle.rules = coerce_rules(failover.rules, accounts_for_migration)
            bundle.webhook = coerce_webhook(failover.webhook)

        identity = data.get("identity")
        name = data.get("name") or (identity.get("name") if isinstance(identity, dict) else None)
        bundle.name = str(name) if name else None

    return bundle


def build_export(
    accounts: Sequence[dict[str, Any]],
    saved_addons: Sequence[SavedAddon],
    rules: Sequence[FailoverRule],
    webhook: WebhookConfig,
    profiles: Sequence[Any] = (),
    name: str | None = None,
) -> dict[str, Any]:
    """Build the export document, deduplicating manifests by ``id:version``.

    ``accounts`` are dicts with ``id``, ``name``, ``email``, optional
    plaintext ``authKey``/``password`` and ``addons`` as AddonRecords.
    """
    manifest_map: dict[str, Any] = {}

    def reference(manifest: AddonManifest) -> str:
        key = manifest_key(manifest)
        manifest_map.setdefault(key, manifest.to_json_dict())
        return key

    exported_accounts: list[dict[str, Any]] = []
    for account in accounts:
        addons: list[AddonRecord] = account.get("addons", [])
        entry: dict[str, Any] = {
            key: account[key]
            for key in ("id", "name", "email", "authKey", "password")
            if account.get(key) is not None
        }
        entry["addons"] = [
            {
                "transportUrl": addon.transport_url,
                "transportName": addon.transport_name,
                "manifestId": reference(addon.manifest),
                "flags": addon.flags.to_json_dict(),
                "metadata": addon.metadata.to_json_dict(),
            }
            for addon in addons
        ]
        exported_accounts.append(entry)

    exported_library = []
    for saved in saved_addons:
        item = saved.to_json_dict()
        item.pop("manifest", None)
        item["manifestId"] = reference(saved.manifest)
        exported_library.append(item)

    document: dict[str, Any] = {
        "version": EXPORT_FORMAT_VERSION,
        "exportedAt": format_iso(now_utc()),
        "manifests": manifest_map,
        "accounts": exported_accounts,
        "profiles": list(profiles),
        "addons": {"version": LIBRARY_FORMAT_VERSION, "savedAddons": exported_library},
        "failover": {
            "rules": [rule.to_json_dict() for rule in rules],
            "webhook": webhook.to_json_dict(),
        },
    }
    if name:
        document["identity"] = {"name": name}
    return document
