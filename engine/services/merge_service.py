"""Addon list reconciliation: URL identity, list merge and template layering.

Everything here is pure. Callers own I/O (manifest fetches, persistence) and
feed results in.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from engine.schemas.addon import AddonFlags, AddonRecord
from engine.schemas.library import MergeResult, SkippedAddon

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from engine.schemas.addon import AddonManifest
    from engine.schemas.library import SavedAddon

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Normalize a transport URL for identity comparison.

    Lowercases, sorts query parameters and strips the trailing slash. Input
    that does not parse as an absolute URL falls back to the lowercased text.
    """
    candidate = url.strip().lower()
    try:
        parsed = urlsplit(candidate)
    except ValueError:
        return candidate.rstrip("/")
    if not parsed.scheme or not parsed.netloc:
        return candidate.rstrip("/")
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    normalized = urlunsplit((parsed.scheme, parsed.netloc, parsed.path, query, parsed.fragment))
    return normalized.rstrip("/")


def urls_equivalent(first: str, second: str) -> bool:
    return normalize_url(first) == normalize_url(second)


def _index_by_url(records: Iterable[AddonRecord]) -> dict[str, deque[int]]:
    """Map normalized URL -> queue of positions, in list order."""
    index: dict[str, deque[int]] = defaultdict(deque)
    for position, record in enumerate(records):
        index[normalize_url(record.transport_url)].append(position)
    return index


def _survives_remote_absence(record: AddonRecord) -> bool:
    return not record.flags.enabled or record.flags.protected


def _remote_policy_is_newer(local: AddonRecord, remote: AddonRecord) -> bool:
    remote_stamp = remote.metadata.last_updated
    if remote_stamp is None:
        return False
    local_stamp = local.metadata.last_updated
    return local_stamp is None or remote_stamp > local_stamp


def merge_addon_lists(
    local: list[AddonRecord],
    remote: list[AddonRecord],
    *,
    prefer_newer_policy: bool = False,
) -> list[AddonRecord]:
    """Merge a freshly fetched remote list into the local list.

    Local order is authoritative. A matched entry takes the remote manifest
    and keeps local flags and metadata. An unmatched local entry survives only
    when disabled or protected. Unconsumed remote entries are appended in
    remote order. Duplicate URLs are matched greedily: the first unmatched
    remote entry with the same URL claims the slot.

    With ``prefer_newer_policy`` (snapshots from another device, which do
    carry flags) a remote entry whose ``metadata.lastUpdated`` is strictly
    newer also contributes its flags and metadata.
    """
    remote_positions = _index_by_url(remote)
    consumed: set[int] = set()
    merged: list[AddonRecord] = []

    for record in local:
        queue = remote_positions.get(normalize_url(record.transport_url))
        if queue:
            position = queue.popleft()
            consumed.add(position)
            fresh = remote[position]
            update = {
                "manifest": fresh.manifest.model_copy(deep=True),
                "transport_name": fresh.transport_name or record.transport_name,
            }
            if prefer_newer_policy and _remote_policy_is_newer(record, fresh):
                update["flags"] = fresh.flags.model_copy()
                update["metadata"] = fresh.metadata.model_copy(deep=True)
            merged.append(record.model_copy(update=update, deep=True))
        elif _survives_remote_absence(record):
            merged.append(record.model_copy(deep=True))
        else:
            logger.debug(
                "Dropping %s: absent remotely and not disabled or protected", record.transport_url
            )

    for position, fresh in enumerate(remote):
        if position not in consumed:
            merged.append(fresh.model_copy(deep=True))

    return merged


def plan_library_merge(
    current: list[AddonRecord],
    templates: list[SavedAddon],
    manifests: Mapping[str, AddonManifest | None],
) -> tuple[list[AddonRecord], MergeResult]:
    """Layer saved templates onto an account's addon list.

    ``manifests`` maps a template id to its freshly fetched manifest, or None
    when the fetch failed. A matched protected entry is left untouched. A
    matched unprotected entry takes the fresh manifest, or is skipped when
    the fetch failed. An unmatched template is appended, falling back to the
    template's cached manifest when the fetch failed. Each template matches
    the first entry with its URL, including one appended by an earlier
    template. Local entries that no template matches are kept.
    """
    result = MergeResult()
    addons = [record.model_copy(deep=True) for record in current]
    first_position: dict[str, int] = {}
    for position, record in enumerate(addons):
        first_position.setdefault(normalize_url(record.transport_url), position)

    for template in templates:
        addon_id = template.manifest.id or template.id
        key = normalize_url(template.install_url)
        fetched = manifests.get(template.id)

        if key in first_position:
            existing = addons[first_position[key]]
            if existing.flags.protected:
                result.protected.append(addon_id)
                continue
            if fetched is None:
                result.skipped.append(SkippedAddon(addon_id=addon_id, reason="fetch-failed"))
                continue
            existing.manifest = fetched.model_copy(deep=True)
            result.updated.append(addon_id)
            continue

        manifest = fetched if fetched is not None else template.manifest
        if not manifest.id and not manifest.name:
            result.skipped.append(SkippedAddon(addon_id=addon_id, reason="no-manifest"))
            continue
        addons.append(
            AddonRecord(
                transport_url=template.install_url,
                manifest=manifest.model_copy(deep=True),
                flags=AddonFlags(enabled=True, protected=False),
            )
        )
        first_position[key] = len(addons) - 1
        result.added.append(addon_id)

    return addons, result


def remove_by_manifest_ids(
    current: list[AddonRecord], manifest_ids: Iterable[str]
) -> tuple[list[AddonRecord], list[str], list[str]]:
    """Drop entries whose manifest id is listed, keeping protected ones.

    Returns (kept, removed_ids, protected_ids).
    """
    targets = set(manifest_ids)
    kept: list[AddonRecord] = []
    removed: list[str] = []
    protected: list[str] = []
    for record in current:
        if record.manifest.id not in targets:
            kept.append(record)
        elif record.flags.protected:
            protected.append(record.manifest.id)
            kept.append(record)
        else:
            removed.append(record.manifest.id)
    return kept, removed, protected
