"""Merging of local and remote configuration snapshots.

Strategy:
1. Profiles are matched by ``id``.
2. A remote profile unknown locally is added; a local profile unknown
   remotely is kept. Nothing is ever deleted by a merge.
3. For profiles on both sides the newer payload (``lastUpdated``, ties go
   to local) wins field conflicts.
4. Merges always start from the raw local profile, so private keys and
   other local-only fields are carried along untouched. Only allow-listed
   fields are ever read from the remote side.
5. Settings take remote values at the leaves; the vault moves as one blob.
"""

import json
import logging
from dataclasses import replace
from typing import Any, Mapping, Optional

from .models import MergeConflict, MergeResult, SyncPayload, SyncableGroup, SyncableProfile, VaultBlob, now_ms
from .path_mapper import PathMapper, to_local
from .sanitize import (
    DEFAULT_PROFILE_NAME,
    PROFILE_FIELDS,
    PROFILE_OPTION_FIELDS,
    QUICK_COMMANDS_KEY,
    profile_key,
    sanitize_profile,
)
from .tree import ConfigTree, deep_copy, deep_merge, is_mapping

__all__ = [
    "SYNCABLE_PROFILE_FIELDS",
    "apply_to_config",
    "merge_groups",
    "merge_payloads",
    "merge_profile",
    "merge_settings",
]

logger = logging.getLogger(__name__)

SYNCABLE_PROFILE_FIELDS = ("name", "type") + PROFILE_FIELDS

# Settings sections merged onto the matching top-level config key
_MERGED_SECTIONS = {
    "terminal": "terminal",
    "appearance": "appearance",
    "hotkeys": "hotkeys",
    "ssh": "ssh",
    "application": "application",
    "window": "window",
    "quickCmds": QUICK_COMMANDS_KEY,
}


def merge_profile(
    local_profile: Mapping,
    remote_profile: Mapping,
    local_wins: bool,
    mapper: Optional[PathMapper] = None,
) -> ConfigTree:
    """Merge a remote syncable profile into a copy of the raw local one.

    Args:
        local_profile: Raw local profile (may hold private keys)
        remote_profile: Sanitized profile from the other side
        local_wins: Keep local values for fields the local profile defines
        mapper: Path mapper used to localize ``options.cwd``

    Returns:
        New raw profile; the inputs are not modified
    """
    merged = deep_copy(dict(local_profile))

    for field in SYNCABLE_PROFILE_FIELDS:
        remote_value = remote_profile.get(field)
        if remote_value is None:
            continue
        if local_wins and merged.get(field) is not None:
            continue
        merged[field] = deep_copy(remote_value)

    remote_options = remote_profile.get("options")
    if is_mapping(remote_options):
        local_options = merged.get("options")
        local_options = local_options if is_mapping(local_options) else {}

        for field in PROFILE_OPTION_FIELDS:
            remote_value = remote_options.get(field)
            if remote_value is None:
                continue
            if field == "cwd":
                remote_value = mapper.to_local(remote_value) if mapper else to_local(remote_value)

            if field == "password" and not local_options.get(field):
                # A new machine must be able to receive a saved password
                local_options[field] = deep_copy(remote_value)
                continue
            if local_wins and local_options.get(field) is not None:
                continue
            local_options[field] = deep_copy(remote_value)

        merged["options"] = local_options

    return merged


def merge_groups(
    local_groups: list[SyncableGroup], remote_groups: list[SyncableGroup]
) -> tuple[list[SyncableGroup], list[str]]:
    """Append remote groups unknown locally; known groups keep local state.

    Returns:
        ``(merged, added_ids)``
    """
    merged = [deep_copy(g) for g in local_groups]
    local_ids = {g.get("id") for g in local_groups}
    added: list[str] = []

    for group in remote_groups:
        group_id = group.get("id")
        if group_id in local_ids:
            continue
        merged.append(deep_copy(group))
        local_ids.add(group_id)
        added.append(group_id)

    return merged, added


def merge_settings(local_settings: Mapping, remote_settings: Mapping) -> ConfigTree:
    """Deep-merge settings with remote taking precedence at the leaves.

    A fresh machine should inherit the personalization stored in the cloud
    rather than keep its empty defaults; local fills in what remote lacks.
    """
    return deep_merge(local_settings, remote_settings)


def _fingerprint(profile: Mapping) -> str:
    return json.dumps(profile, sort_keys=True, default=str)


def _raw_profiles_by_id(config: Mapping) -> dict[str, ConfigTree]:
    profiles = config.get("profiles")
    result: dict[str, ConfigTree] = {}
    if isinstance(profiles, list):
        for profile in profiles:
            key = profile_key(profile)
            if key is not None:
                result.setdefault(key, profile)
    return result


def _merge_vault(local: Optional[VaultBlob], remote: Optional[VaultBlob]) -> Optional[VaultBlob]:
    # Once a machine has a vault it is treated as device-sensitive
    if local is not None and local.contents:
        return replace(local)
    if remote is not None and remote.contents:
        return replace(remote)
    return None


def merge_payloads(
    local: SyncPayload,
    remote: SyncPayload,
    local_config: Mapping,
    mapper: Optional[PathMapper] = None,
) -> MergeResult:
    """Reconcile the local and remote payloads.

    Args:
        local: Payload sanitized from the current local config
        remote: Payload decrypted from the remote store
        local_config: Raw local config, the source of local-only secrets
        mapper: Path mapper for portable paths

    Returns:
        MergeResult whose payload is safe to upload again
    """
    local_wins = local.last_updated >= remote.last_updated
    resolution = "local" if local_wins else "remote"

    remote_by_id = {p["id"]: p for p in remote.profiles}
    originals = _raw_profiles_by_id(local_config)

    merged_profiles: list[SyncableProfile] = []
    conflicts: list[MergeConflict] = []
    updated: list[str] = []
    seen: set[str] = set()

    for local_profile in local.profiles:
        profile_id = local_profile["id"]
        seen.add(profile_id)
        remote_profile = remote_by_id.get(profile_id)

        if remote_profile is None:
            merged_profiles.append(deep_copy(local_profile))
            continue

        base = originals.get(profile_id, local_profile)
        merged_raw = merge_profile(base, remote_profile, local_wins, mapper)
        projected = sanitize_profile(merged_raw, mapper)
        merged_profiles.append(projected if projected is not None else deep_copy(local_profile))

        if _fingerprint(local_profile) != _fingerprint(remote_profile):
            conflicts.append(
                MergeConflict(
                    profile_id=profile_id,
                    local_profile=deep_copy(local_profile),
                    remote_profile=deep_copy(remote_profile),
                    resolution=resolution,
                )
            )
        updated.append(profile_id)

    added_profiles: list[str] = []
    for remote_profile in remote.profiles:
        if remote_profile["id"] not in seen:
            merged_profiles.append(deep_copy(remote_profile))
            added_profiles.append(remote_profile["id"])

    merged_groups, added_groups = merge_groups(local.groups, remote.groups)

    merged = SyncPayload(
        version=max(local.version, remote.version),
        last_updated=now_ms(),
        source_host=local.source_host,
        profiles=merged_profiles,
        groups=merged_groups,
        settings=merge_settings(local.settings, remote.settings),
        vault=_merge_vault(local.vault, remote.vault),
    )

    logger.debug(
        f"Merged payloads: {len(added_profiles)} added, {len(conflicts)} conflicts "
        f"({resolution} wins)"
    )
    return MergeResult(
        merged_payload=merged,
        conflicts=conflicts,
        added_profiles=added_profiles,
        updated_profiles=updated,
        added_groups=added_groups,
    )


def _localize_new_profile(profile: Mapping, mapper: Optional[PathMapper]) -> ConfigTree:
    result = deep_copy(dict(profile))
    options = result.get("options")
    if is_mapping(options) and "cwd" in options:
        options["cwd"] = mapper.to_local(options["cwd"]) if mapper else to_local(options["cwd"])
    return result


def _apply_profiles(
    config: ConfigTree, payload: SyncPayload, mapper: Optional[PathMapper]
) -> None:
    synced_by_id = {p["id"]: p for p in payload.profiles}
    raw_profiles = config.get("profiles")
    raw_profiles = raw_profiles if isinstance(raw_profiles, list) else []

    profiles: list[Any] = []
    placed: set[str] = set()
    for raw in raw_profiles:
        profile_id = profile_key(raw)
        synced = synced_by_id.get(profile_id) if profile_id else None
        if synced is not None and profile_id not in placed:
            # Accept everything from the merged payload; secrets stay put
            merged = merge_profile(raw, synced, False, mapper)
            if synced.get("name") == DEFAULT_PROFILE_NAME and not raw.get("name"):
                # Placeholder from sanitizing, not a name the user chose
                if "name" in raw:
                    merged["name"] = raw["name"]
                else:
                    merged.pop("name", None)
            profiles.append(merged)
            placed.add(profile_id)
        else:
            # Unsyncable or local-only entries are left as they are
            profiles.append(raw)

    for synced in payload.profiles:
        if synced["id"] not in placed:
            profiles.append(_localize_new_profile(synced, mapper))
            placed.add(synced["id"])

    config["profiles"] = profiles


def _apply_groups(config: ConfigTree, groups: list[SyncableGroup]) -> None:
    if not groups:
        return
    raw_groups = config.get("groups")
    raw_by_id = {}
    if isinstance(raw_groups, list):
        raw_by_id = {g.get("id"): g for g in raw_groups if is_mapping(g)}

    result = [raw_by_id.get(g["id"]) or deep_copy(g) for g in groups]
    # Groups the payload does not know about (e.g. without an id) stay
    known = {g["id"] for g in groups}
    if isinstance(raw_groups, list):
        result.extend(g for g in raw_groups if not (is_mapping(g) and g.get("id") in known))
    config["groups"] = result


def apply_to_config(
    config: Mapping, payload: SyncPayload, mapper: Optional[PathMapper] = None
) -> ConfigTree:
    """Write a merged payload back into a copy of the raw config.

    Raw profiles are re-merged rather than replaced so private keys and
    other local-only fields survive; settings sections are deep-merged so
    host-specific keys outside the syncable schema are preserved.
    """
    result = deep_copy(dict(config))

    _apply_profiles(result, payload, mapper)
    _apply_groups(result, payload.groups)

    if payload.vault is not None and payload.vault.contents:
        result["vault"] = payload.vault.to_dict()

    settings = payload.settings
    for section, key in _MERGED_SECTIONS.items():
        value = settings.get(section)
        if not is_mapping(value):
            continue
        if section == "terminal" and "background" in value:
            value = dict(value)
            value["background"] = (
                mapper.to_local(value["background"]) if mapper else to_local(value["background"])
            )
        current = result.get(key)
        result[key] = deep_merge(current if is_mapping(current) else {}, value)

    color_schemes = settings.get("colorSchemes")
    if isinstance(color_schemes, list) and color_schemes:
        result["colorSchemes"] = deep_copy(color_schemes)

    blacklist = settings.get("pluginBlacklist")
    if isinstance(blacklist, list):
        result["pluginBlacklist"] = deep_copy(blacklist)

    return result
