"""Sanitization of the host config before it leaves the machine.

Private keys, key file paths and local scripts must never be synced, and
machine paths are rewritten to their portable form. Deny-list removal runs
first at every depth, then an explicit allow-list decides what is copied.
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from .models import PAYLOAD_VERSION, SyncPayload, SyncableGroup, SyncableProfile, VaultBlob, now_ms
from .path_mapper import PathMapper, to_portable
from .tree import ConfigTree, deep_copy, deep_remove_keys, drop_undefined, is_mapping, pick

__all__ = [
    "FORBIDDEN_PROFILE_FIELDS",
    "PROFILE_FIELDS",
    "PROFILE_OPTION_FIELDS",
    "create_payload",
    "profile_key",
    "sanitize_group",
    "sanitize_profile",
    "sanitize_settings",
]

logger = logging.getLogger(__name__)

FORBIDDEN_PROFILE_FIELDS = (
    "privateKey",
    "privateKeys",
    "privateKeyPath",
    "privateKeyPaths",
    "keyPath",
    "keyPaths",
    "identityFile",
    "identityFiles",
    "proxyCommand",
    "scriptBeforeConnect",
    "scriptAfterConnect",
)

# Top-level profile fields copied besides id/name/type
PROFILE_FIELDS = (
    "group",
    "icon",
    "color",
    "weight",
    "disableDynamicTitle",
    "behaviorOnSessionEnd",
)

PROFILE_OPTION_FIELDS = (
    "host",
    "port",
    "user",
    "auth",
    "password",
    "algorithms",
    "keepaliveInterval",
    "keepaliveCountMax",
    "readyTimeout",
    "x11",
    "agentForward",
    "jumpHost",
    "cwd",
)

DEFAULT_PROFILE_NAME = "Unnamed Profile"

TERMINAL_FIELDS = (
    "frontend",
    "fontSize",
    "fontFamily",
    "fontWeight",
    "fontWeightBold",
    "ligatures",
    "cursor",
    "cursorBlink",
    "bell",
    "bracketedPaste",
    "background",
    "scrollbackLines",
    "rightClick",
    "wordSeparator",
    "copyOnSelect",
    "pasteOnMiddleClick",
    "shellIntegration",
    "searchOptions",
    "autoOpen",
    "warnOnMultiLinePaste",
    "altIsMeta",
    "scrollOnInput",
    "focusOnCreation",
    "hideCloseButton",
    "hideTabOptions",
)

# Only taken when they are mappings / lists respectively
TERMINAL_SCHEME_FIELDS = ("colorScheme", "lightColorScheme")

APPEARANCE_FIELDS = (
    "theme",
    "frame",
    "opacity",
    "vibrancy",
    "tabsOnTop",
    "dockPosition",
    "spaciness",
    "colorSchemeMode",
    "css",
    "font",
    "fontSize",
    "lastTabClosesWindow",
)

# agentPath and winSCPPath point at local executables and stay behind
SSH_FIELDS = ("warnOnClose", "agentType", "x11Display")

APPLICATION_FIELDS = (
    "restoreTerminalOnStartup",
    "enableAnalytics",
    "enableAutoupdate",
    "language",
)

WINDOW_FIELDS = (
    "startInTray",
    "startMinimized",
    "closeToTray",
    "confirmClose",
    "restoreWindowProtocol",
)

QUICK_COMMANDS_KEY = "quick-cmds"


def profile_key(profile: Any) -> Optional[str]:
    """The join key of a raw profile as a string, or None if it has no usable id.

    Unquoted YAML ids load as numbers; they are carried as their string form
    so the remote side always sees string ids.
    """
    if not is_mapping(profile):
        return None
    value = profile.get("id")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    key = str(value)
    return key or None


def sanitize_profile(
    profile: Any, mapper: Optional[PathMapper] = None
) -> Optional[SyncableProfile]:
    """Project one raw profile onto the syncable schema.

    Args:
        profile: Raw profile mapping from the host config
        mapper: Path mapper for ``options.cwd`` (defaults to this machine)

    Returns:
        Sanitized profile, or None if the profile has no ``type`` or ``id``
    """
    if not is_mapping(profile):
        return None

    profile_type = profile.get("type")
    profile_id = profile_key(profile)
    if not profile_type or not profile_id:
        return None

    cleaned = deep_remove_keys(profile, FORBIDDEN_PROFILE_FIELDS)

    result: SyncableProfile = {
        "id": profile_id,
        "name": cleaned.get("name") or DEFAULT_PROFILE_NAME,
        "type": profile_type,
    }
    result.update(pick(cleaned, PROFILE_FIELDS))

    options = cleaned.get("options")
    if is_mapping(options):
        safe_options = pick(options, PROFILE_OPTION_FIELDS)
        if "cwd" in safe_options:
            safe_options["cwd"] = _portable(safe_options["cwd"], mapper)
        result["options"] = safe_options

    return result


def sanitize_group(group: Any) -> Optional[SyncableGroup]:
    """Shallow ``id``/``name``/``collapsed`` projection of a profile group."""
    if not is_mapping(group) or not group.get("id"):
        return None
    projected = {
        "id": group["id"],
        "name": group.get("name"),
        "collapsed": group.get("collapsed"),
    }
    return drop_undefined(projected)


def sanitize_settings(config: Mapping, mapper: Optional[PathMapper] = None) -> ConfigTree:
    """Extract the syncable UI settings from the raw host config.

    Never raises: sections that are absent or of the wrong shape simply do
    not appear in the result.
    """
    settings: ConfigTree = {}

    terminal = config.get("terminal")
    if is_mapping(terminal):
        section = pick(terminal, TERMINAL_FIELDS)
        if "background" in section:
            section["background"] = _portable(section["background"], mapper)
        for key in TERMINAL_SCHEME_FIELDS:
            if is_mapping(terminal.get(key)):
                section[key] = deep_copy(terminal[key])
        if isinstance(terminal.get("customColorSchemes"), list):
            section["customColorSchemes"] = deep_copy(terminal["customColorSchemes"])
        settings["terminal"] = section

    appearance = config.get("appearance")
    if is_mapping(appearance):
        settings["appearance"] = pick(appearance, APPEARANCE_FIELDS)

    hotkeys = config.get("hotkeys")
    if is_mapping(hotkeys):
        settings["hotkeys"] = deep_copy(hotkeys)

    ssh = config.get("ssh")
    if is_mapping(ssh):
        settings["ssh"] = pick(ssh, SSH_FIELDS)

    if isinstance(config.get("colorSchemes"), list):
        settings["colorSchemes"] = deep_copy(config["colorSchemes"])

    if isinstance(config.get("pluginBlacklist"), list):
        settings["pluginBlacklist"] = deep_copy(config["pluginBlacklist"])

    quick_cmds = config.get(QUICK_COMMANDS_KEY)
    if is_mapping(quick_cmds):
        section = {}
        for key in ("commands", "groups"):
            if isinstance(quick_cmds.get(key), list):
                section[key] = deep_copy(quick_cmds[key])
        settings["quickCmds"] = section

    application = config.get("application")
    if is_mapping(application):
        settings["application"] = pick(application, APPLICATION_FIELDS)

    window = config.get("window")
    if is_mapping(window):
        settings["window"] = pick(window, WINDOW_FIELDS)

    return settings


def create_payload(
    config: Mapping,
    hostname: str,
    installed_plugins: Iterable[str] = (),
    mapper: Optional[PathMapper] = None,
) -> SyncPayload:
    """Build the complete sanitized payload for this machine.

    Args:
        config: Raw host config
        hostname: Name of this machine (informational)
        installed_plugins: Names of extensions installed locally
        mapper: Path mapper (defaults to this machine)

    Returns:
        SyncPayload stamped with version 1 and the current time
    """
    profiles: list[SyncableProfile] = []
    raw_profiles = config.get("profiles")
    if isinstance(raw_profiles, list):
        for raw in raw_profiles:
            sanitized = sanitize_profile(raw, mapper)
            if sanitized is not None:
                profiles.append(sanitized)

    skipped = len(raw_profiles) - len(profiles) if isinstance(raw_profiles, list) else 0
    if skipped:
        logger.debug(f"Skipped {skipped} profiles without id or type")

    groups: list[SyncableGroup] = []
    raw_groups = config.get("groups")
    if isinstance(raw_groups, list):
        for raw in raw_groups:
            group = sanitize_group(raw)
            if group is not None:
                groups.append(group)

    settings = sanitize_settings(config, mapper)
    settings["installedPlugins"] = list(installed_plugins)

    return SyncPayload(
        version=PAYLOAD_VERSION,
        last_updated=now_ms(),
        source_host=hostname,
        profiles=profiles,
        groups=groups,
        settings=settings,
        vault=VaultBlob.from_dict(config.get("vault")),
    )


def _portable(value: Any, mapper: Optional[PathMapper]) -> Any:
    return mapper.to_portable(value) if mapper is not None else to_portable(value)
