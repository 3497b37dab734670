"""Tests for payload merging and applying merged state."""

import json

from termsync.sync.merge import (
    apply_to_config,
    merge_groups,
    merge_payloads,
    merge_profile,
    merge_settings,
)
from termsync.sync.models import SyncPayload, VaultBlob
from termsync.sync.path_mapper import PathMapper
from termsync.sync.sanitize import FORBIDDEN_PROFILE_FIELDS, create_payload

MAPPER = PathMapper(home="/home/alice", platform="posix")


def payload(last_updated, profiles=None, groups=None, settings=None, vault=None, host="host"):
    return SyncPayload(
        version=1,
        last_updated=last_updated,
        source_host=host,
        profiles=profiles or [],
        groups=groups or [],
        settings=settings or {},
        vault=vault,
    )


class TestMergeProfile:
    """Tests for merge_profile."""

    def test_local_wins_keeps_defined_values(self):
        """Test that local values stand when local is newer."""
        local = {"id": "p1", "name": "A", "type": "ssh", "options": {"host": "a"}}
        remote = {"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b", "port": 2222}}

        merged = merge_profile(local, remote, local_wins=True, mapper=MAPPER)

        assert merged["name"] == "A"
        assert merged["options"]["host"] == "a"
        # Fields local doesn't define are still filled in
        assert merged["options"]["port"] == 2222

    def test_remote_wins(self):
        """Test that remote values replace local when remote is newer."""
        local = {"id": "p1", "name": "A", "type": "ssh", "options": {"host": "a"}}
        remote = {"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b"}}

        merged = merge_profile(local, remote, local_wins=False, mapper=MAPPER)

        assert merged["name"] == "B"
        assert merged["options"]["host"] == "b"

    def test_local_secrets_preserved(self):
        """Test that private keys on the local profile survive a merge."""
        local = {
            "id": "p1",
            "name": "A",
            "type": "ssh",
            "options": {"host": "a", "privateKeys": ["/home/alice/.ssh/id"]},
            "scriptBeforeConnect": "echo",
        }
        remote = {"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b"}}

        merged = merge_profile(local, remote, local_wins=False, mapper=MAPPER)

        assert merged["options"]["privateKeys"] == ["/home/alice/.ssh/id"]
        assert merged["scriptBeforeConnect"] == "echo"

    def test_password_bootstrap_exception(self):
        """Test that a missing local password is filled from remote."""
        local = {"id": "p1", "name": "A", "type": "ssh", "options": {"host": "a"}}
        remote = {"id": "p1", "name": "A", "type": "ssh", "options": {"password": "s3cret"}}

        merged = merge_profile(local, remote, local_wins=True, mapper=MAPPER)

        assert merged["options"]["password"] == "s3cret"

    def test_local_password_kept_when_local_wins(self):
        """Test that an existing local password is kept when local is newer."""
        local = {"id": "p1", "type": "ssh", "options": {"password": "mine"}}
        remote = {"id": "p1", "type": "ssh", "options": {"password": "theirs"}}

        merged = merge_profile(local, remote, local_wins=True, mapper=MAPPER)

        assert merged["options"]["password"] == "mine"

    def test_cwd_localized(self):
        """Test that a portable working directory lands as a machine path."""
        local = {"id": "p1", "type": "local"}
        remote = {"id": "p1", "type": "local", "options": {"cwd": "$SYNC_HOME/src"}}

        merged = merge_profile(local, remote, local_wins=False, mapper=MAPPER)

        assert merged["options"]["cwd"] == "/home/alice/src"

    def test_inputs_not_modified(self):
        """Test that merge_profile is pure."""
        local = {"id": "p1", "name": "A", "type": "ssh", "options": {"host": "a"}}
        remote = {"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b"}}
        before = json.dumps([local, remote], sort_keys=True)

        merge_profile(local, remote, local_wins=False, mapper=MAPPER)

        assert json.dumps([local, remote], sort_keys=True) == before


class TestMergeGroupsAndSettings:
    """Tests for merge_groups and merge_settings."""

    def test_groups_union(self):
        """Test that remote-only groups are appended and local state kept."""
        local = [{"id": "g1", "name": "Local name", "collapsed": True}]
        remote = [{"id": "g1", "name": "Remote name"}, {"id": "g2", "name": "New"}]

        merged, added = merge_groups(local, remote)

        assert merged == [
            {"id": "g1", "name": "Local name", "collapsed": True},
            {"id": "g2", "name": "New"},
        ]
        assert added == ["g2"]

    def test_settings_remote_wins_at_leaves(self):
        """Test the deep merge of settings."""
        local = {"terminal": {"fontSize": 12, "fontFamily": "Mono"}, "hotkeys": {"a": ["x"]}}
        remote = {"terminal": {"fontSize": 16}, "appearance": {"theme": "Dark"}}

        merged = merge_settings(local, remote)

        assert merged == {
            "terminal": {"fontSize": 16, "fontFamily": "Mono"},
            "hotkeys": {"a": ["x"]},
            "appearance": {"theme": "Dark"},
        }


class TestMergePayloads:
    """Tests for merge_payloads."""

    def test_new_machine_bootstrap(self):
        """Test that an empty machine takes every remote profile."""
        local = payload(2000)
        remote = payload(1000, profiles=[{"id": "p1", "name": "prod", "type": "ssh"}])

        result = merge_payloads(local, remote, {}, MAPPER)

        assert result.merged_payload.profile_ids() == ["p1"]
        assert result.added_profiles == ["p1"]
        assert result.conflicts == []

    def test_timestamp_conflict_local_newer(self):
        """Test that the newer local payload wins and a conflict is recorded."""
        local = payload(2000, profiles=[{"id": "p1", "name": "A", "type": "ssh"}])
        remote = payload(1000, profiles=[{"id": "p1", "name": "B", "type": "ssh"}])

        result = merge_payloads(local, remote, {}, MAPPER)

        assert result.merged_payload.profiles[0]["name"] == "A"
        assert len(result.conflicts) == 1
        assert result.conflicts[0].profile_id == "p1"
        assert result.conflicts[0].resolution == "local"

    def test_timestamp_conflict_remote_newer(self):
        """Test that the newer remote payload wins."""
        local = payload(1000, profiles=[{"id": "p1", "name": "A", "type": "ssh"}])
        remote = payload(2000, profiles=[{"id": "p1", "name": "B", "type": "ssh"}])

        result = merge_payloads(local, remote, {}, MAPPER)

        assert result.merged_payload.profiles[0]["name"] == "B"
        assert result.conflicts[0].resolution == "remote"

    def test_tie_goes_to_local(self):
        """Test that equal timestamps resolve in favour of local."""
        local = payload(1500, profiles=[{"id": "p1", "name": "A", "type": "ssh"}])
        remote = payload(1500, profiles=[{"id": "p1", "name": "B", "type": "ssh"}])

        result = merge_payloads(local, remote, {}, MAPPER)

        assert result.merged_payload.profiles[0]["name"] == "A"
        assert result.conflicts[0].resolution == "local"

    def test_identical_profiles_no_conflict(self):
        """Test that equal profiles do not produce conflicts."""
        profile = {"id": "p1", "name": "A", "type": "ssh", "options": {"port": 22, "host": "h"}}
        reordered = {"type": "ssh", "options": {"host": "h", "port": 22}, "name": "A", "id": "p1"}

        result = merge_payloads(payload(1000, [profile]), payload(2000, [reordered]), {}, MAPPER)

        assert result.conflicts == []

    def test_no_profile_lost(self):
        """Test that the merged ids are the union of both sides."""
        local = payload(1000, profiles=[{"id": "a", "type": "ssh"}, {"id": "b", "type": "ssh"}])
        remote = payload(2000, profiles=[{"id": "b", "type": "ssh"}, {"id": "c", "type": "ssh"}])

        result = merge_payloads(local, remote, {}, MAPPER)

        ids = result.merged_payload.profile_ids()
        assert sorted(ids) == ["a", "b", "c"]
        assert len(ids) == len(set(ids))

    def test_self_merge_is_idempotent(self):
        """Test that merging a payload with itself changes nothing."""
        raw = {
            "profiles": [
                {
                    "id": "p1",
                    "name": "prod",
                    "type": "ssh",
                    "options": {
                        "host": "db",
                        "privateKeys": ["/home/alice/.ssh/id"],
                        "jumpHost": {"host": "bastion", "identityFile": "/home/alice/.ssh/j"},
                    },
                },
                {"id": "p2", "type": "local", "options": {"cwd": "/home/alice/src"}},
            ]
        }
        snapshot = create_payload(raw, "laptop", mapper=MAPPER)

        result = merge_payloads(snapshot, snapshot, raw, MAPPER)

        assert result.conflicts == []
        assert result.added_profiles == []
        assert result.merged_payload.profile_ids() == snapshot.profile_ids()
        assert result.merged_payload.profiles == snapshot.profiles

    def test_disjoint_profiles_are_summed(self):
        """Test that disjoint id sets merge into their union without conflicts."""
        local_raw = {
            "profiles": [
                {
                    "id": "a",
                    "type": "ssh",
                    "options": {"host": "a", "privateKeys": ["k"], "cwd": "/home/alice/a"},
                },
                {"id": "b", "type": "local", "options": {"cwd": "/home/alice/b"}},
            ]
        }
        remote_raw = {
            "profiles": [
                {
                    "id": "c",
                    "type": "ssh",
                    "options": {"host": "c", "jumpHost": {"host": "j", "identityFile": "/k"}},
                }
            ]
        }
        local = create_payload(local_raw, "laptop", mapper=MAPPER)
        remote = create_payload(remote_raw, "desktop", mapper=MAPPER)

        result = merge_payloads(local, remote, local_raw, MAPPER)

        ids = result.merged_payload.profile_ids()
        assert len(ids) == len(local.profiles) + len(remote.profiles)
        assert sorted(ids) == ["a", "b", "c"]
        assert result.conflicts == []
        assert result.added_profiles == ["c"]

    def test_merged_payload_is_sanitized(self):
        """Test that local secrets never reach the merged payload."""
        raw = {
            "profiles": [
                {
                    "id": "p1",
                    "name": "A",
                    "type": "ssh",
                    "options": {"host": "a", "privateKeys": ["/home/alice/.ssh/id"]},
                }
            ]
        }
        local = payload(1000, profiles=[{"id": "p1", "name": "A", "type": "ssh", "options": {"host": "a"}}])
        remote = payload(2000, profiles=[{"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b"}}])

        result = merge_payloads(local, remote, raw, MAPPER)

        text = json.dumps(result.merged_payload.to_dict())
        for key in FORBIDDEN_PROFILE_FIELDS:
            assert f'"{key}"' not in text
        assert result.merged_payload.profiles[0]["options"]["host"] == "b"

    def test_vault_local_precedence(self):
        """Test that an established local vault is kept byte-for-byte."""
        local_vault = VaultBlob(contents="LOCAL", iv="li", key_salt="ls", version=1)
        remote_vault = VaultBlob(contents="REMOTE", iv="ri", key_salt="rs", version=1)

        result = merge_payloads(
            payload(1000, vault=local_vault), payload(2000, vault=remote_vault), {}, MAPPER
        )

        assert result.merged_payload.vault == local_vault

    def test_vault_taken_from_remote_when_missing(self):
        """Test that a machine without a vault receives the remote one."""
        remote_vault = VaultBlob(contents="REMOTE", iv="ri", key_salt="rs", version=1)

        result = merge_payloads(payload(1000), payload(2000, vault=remote_vault), {}, MAPPER)

        assert result.merged_payload.vault == remote_vault

    def test_merged_metadata(self):
        """Test version, timestamp and groups of the merged payload."""
        local = payload(1000, groups=[{"id": "g1"}], host="laptop")
        remote = payload(2000, groups=[{"id": "g2"}], host="desktop")
        remote.version = 2

        result = merge_payloads(local, remote, {}, MAPPER)
        merged = result.merged_payload

        assert merged.version == 2
        assert merged.last_updated >= 2000
        assert merged.source_host == "laptop"
        assert [g["id"] for g in merged.groups] == ["g1", "g2"]
        assert result.added_groups == ["g2"]


class TestApplyToConfig:
    """Tests for apply_to_config."""

    def test_profiles_updated_in_place(self):
        """Test that raw profiles are merged and keep local secrets."""
        config = {
            "profiles": [
                {"id": "builtin", "name": "no type"},
                {
                    "id": "p1",
                    "name": "A",
                    "type": "ssh",
                    "options": {"host": "a", "privateKeys": ["k"]},
                },
            ]
        }
        merged = payload(3000, profiles=[
            {"id": "p1", "name": "B", "type": "ssh", "options": {"host": "b"}},
            {"id": "p2", "name": "New", "type": "local", "options": {"cwd": "$SYNC_HOME/w"}},
        ])

        result = apply_to_config(config, merged, MAPPER)

        profiles = result["profiles"]
        assert [p["id"] for p in profiles] == ["builtin", "p1", "p2"]
        assert profiles[1]["name"] == "B"
        assert profiles[1]["options"] == {"host": "b", "privateKeys": ["k"]}
        assert profiles[2]["options"]["cwd"] == "/home/alice/w"
        # Input left untouched
        assert config["profiles"][1]["name"] == "A"

    def test_numeric_ids_not_duplicated(self):
        """Test that a raw numeric id matches its string form in the payload."""
        config = {"profiles": [{"id": 123, "name": "A", "type": "ssh", "options": {"host": "a"}}]}
        snapshot = create_payload(config, "laptop", mapper=MAPPER)
        restored = SyncPayload.from_dict(snapshot.to_dict())

        result = apply_to_config(config, restored, MAPPER)

        assert restored.profile_ids() == ["123"]
        assert len(result["profiles"]) == 1
        assert result["profiles"][0]["id"] == 123

    def test_unnamed_profiles_stay_unnamed(self):
        """Test that the placeholder name is not written into raw profiles."""
        config = {
            "profiles": [
                {"id": "p1", "type": "ssh", "options": {"host": "a"}},
                {"id": "p2", "name": "", "type": "ssh", "options": {"host": "b"}},
                {"id": "p3", "name": "Named", "type": "ssh", "options": {"host": "c"}},
            ]
        }
        snapshot = create_payload(config, "laptop", mapper=MAPPER)
        merged = merge_payloads(snapshot, snapshot, config, MAPPER).merged_payload

        result = apply_to_config(config, merged, MAPPER)

        assert result["profiles"] == config["profiles"]

    def test_groups(self):
        """Test that raw group objects are kept and new ones appended."""
        config = {"groups": [{"id": "g1", "name": "Mine", "defaults": {"x": 1}}]}
        merged = payload(3000, groups=[{"id": "g1", "name": "Mine"}, {"id": "g2", "name": "New"}])

        result = apply_to_config(config, merged, MAPPER)

        assert result["groups"] == [
            {"id": "g1", "name": "Mine", "defaults": {"x": 1}},
            {"id": "g2", "name": "New"},
        ]

    def test_settings_sections(self):
        """Test deep-merged and replaced settings sections."""
        config = {
            "terminal": {"fontSize": 12, "profile": "local:default"},
            "hotkeys": {"copy": ["Ctrl-C"]},
            "pluginBlacklist": ["old"],
            "quick-cmds": {"commands": []},
            "colorSchemes": [{"name": "Keep"}],
        }
        merged = payload(3000, settings={
            "terminal": {"fontSize": 16, "background": "$SYNC_HOME/bg.png"},
            "hotkeys": {"paste": ["Ctrl-V"]},
            "pluginBlacklist": ["new"],
            "quickCmds": {"commands": [{"name": "ls"}]},
            "colorSchemes": [],
            "installedPlugins": ["x"],
        })

        result = apply_to_config(config, merged, MAPPER)

        assert result["terminal"] == {
            "fontSize": 16,
            "profile": "local:default",
            "background": "/home/alice/bg.png",
        }
        assert result["hotkeys"] == {"copy": ["Ctrl-C"], "paste": ["Ctrl-V"]}
        assert result["pluginBlacklist"] == ["new"]
        assert result["quick-cmds"] == {"commands": [{"name": "ls"}]}
        assert result["colorSchemes"] == [{"name": "Keep"}]
        assert "installedPlugins" not in result

    def test_vault_written(self):
        """Test that the merged vault replaces the local block."""
        vault = VaultBlob(contents="C", iv="I", key_salt="S", version=1)

        result = apply_to_config({}, payload(3000, vault=vault), MAPPER)

        assert result["vault"] == {"version": 1, "contents": "C", "keySalt": "S", "iv": "I"}
