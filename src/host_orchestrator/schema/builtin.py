"""
Built in schema releases.

Timeline
0.9  early preview, deprecated then removed once 1.0 shipped
1.0  package, service, file, repository-source, user, group
1.1  adds shell, privesc, disk and linux-kernel kinds, and package.version

1.1 is derived from 1.0 with SchemaRuleset.extend, so it can only add.
"""

from __future__ import annotations

from host_orchestrator.core.types import SchemaVersion
from host_orchestrator.schema.fields import FieldRule, FieldType, KindRules, SchemaRuleset
from host_orchestrator.schema.registry import SchemaRegistry, SchemaRelease

V0_9 = SchemaVersion(0, 9)
V1_0 = SchemaVersion(1, 0)
V1_1 = SchemaVersion(1, 1)

V0_9_SUNSET = (
    "schema 0.9 was a preview and stopped validating with the 1.0 release; "
    "rename 'packages' entries to 'package' intents and declare schema_version 1.0"
)

_PRESENT_ABSENT = ("present", "absent")
_MATCH_BY = ("name", "id")
_NOT_MATCHED = ("error", "ignore", "warn")
_DISK_TYPES = (
    "bcachefs",
    "btrfs",
    "ext2",
    "ext3",
    "ext4",
    "jfs",
    "nilfs2",
    "ntfs",
    "swap",
    "tmpfs",
    "vfat",
    "xfs",
    "zfs",
)


def _ruleset_0_9() -> SchemaRuleset:
    return SchemaRuleset(
        kinds={
            "packages": KindRules(
                kind="packages",
                fields=(FieldRule("state", FieldType.enum, default="present", choices=_PRESENT_ABSENT),),
            ),
        }
    )


def _ruleset_1_0() -> SchemaRuleset:
    package = KindRules(
        kind="package",
        description="A distribution package.",
        fields=(
            FieldRule("state", FieldType.enum, default="present", choices=("present", "absent", "latest")),
            FieldRule("options", FieldType.mapping, default={}),
        ),
    )
    service = KindRules(
        kind="service",
        description="A system service managed by the init system.",
        fields=(
            FieldRule("state", FieldType.enum, default="enabled", choices=("enabled", "disabled", "masked")),
            FieldRule("running", FieldType.boolean, default=True),
        ),
    )
    managed_file = KindRules(
        kind="file",
        target_type=FieldType.path,
        description="A file whose content or presence is managed.",
        fields=(
            FieldRule("state", FieldType.enum, default="present", choices=_PRESENT_ABSENT),
            FieldRule("content", FieldType.string),
            FieldRule("source", FieldType.path),
            FieldRule("mode", FieldType.string, default="0644"),
            FieldRule("owner", FieldType.string, default="root"),
            FieldRule("group", FieldType.string, default="root"),
        ),
    )
    repository = KindRules(
        kind="repository-source",
        description="A package repository the package manager pulls from.",
        fields=(
            FieldRule("url", FieldType.string, required=True),
            FieldRule("enabled", FieldType.boolean, default=True),
            FieldRule("key_url", FieldType.string),
        ),
    )
    user = KindRules(
        kind="user",
        description="A local user account.",
        fields=(
            FieldRule("state", FieldType.enum, default="present", choices=_PRESENT_ABSENT),
            FieldRule("is_system", FieldType.boolean, default=False),
            FieldRule("uid", FieldType.integer),
            FieldRule("main_group", FieldType.string),
            FieldRule("extra_groups", FieldType.list, default=[], item_type=FieldType.string),
            FieldRule("full_name", FieldType.string),
            FieldRule("shell", FieldType.string),
            FieldRule("install_missing_shell", FieldType.boolean, default=False),
            FieldRule("match_by", FieldType.enum, default="name", choices=_MATCH_BY),
            FieldRule("not_matched", FieldType.enum, default="error", choices=_NOT_MATCHED),
            FieldRule("prune_on_removal", FieldType.boolean, default=False),
        ),
    )
    group = KindRules(
        kind="group",
        description="A local group.",
        fields=(
            FieldRule("state", FieldType.enum, default="present", choices=_PRESENT_ABSENT),
            FieldRule("is_system", FieldType.boolean, default=False),
            FieldRule("gid", FieldType.integer),
            FieldRule("match_by", FieldType.enum, default="name", choices=_MATCH_BY),
            FieldRule("not_matched", FieldType.enum, default="error", choices=_NOT_MATCHED),
            FieldRule("prune_on_removal", FieldType.boolean, default=False),
        ),
    )
    kinds = (package, service, managed_file, repository, user, group)
    return SchemaRuleset(kinds={k.kind: k for k in kinds})


def _ruleset_1_1(base: SchemaRuleset) -> SchemaRuleset:
    shell = KindRules(
        kind="shell",
        description="An interactive shell and its completion support.",
        fields=(
            FieldRule("install_completion", FieldType.boolean, default=True),
            FieldRule("install_completion_error", FieldType.enum, default="warn", choices=("error", "warn")),
            FieldRule("system_config_file", FieldType.path),
        ),
    )
    privesc = KindRules(
        kind="privesc",
        description="The privilege escalation tool and its configuration.",
        fields=(
            FieldRule("method", FieldType.enum, required=True, choices=("doas", "sudo")),
            FieldRule("config_file", FieldType.path),
        ),
    )
    disk = KindRules(
        kind="disk",
        target_type=FieldType.path,
        description="A mounted filesystem, targeted by its mountpoint.",
        fields=(
            FieldRule("source", FieldType.string, required=True),
            FieldRule("type", FieldType.enum, required=True, choices=_DISK_TYPES),
            FieldRule("options", FieldType.list, default=["defaults"], item_type=FieldType.string),
            FieldRule("dump", FieldType.boolean, default=False),
            FieldRule("fsck_order", FieldType.enum, default="disabled", choices=("disabled", "first", "next")),
            FieldRule("install_userspace_utils", FieldType.boolean, default=True),
            FieldRule("install_kernel_modules", FieldType.boolean, default=True),
        ),
    )
    kernel = KindRules(
        kind="linux-kernel",
        description="An installed kernel series.",
        fields=(
            FieldRule("versions", FieldType.version_constraint, default="*"),
            FieldRule("install_headers", FieldType.boolean, default=False),
            FieldRule("install_firmware", FieldType.boolean),
        ),
    )
    return base.extend(
        new_kinds=(shell, privesc, disk, kernel),
        new_fields={"package": (FieldRule("version", FieldType.version_constraint),)},
    )


def default_registry() -> SchemaRegistry:
    """Return a registry holding the built in timeline."""
    registry = SchemaRegistry()

    registry.publish(SchemaRelease(version=V0_9, ruleset=_ruleset_0_9()))
    base = _ruleset_1_0()
    registry.publish(SchemaRelease(version=V1_0, ruleset=base))
    registry.publish(SchemaRelease(version=V1_1, ruleset=_ruleset_1_1(base)))

    registry.deprecate(V0_9, V0_9_SUNSET)
    registry.remove(V0_9, V0_9_SUNSET)
    return registry
