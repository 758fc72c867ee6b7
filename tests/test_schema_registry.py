from __future__ import annotations

import logging

import pytest

from host_orchestrator.core.errors import RemovedVersion, ShapeError, UnknownVersion
from host_orchestrator.core.types import SchemaVersion
from host_orchestrator.schema import SchemaRegistry, SchemaRelease, default_registry
from host_orchestrator.schema.builtin import V0_9_SUNSET
from host_orchestrator.schema.fields import FieldRule, FieldType, KindRules, SchemaRuleset


def make_document(*intents: dict, version: str = "1.0") -> dict:
    return {"schema_version": version, "intents": list(intents)}


def test_valid_document_fills_defaults_in_rule_order():
    registry = default_registry()

    result = registry.validate(make_document({"kind": "package", "target": "curl"}))

    assert result.schema_version == SchemaVersion(1, 0)
    assert len(result) == 1
    intent = result.intents[0]
    assert intent.kind == "package"
    assert intent.target == "curl"
    assert list(intent.parameters) == ["state", "options"]
    assert intent.parameters == {"state": "present", "options": {}}
    assert result.notices == ()


def test_version_forms_are_equivalent():
    registry = default_registry()
    doc = make_document({"kind": "group", "target": "wheel"})

    a = registry.validate(doc)
    b = registry.validate({"schema_version": [1, 0], "intents": doc["intents"]})
    c = registry.validate({"schema_version": {"major": 1, "minor": 0}, "intents": doc["intents"]})

    assert a.canonical() == b.canonical() == c.canonical()


def test_declared_version_argument_overrides_document():
    registry = default_registry()
    doc = make_document({"kind": "linux-kernel", "target": "lts"}, version="1.0")

    with pytest.raises(ShapeError):
        registry.validate(doc)

    result = registry.validate(doc, declared_version="1.1")
    assert result.intents[0].parameters["versions"] == "*"


def test_unknown_version_lists_released_versions():
    registry = default_registry()

    with pytest.raises(UnknownVersion) as info:
        registry.validate(make_document(version="7.3"))

    assert info.value.version == SchemaVersion(7, 3)
    assert SchemaVersion(1, 1) in info.value.known
    assert "1.0" in str(info.value)


def test_removed_version_carries_notice():
    registry = default_registry()

    with pytest.raises(RemovedVersion) as info:
        registry.validate({"schema_version": "0.9", "intents": [{"kind": "packages", "target": "curl"}]})

    assert info.value.notice == V0_9_SUNSET


def test_enum_violation_names_field_and_intent():
    registry = default_registry()
    doc = make_document(
        {"kind": "package", "target": "curl"},
        {"kind": "service", "target": "sshd", "parameters": {"state": "sleeping"}},
    )

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    err = info.value
    assert err.intent_kind == "service"
    assert err.field == "state"
    assert err.index == 1
    assert err.target == "sshd"
    assert "sleeping" in err.reason


def test_unknown_parameter_is_rejected():
    registry = default_registry()
    doc = make_document({"kind": "package", "target": "curl", "parameters": {"flavour": "mint"}})

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.field == "flavour"
    assert "accepted" in info.value.reason


def test_missing_required_field():
    registry = default_registry()
    doc = make_document({"kind": "repository-source", "target": "community"})

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.field == "url"
    assert info.value.reason == "missing required field"


def test_boolean_field_rejects_integers():
    registry = default_registry()
    doc = make_document({"kind": "service", "target": "sshd", "parameters": {"running": 1}})

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.field == "running"


def test_relative_path_target_is_rejected():
    registry = default_registry()
    doc = make_document({"kind": "file", "target": "etc/motd"})

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.field == "target"
    assert "absolute" in info.value.reason


def test_version_constraint_is_normalized_and_validated():
    registry = default_registry()
    ok = registry.validate(
        make_document(
            {"kind": "package", "target": "curl", "parameters": {"version": ">= 8.0,  <9"}},
            version="1.1",
        )
    )
    assert ok.intents[0].parameters["version"] == ">=8.0, <9"

    with pytest.raises(ShapeError) as info:
        registry.validate(
            make_document(
                {"kind": "package", "target": "curl", "parameters": {"version": "newest please"}},
                version="1.1",
            )
        )
    assert info.value.field == "version"


def test_list_items_are_checked():
    registry = default_registry()
    doc = make_document({"kind": "user", "target": "alice", "parameters": {"extra_groups": ["wheel", 3]}})

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.field == "extra_groups"
    assert "item 1" in info.value.reason


def test_duplicate_kind_target_is_rejected():
    registry = default_registry()
    doc = make_document(
        {"kind": "package", "target": "curl"},
        {"kind": "package", "target": "git"},
        {"kind": "package", "target": "curl", "parameters": {"state": "absent"}},
    )

    with pytest.raises(ShapeError) as info:
        registry.validate(doc)

    assert info.value.index == 2
    assert "intent #0" in info.value.reason


def test_same_target_different_kind_is_allowed():
    registry = default_registry()
    doc = make_document(
        {"kind": "user", "target": "wheel"},
        {"kind": "group", "target": "wheel"},
    )

    assert len(registry.validate(doc)) == 2


def test_unknown_kind_and_unknown_keys():
    registry = default_registry()

    with pytest.raises(ShapeError) as info:
        registry.validate(make_document({"kind": "shell", "target": "zsh"}, version="1.0"))
    assert info.value.field == "kind"

    with pytest.raises(ShapeError) as info:
        registry.validate(make_document({"kind": "package", "target": "curl", "when": "always"}))
    assert info.value.field == "when"

    with pytest.raises(ShapeError):
        registry.validate({"schema_version": "1.0", "intents": [], "hosts": ["a"]})


def test_backend_hints_are_validated():
    registry = default_registry()

    ok = registry.validate(
        make_document({"kind": "package", "target": "vim", "backend_hints": {"pacman": {"name": "gvim"}}})
    )
    assert ok.intents[0].backend_hints == {"pacman": {"name": "gvim"}}

    with pytest.raises(ShapeError) as info:
        registry.validate(make_document({"kind": "package", "target": "vim", "backend_hints": {"apk": "vim-full"}}))
    assert info.value.field == "backend_hints.apk"


def test_defaults_are_not_shared_between_intents():
    registry = default_registry()
    result = registry.validate(
        make_document({"kind": "user", "target": "alice"}, {"kind": "user", "target": "bob"})
    )

    alice, bob = result.intents
    alice.parameters["extra_groups"].append("wheel")
    assert bob.parameters["extra_groups"] == []


def test_deprecated_version_validates_with_notice(caplog):
    registry = SchemaRegistry()
    rules = SchemaRuleset(kinds={"package": KindRules(kind="package")})
    registry.publish(SchemaRelease(version=SchemaVersion(1, 0), ruleset=rules))
    registry.publish(SchemaRelease(version=SchemaVersion(2, 0), ruleset=rules))
    registry.deprecate(SchemaVersion(1, 0), "1.0 sunsets in the next release")

    with caplog.at_level(logging.WARNING):
        result = registry.validate({"schema_version": "1.0", "intents": [{"kind": "package", "target": "a"}]})

    assert result.notices == ("1.0 sunsets in the next release",)
    assert "deprecated" in caplog.text


def test_removal_requires_deprecation_and_newer_major():
    registry = SchemaRegistry()
    rules = SchemaRuleset(kinds={"package": KindRules(kind="package")})
    registry.publish(SchemaRelease(version=SchemaVersion(1, 0), ruleset=rules))

    with pytest.raises(ValueError):
        registry.remove(SchemaVersion(1, 0), "gone")

    registry.deprecate(SchemaVersion(1, 0), "going away")
    with pytest.raises(ValueError):
        registry.remove(SchemaVersion(1, 0), "gone")

    registry.publish(SchemaRelease(version=SchemaVersion(2, 0), ruleset=rules))
    registry.remove(SchemaVersion(1, 0), "gone")
    assert registry.lifecycle(SchemaVersion(1, 0)).removed
    assert registry.latest() == SchemaVersion(2, 0)


def test_publish_is_append_only_and_additive():
    registry = SchemaRegistry()
    base = SchemaRuleset(
        kinds={"package": KindRules(kind="package", fields=(FieldRule("state", FieldType.string),))}
    )
    registry.publish(SchemaRelease(version=SchemaVersion(1, 1), ruleset=base))

    with pytest.raises(ValueError):
        registry.publish(SchemaRelease(version=SchemaVersion(1, 1), ruleset=base))
    with pytest.raises(ValueError):
        registry.publish(SchemaRelease(version=SchemaVersion(1, 0), ruleset=base))

    narrowed = SchemaRuleset(
        kinds={"package": KindRules(kind="package", fields=(FieldRule("state", FieldType.boolean),))}
    )
    with pytest.raises(ValueError):
        registry.publish(SchemaRelease(version=SchemaVersion(1, 2), ruleset=narrowed))

    registry.publish(SchemaRelease(version=SchemaVersion(2, 0), ruleset=narrowed))
    assert registry.versions() == (SchemaVersion(1, 1), SchemaVersion(2, 0))


def test_extend_rejects_redefinition_and_required_fields():
    base = SchemaRuleset(kinds={"package": KindRules(kind="package", fields=(FieldRule("state", FieldType.string),))})

    with pytest.raises(ValueError):
        base.extend(new_fields={"package": (FieldRule("state", FieldType.string),)})
    with pytest.raises(ValueError):
        base.extend(new_fields={"package": (FieldRule("pin", FieldType.string, required=True),)})
    with pytest.raises(ValueError):
        base.extend(new_kinds=(KindRules(kind="package"),))

    extended = base.extend(new_fields={"package": (FieldRule("pin", FieldType.string),)})
    assert extended.get("package").field_names() == ["state", "pin"]
    assert base.get("package").field_names() == ["state"]


def test_builtin_1_1_adds_kinds_and_fields_on_top_of_1_0():
    registry = default_registry()
    old = registry.ruleset(SchemaVersion(1, 0))
    new = registry.ruleset(SchemaVersion(1, 1))

    for kind, rules in old.kinds.items():
        assert new.get(kind).field_names()[: len(rules.field_names())] == rules.field_names()
    assert sorted(set(new.kinds) - set(old.kinds)) == ["disk", "linux-kernel", "privesc", "shell"]
    assert new.get("package").field_names()[-1] == "version"

    with pytest.raises(UnknownVersion):
        registry.ruleset(SchemaVersion(3, 0))


def test_validation_is_deterministic():
    registry = default_registry()
    doc = make_document(
        {"kind": "disk", "target": "/home", "parameters": {"source": "/dev/sda2", "type": "ext4"}},
        {"kind": "user", "target": "alice", "parameters": {"extra_groups": ["wheel"]}},
        version="1.1",
    )

    assert registry.validate(doc).canonical() == registry.validate(doc).canonical()
