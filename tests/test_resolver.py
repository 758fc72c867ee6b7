from __future__ import annotations

import pytest

from host_orchestrator.core.errors import (
    AmbiguousBackend,
    ConflictingIntents,
    OrderingCycle,
    Unsatisfiable,
)
from host_orchestrator.core.types import (
    BackendDescription,
    Capability,
    CapabilityMatrix,
    ConflictRule,
    Fidelity,
    Intent,
    OrderingConstraint,
)
from host_orchestrator.planner import Resolver, ResolverConfig
from host_orchestrator.planner.ordering import KindGraph
from host_orchestrator.schema import default_registry


def make_description(name: str, caps: dict, ordering=(), conflicts=()) -> BackendDescription:
    return BackendDescription(
        backend=name,
        capabilities=tuple(Capability(intent_kind=k, fidelity=f) for k, f in caps.items()),
        ordering=tuple(OrderingConstraint(before=b, after=a) for b, a in ordering),
        conflicts=tuple(conflicts),
    )


def make_matrix(*descriptions: BackendDescription) -> CapabilityMatrix:
    return CapabilityMatrix(descriptions={d.backend: d for d in descriptions})


def make_intents(*entries: dict, version: str = "1.1"):
    return default_registry().validate({"schema_version": version, "intents": list(entries)})


def test_highest_fidelity_wins():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full}),
        make_description("flatpak", {"package": Fidelity.partial}),
    )

    plan = Resolver().resolve(make_intents({"kind": "package", "target": "curl"}), matrix)

    assert [s.backend for s in plan] == ["apk"]


def test_hint_beats_fidelity_and_overlays_parameters():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full}),
        make_description("flatpak", {"package": Fidelity.partial}),
    )
    intents = make_intents(
        {
            "kind": "package",
            "target": "firefox",
            "parameters": {"options": {"channel": "stable"}},
            "backend_hints": {"flatpak": {"options": {"remote": "flathub"}}},
        }
    )

    (step,) = Resolver().resolve(intents, matrix).steps

    assert step.backend == "flatpak"
    assert step.resolved_parameters["options"] == {"remote": "flathub"}
    assert step.resolved_parameters["state"] == "present"
    assert intents.intents[0].parameters["options"] == {"channel": "stable"}


def test_hint_for_unavailable_backend_is_ignored():
    matrix = make_matrix(make_description("apk", {"package": Fidelity.full}))
    intents = make_intents({"kind": "package", "target": "vim", "backend_hints": {"pacman": {}}})

    (step,) = Resolver().resolve(intents, matrix).steps

    assert step.backend == "apk"
    assert step.resolved_parameters == intents.intents[0].parameters


def test_ties_use_priority_or_fail_as_ambiguous():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full}),
        make_description("pacman", {"package": Fidelity.full}),
    )
    intents = make_intents({"kind": "package", "target": "curl"})

    with pytest.raises(AmbiguousBackend) as info:
        Resolver().resolve(intents, matrix)
    assert info.value.candidates == ("apk", "pacman")

    plan = Resolver(ResolverConfig(backend_priority=("pacman", "apk"))).resolve(intents, matrix)
    assert plan.steps[0].backend == "pacman"


def test_ambiguity_aborts_even_in_best_effort():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full}),
        make_description("pacman", {"package": Fidelity.full}),
    )

    with pytest.raises(AmbiguousBackend):
        Resolver(ResolverConfig(best_effort=True)).resolve(make_intents({"kind": "package", "target": "curl"}), matrix)


def test_advisory_only_is_unsatisfiable():
    matrix = make_matrix(make_description("homebrew", {"service": Fidelity.advisory}))
    intents = make_intents({"kind": "service", "target": "sshd"})

    with pytest.raises(Unsatisfiable) as info:
        Resolver().resolve(intents, matrix)

    assert info.value.intent.target == "sshd"
    assert info.value.advisory == ("homebrew",)


def test_best_effort_skips_unsupported_intents():
    matrix = make_matrix(make_description("apk", {"package": Fidelity.full}))
    intents = make_intents(
        {"kind": "package", "target": "curl"},
        {"kind": "linux-kernel", "target": "lts"},
    )

    plan = Resolver(ResolverConfig(best_effort=True)).resolve(intents, matrix)

    assert plan.targets() == [("package", "curl")]
    (skipped,) = plan.skipped
    assert skipped.intent.kind == "linux-kernel"
    assert "linux-kernel" in skipped.reason


def test_repository_source_runs_before_package_despite_document_order():
    matrix = make_matrix(
        make_description(
            "apk",
            {"package": Fidelity.full, "repository-source": Fidelity.full},
            ordering=[("repository-source", "package")],
        )
    )
    intents = make_intents(
        {"kind": "package", "target": "nginx"},
        {"kind": "repository-source", "target": "community", "parameters": {"url": "https://dl.example/community"}},
    )

    plan = Resolver().resolve(intents, matrix)

    assert plan.targets() == [("repository-source", "community"), ("package", "nginx")]
    assert plan.steps[1].depends_on == (0,)


def test_ordering_constraints_apply_transitively():
    matrix = make_matrix(
        make_description(
            "apk",
            {"group": Fidelity.full, "user": Fidelity.full, "service": Fidelity.full},
            ordering=[("group", "user"), ("user", "shell")],
        ),
        make_description("svc", {"shell": Fidelity.advisory}, ordering=[("shell", "service")]),
    )
    intents = make_intents(
        {"kind": "service", "target": "sshd"},
        {"kind": "group", "target": "wheel"},
        {"kind": "user", "target": "alice"},
    )

    plan = Resolver().resolve(intents, matrix)

    assert plan.targets() == [("group", "wheel"), ("user", "alice"), ("service", "sshd")]
    assert plan.steps[2].depends_on == (0, 1)


def test_unconstrained_intents_keep_document_order():
    matrix = make_matrix(make_description("apk", {"package": Fidelity.full, "service": Fidelity.full}))
    intents = make_intents(
        {"kind": "service", "target": "sshd"},
        {"kind": "package", "target": "curl"},
        {"kind": "service", "target": "crond"},
    )

    plan = Resolver().resolve(intents, matrix)

    assert [s.intent.index for s in plan] == [0, 1, 2]
    assert all(s.depends_on == () for s in plan)


def test_intents_built_without_document_index_keep_input_order():
    matrix = make_matrix(
        make_description(
            "apk",
            {"package": Fidelity.full, "repository-source": Fidelity.full},
            ordering=[("repository-source", "package")],
        ),
        make_description("openrc", {"service": Fidelity.full}),
    )
    intents = [
        Intent("package", "curl"),
        Intent("service", "cron"),
        Intent("package", "git"),
        Intent("repository-source", "community"),
    ]

    plan = Resolver().resolve(intents, matrix)

    assert plan.targets() == [
        ("service", "cron"),
        ("repository-source", "community"),
        ("package", "curl"),
        ("package", "git"),
    ]
    assert [s.backend for s in plan] == ["openrc", "apk", "apk", "apk"]
    assert plan.steps[2].depends_on == (1,)
    assert plan.steps[3].depends_on == (1,)


def test_cycle_across_backends_is_reported_canonically():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full}, ordering=[("package", "service")]),
        make_description("openrc", {"service": Fidelity.full}, ordering=[("service", "package")]),
    )

    with pytest.raises(OrderingCycle) as info:
        Resolver().resolve(make_intents({"kind": "package", "target": "curl"}), matrix)

    assert info.value.kinds == ("package", "service", "package")


def test_conflicting_user_and_absent_group():
    rule = ConflictRule(
        a_kind="user",
        b_kind="group",
        a_field="main_group",
        b_when={"state": "absent"},
        reason="main group is declared absent",
    )
    matrix = make_matrix(make_description("shadow", {"user": Fidelity.full, "group": Fidelity.full}, conflicts=[rule]))
    intents = make_intents(
        {"kind": "group", "target": "staff", "parameters": {"state": "absent"}},
        {"kind": "user", "target": "alice", "parameters": {"main_group": "staff"}},
    )

    with pytest.raises(ConflictingIntents) as info:
        Resolver().resolve(intents, matrix)

    assert info.value.a.target == "alice"
    assert info.value.b.target == "staff"
    assert "declared absent" in str(info.value)


def test_conflict_on_list_membership():
    rule = ConflictRule(a_kind="user", b_kind="group", a_field="extra_groups", b_when={"state": "absent"})
    matrix = make_matrix(make_description("shadow", {"user": Fidelity.full, "group": Fidelity.full}, conflicts=[rule]))

    present = make_intents(
        {"kind": "group", "target": "audio"},
        {"kind": "user", "target": "alice", "parameters": {"extra_groups": ["audio", "video"]}},
    )
    assert len(Resolver().resolve(present, matrix)) == 2

    absent = make_intents(
        {"kind": "group", "target": "audio", "parameters": {"state": "absent"}},
        {"kind": "user", "target": "alice", "parameters": {"extra_groups": ["audio", "video"]}},
    )
    with pytest.raises(ConflictingIntents):
        Resolver().resolve(absent, matrix)


def test_kind_graph_ancestors_and_cycles():
    graph = KindGraph([OrderingConstraint("a", "b"), OrderingConstraint("b", "c")])

    assert graph.ancestors("c") == frozenset({"a", "b"})
    assert graph.ancestors("unknown") == frozenset()
    assert graph.detect_cycles() == ()
    assert graph.edges == (("a", "b"), ("b", "c"))

    graph.add_edge("c", "b")
    assert graph.detect_cycles() == (("b", "c", "b"),)


def test_resolution_is_deterministic():
    matrix = make_matrix(
        make_description("apk", {"package": Fidelity.full, "repository-source": Fidelity.full}, ordering=[("repository-source", "package")]),
        make_description("flatpak", {"package": Fidelity.partial}),
    )
    intents = make_intents(
        {"kind": "package", "target": "b"},
        {"kind": "repository-source", "target": "r", "parameters": {"url": "https://x"}},
        {"kind": "package", "target": "a"},
    )

    first = Resolver().resolve(intents, matrix)
    second = Resolver().resolve(intents, matrix)

    assert first == second
