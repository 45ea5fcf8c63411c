from __future__ import annotations

from datetime import date, datetime, timezone

from logsource_retire.analysis.heuristics import (
    ExclusionRules,
    analyze_collection_hosts,
    apply_reachability,
    build_host_analysis,
    build_results,
    is_stale,
    reachability_counts,
    select_candidates,
)
from logsource_retire.domain.models import RETIRED, Reachability

CUTOFF = date(2024, 1, 1)


def test_exclusion_rules(make_item) -> None:
    rules = ExclusionRules(type_patterns=("Open Collector",))

    assert rules.excludes(make_item("1", source_type="LogRhythm Filemon"))
    assert rules.excludes(make_item("2", host_name="ECHO-01"))
    assert rules.excludes(make_item("3", name="Echo test feed"))
    assert rules.excludes(make_item("4", source_type="Syslog - open collector beats"))
    assert not rules.excludes(make_item("5", source_type="MS Windows Event Logging"))


def test_staleness_boundaries(make_item, never_received) -> None:
    midnight = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert is_stale(make_item("1", last_activity=midnight), CUTOFF)
    assert not is_stale(
        make_item("2", last_activity=datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc)), CUTOFF
    )
    assert is_stale(make_item("3", last_activity=None), CUTOFF)
    assert is_stale(make_item("4", last_activity=never_received), CUTOFF)


def test_select_candidates_skips_retired_recent_and_excluded(make_item) -> None:
    items = [
        make_item("1"),
        make_item("2", status=RETIRED),
        make_item("3", last_activity=datetime(2024, 5, 1, tzinfo=timezone.utc)),
        make_item("4", source_type="LogRhythm System Monitor"),
    ]

    candidates = select_candidates(items, CUTOFF, ExclusionRules())

    assert [item.item_id for item in candidates] == ["1"]


def test_only_unreachable_hosts_are_recommended(make_item) -> None:
    items = [
        make_item("1", host_id="a", host_name="down"),
        make_item("2", host_id="a", host_name="down"),
        make_item("3", host_id="b", host_name="up"),
        make_item("4", host_id="c", host_name="dark"),
    ]
    annotated = apply_reachability(
        items, {"down": Reachability.FAILURE, "up": Reachability.SUCCESS}
    )

    assert [item.recommended for item in annotated] == [True, True, False, False]
    assert annotated[3].reachability is Reachability.UNKNOWN

    hosts = {host.name: host for host in build_host_analysis(annotated)}
    assert hosts["down"].recommended
    assert hosts["down"].reachability is Reachability.FAILURE
    assert not hosts["up"].recommended
    assert not hosts["dark"].recommended


def test_results_are_sorted_by_host_then_name(make_item) -> None:
    items = [
        make_item("1", host_id="b", host_name="bravo", name="zeta"),
        make_item("2", host_id="a", host_name="Alpha", name="beta"),
        make_item("3", host_id="b", host_name="bravo", name="alpha"),
    ]

    assert [row.item_id for row in build_results(items)] == ["2", "3", "1"]


def test_host_last_activity_ignores_never_received(make_item, never_received) -> None:
    seen = datetime(2023, 3, 1, tzinfo=timezone.utc)
    items = [
        make_item("1", last_activity=never_received),
        make_item("2", last_activity=seen),
    ]

    (host,) = build_host_analysis(items)

    assert host.last_activity == seen
    assert host.to_dict()["logSourceCount"] == 2


def test_collection_host_recommendations(make_item) -> None:
    recent = datetime(2024, 5, 1, tzinfo=timezone.utc)
    items = [
        make_item("1", collection_host_id="m1", collection_host_name="collector-a", status=RETIRED),
        make_item("2", collection_host_id="m2", collection_host_name="collector-b"),
        make_item("3", collection_host_id="m3", collection_host_name="collector-c"),
        make_item(
            "4",
            last_activity=recent,
            collection_host_id="m3",
            collection_host_name="collector-c",
        ),
        make_item("5"),
    ]
    reachability = {
        "collector-a": Reachability.SUCCESS,
        "collector-b": Reachability.FAILURE,
        "collector-c": Reachability.FAILURE,
    }

    analysis = {
        entry.name: entry for entry in analyze_collection_hosts(items, reachability, CUTOFF)
    }

    assert set(analysis) == {"collector-a", "collector-b", "collector-c"}
    assert analysis["collector-a"].recommended
    assert analysis["collector-a"].active_item_count == 0
    assert analysis["collector-b"].recommended
    assert not analysis["collector-c"].recommended


def test_collection_host_without_cutoff_needs_no_active_items(make_item) -> None:
    items = [make_item("1", collection_host_id="m1", collection_host_name="collector")]

    (entry,) = analyze_collection_hosts(items, {"collector": Reachability.FAILURE})

    assert not entry.recommended


def test_reachability_counts_include_every_state() -> None:
    counts = reachability_counts([Reachability.SUCCESS, Reachability.SUCCESS])

    assert counts == {"Success": 2, "Failure": 0, "Unknown": 0}
