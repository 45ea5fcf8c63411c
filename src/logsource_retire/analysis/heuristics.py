"""Candidate filtering and retirement recommendations.

Everything here is pure: reachability is looked up by the orchestrator and
passed in, so the rules can be exercised without a SIEM.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timezone
from typing import Iterable, Mapping

from logsource_retire.domain.models import (
    AnalysisResult,
    CollectionHostAnalysis,
    Host,
    Item,
    Reachability,
)
from logsource_retire.selection.reconciler import Catalog


@dataclass(frozen=True)
class ExclusionRules:
    """Sources that must never be offered for retirement."""

    type_prefixes: tuple[str, ...] = ("LogRhythm",)
    name_markers: tuple[str, ...] = ("echo",)
    type_patterns: tuple[str, ...] = ()

    def excludes(self, item: Item) -> bool:
        if any(item.source_type.startswith(prefix) for prefix in self.type_prefixes):
            return True
        host_name = item.host_name.lower()
        name = item.name.lower()
        for marker in self.name_markers:
            lowered = marker.lower()
            if lowered in host_name or lowered in name:
                return True
        source_type = item.source_type.lower()
        return any(pattern.lower() in source_type for pattern in self.type_patterns)


def cutoff_instant(cutoff: date) -> datetime:
    return datetime.combine(cutoff, time.min, tzinfo=timezone.utc)


def is_stale(item: Item, cutoff: date) -> bool:
    if item.last_activity is None or item.never_received:
        return True
    return item.last_activity <= cutoff_instant(cutoff)


def select_candidates(items: Iterable[Item], cutoff: date, rules: ExclusionRules) -> list[Item]:
    return [
        item
        for item in items
        if not item.is_retired and is_stale(item, cutoff) and not rules.excludes(item)
    ]


def apply_reachability(
    items: Iterable[Item], reachability: Mapping[str, Reachability]
) -> list[Item]:
    """Attach host reachability and the per-item recommendation.

    An item is recommended only when its host is unreachable. A reachable
    host with stale sources needs troubleshooting, not retirement.
    """
    updated: list[Item] = []
    for item in items:
        state = reachability.get(item.host_name, Reachability.UNKNOWN)
        updated.append(
            replace(item, reachability=state, recommended=state is Reachability.FAILURE)
        )
    return updated


def build_host_analysis(items: Iterable[Item]) -> list[Host]:
    hosts = list(Catalog.from_items(items).hosts.values())
    for host in hosts:
        if host.items:
            host.reachability = host.items[0].reachability
        host.items.sort(key=lambda i: (i.name.lower(), i.item_id))
        host.recommended = bool(host.items) and all(item.recommended for item in host.items)
    return hosts


def build_results(items: Iterable[Item]) -> list[AnalysisResult]:
    ordered = sorted(items, key=lambda i: (i.host_name.lower(), i.name.lower(), i.item_id))
    return [AnalysisResult.from_item(item) for item in ordered]


def group_by_collection_host(items: Iterable[Item]) -> dict[str, tuple[str, list[Item]]]:
    groups: dict[str, tuple[str, list[Item]]] = {}
    for item in items:
        if not item.collection_host_id or not item.collection_host_name:
            continue
        _, members = groups.setdefault(
            item.collection_host_id, (item.collection_host_name, [])
        )
        members.append(item)
    return groups


def analyze_collection_hosts(
    items: Iterable[Item],
    reachability: Mapping[str, Reachability],
    cutoff: date | None = None,
) -> list[CollectionHostAnalysis]:
    """Flag collection hosts that no longer have a live data path.

    Recommended when nothing active remains behind the collector, or when it
    is unreachable and every active source behind it is stale.
    """
    analysis: list[CollectionHostAnalysis] = []
    for host_id, (name, members) in group_by_collection_host(items).items():
        state = reachability.get(name, Reachability.UNKNOWN)
        active = [item for item in members if not item.is_retired]
        recommended = not active or (
            state is Reachability.FAILURE
            and cutoff is not None
            and all(is_stale(item, cutoff) for item in active)
        )
        analysis.append(
            CollectionHostAnalysis(
                collection_host_id=host_id,
                name=name,
                reachability=state,
                items=members,
                recommended=recommended,
            )
        )
    analysis.sort(key=lambda entry: (entry.name.lower(), entry.collection_host_id))
    return analysis


def reachability_counts(states: Iterable[Reachability]) -> dict[str, int]:
    counts = Counter(state.value for state in states)
    return {state.value: counts.get(state.value, 0) for state in Reachability}
