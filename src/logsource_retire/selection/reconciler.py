"""Reconcile host-level and item-level selections into one target list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from logsource_retire.domain.models import Host, Item, Selection

logger = logging.getLogger(__name__)


@dataclass
class Catalog:
    """Authoritative view of hosts and the items they own."""

    hosts: dict[str, Host] = field(default_factory=dict)
    items: dict[str, Item] = field(default_factory=dict)

    @classmethod
    def from_items(cls, items: Iterable[Item]) -> Catalog:
        hosts: dict[str, Host] = {}
        by_id: dict[str, Item] = {}
        for item in items:
            if item.item_id in by_id:
                continue
            by_id[item.item_id] = item
            host = hosts.get(item.host_id)
            if host is None:
                host = Host(host_id=item.host_id, name=item.host_name, status=item.host_status)
                hosts[item.host_id] = host
            host.items.append(item)
        ordered = sorted(hosts.values(), key=lambda h: (h.name.lower(), h.host_id))
        return cls(hosts={host.host_id: host for host in ordered}, items=by_id)

    @classmethod
    def from_hosts(cls, hosts: Iterable[Host]) -> Catalog:
        return cls.from_items(item for host in hosts for item in host.items)

    def host_items(self, host_id: str) -> list[Item]:
        host = self.hosts.get(host_id)
        return list(host.items) if host else []


@dataclass(frozen=True)
class ReconciledSelection:
    targets: tuple[Item, ...]
    covered_host_ids: tuple[str, ...]
    direct_item_ids: tuple[str, ...]
    unknown_host_ids: tuple[str, ...] = ()
    unknown_item_ids: tuple[str, ...] = ()

    @property
    def host_count(self) -> int:
        return len(self.covered_host_ids)

    @property
    def total_items(self) -> int:
        return len(self.targets)

    @property
    def direct_item_count(self) -> int:
        return len(self.direct_item_ids)

    @property
    def is_empty(self) -> bool:
        return not self.targets

    def summary(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "hostsCovered": self.host_count,
            "itemsFromHosts": self.total_items - self.direct_item_count,
            "directItems": self.direct_item_count,
            "unknownHostIds": list(self.unknown_host_ids),
            "unknownItemIds": list(self.unknown_item_ids),
        }


def reconcile(selection: Selection, catalog: Catalog) -> ReconciledSelection:
    """Resolve a selection into a deduplicated, ordered list of items.

    Items owned by a selected host come first, in host selection order; items
    picked individually follow unless a selected host already covers them.
    """
    targets: list[Item] = []
    seen: set[str] = set()
    covered_hosts: list[str] = []
    unknown_hosts: list[str] = []

    for host_id in selection.host_ids:
        if host_id not in catalog.hosts:
            unknown_hosts.append(host_id)
            continue
        covered_hosts.append(host_id)
        for item in catalog.host_items(host_id):
            if item.item_id not in seen:
                seen.add(item.item_id)
                targets.append(item)

    direct: list[str] = []
    unknown_items: list[str] = []
    for item_id in selection.item_ids:
        item = catalog.items.get(item_id)
        if item is None:
            unknown_items.append(item_id)
            continue
        if item_id in seen:
            continue
        seen.add(item_id)
        direct.append(item_id)
        targets.append(item)

    if unknown_hosts or unknown_items:
        logger.warning(
            "Selection references unknown ids (hosts=%s, items=%s)",
            unknown_hosts,
            unknown_items,
        )

    return ReconciledSelection(
        targets=tuple(targets),
        covered_host_ids=tuple(covered_hosts),
        direct_item_ids=tuple(direct),
        unknown_host_ids=tuple(unknown_hosts),
        unknown_item_ids=tuple(unknown_items),
    )
