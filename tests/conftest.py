from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable

import pytest

from logsource_retire.broadcast.broadcaster import ProgressBroadcaster
from logsource_retire.domain.errors import ExternalError
from logsource_retire.domain.models import ACTIVE, NEVER_RECEIVED, Item, Reachability
from logsource_retire.ledger.db import SqliteLedgerStore
from logsource_retire.ledger.ledger import RollbackLedger
from logsource_retire.orchestrator.orchestrator import JobOrchestrator, RetentionPolicy


def pytest_sessionstart(session: pytest.Session) -> None:
    # Never talk to a real SIEM during unit tests.
    os.environ.setdefault("SIEM_HOSTNAME", "")
    os.environ.setdefault("SIEM_API_KEY", "")


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


OLD = datetime(2023, 1, 15, 8, 30, tzinfo=timezone.utc)
RECENT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeSiem:
    """In-memory collaborator recording every call it receives."""

    def __init__(
        self,
        items: Iterable[Item] = (),
        reachability: dict[str, Reachability] | None = None,
        fail_items: Iterable[str] = (),
        fail_hosts: Iterable[str] = (),
        fail_listing: bool = False,
    ) -> None:
        self.items = {item.item_id: item for item in items}
        self.host_status = {item.host_id: item.host_status for item in self.items.values()}
        self.reachability = dict(reachability or {})
        self.fail_items = set(fail_items)
        self.fail_hosts = set(fail_hosts)
        self.fail_listing = fail_listing
        self.item_calls: list[tuple[str, str]] = []
        self.host_calls: list[tuple[str, str]] = []
        self.ping_calls: list[str] = []

    async def ping_host(self, host_name: str) -> Reachability:
        self.ping_calls.append(host_name)
        await asyncio.sleep(0)
        return self.reachability.get(host_name, Reachability.UNKNOWN)

    async def list_log_sources(self, host_id: str | None = None) -> list[Item]:
        if self.fail_listing:
            raise ExternalError("log source listing unavailable")
        return [
            replace(item, host_status=self.host_status.get(item.host_id, ACTIVE))
            for item in self.items.values()
            if host_id is None or item.host_id == host_id
        ]

    async def set_item_status(self, item_id: str, status: str) -> str:
        self.item_calls.append((item_id, status))
        await asyncio.sleep(0)
        if item_id in self.fail_items:
            raise ExternalError(f"PUT /logsources/{item_id} failed with status 500")
        item = self.items.get(item_id)
        if item is None:
            raise ExternalError(f"GET /logsources/{item_id} failed with status 404")
        self.items[item_id] = replace(item, status=status)
        return item.status

    async def set_host_status(self, host_id: str, status: str) -> str:
        self.host_calls.append((host_id, status))
        await asyncio.sleep(0)
        if host_id in self.fail_hosts:
            raise ExternalError(f"PUT /hosts/{host_id} failed with status 500")
        previous = self.host_status.get(host_id, ACTIVE)
        self.host_status[host_id] = status
        return previous


@pytest.fixture
def make_item() -> Callable[..., Item]:
    def factory(
        item_id: str,
        host_id: str = "h1",
        host_name: str | None = None,
        name: str | None = None,
        source_type: str = "Syslog - Linux Host",
        last_activity: datetime | None = OLD,
        status: str = ACTIVE,
        collection_host_id: str | None = None,
        collection_host_name: str | None = None,
    ) -> Item:
        return Item(
            item_id=item_id,
            host_id=host_id,
            host_name=host_name or f"host-{host_id}",
            name=name or f"source-{item_id}",
            source_type=source_type,
            last_activity=last_activity,
            status=status,
            collection_host_id=collection_host_id,
            collection_host_name=collection_host_name,
        )

    return factory


@pytest.fixture
def never_received() -> datetime:
    return NEVER_RECEIVED


@pytest.fixture
def ledger_store(tmp_path) -> SqliteLedgerStore:
    store = SqliteLedgerStore(str(tmp_path / "rollback.sqlite"))
    yield store
    store.close()


@pytest.fixture
def ledger(ledger_store: SqliteLedgerStore) -> RollbackLedger:
    return RollbackLedger(ledger_store)


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(queue_size=256)


@pytest.fixture
def build_orchestrator(
    ledger: RollbackLedger, broadcaster: ProgressBroadcaster
) -> Callable[..., JobOrchestrator]:
    def factory(siem: FakeSiem, **kwargs: object) -> JobOrchestrator:
        kwargs.setdefault("retention", RetentionPolicy(auto_cleanup=False))
        kwargs.setdefault("retired_suffix", " Retired by LRCleaner")
        return JobOrchestrator(siem, ledger, broadcaster, **kwargs)

    return factory


@pytest.fixture
def fake_siem() -> type[FakeSiem]:
    return FakeSiem
