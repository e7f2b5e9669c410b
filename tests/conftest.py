"""Shared fixtures for the calbridge test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calbridge.config import BridgeConfig, GoogleConfig, MappingConfig, RegistryConfig
from calbridge.core.mapping_store import JsonFileBackend, MappingStore
from calbridge.core.reconciler import EventReconciler
from calbridge.providers.registry import RegistryClient
from calbridge.service import BridgeService
from tests.fakes import FakeCalendar


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def mapping_path(tmp_path):
    return tmp_path / "mappings.json"


@pytest.fixture
def store(mapping_path) -> MappingStore:
    return MappingStore(JsonFileBackend(mapping_path))


@pytest.fixture
def reconciler(calendar, store) -> EventReconciler:
    return EventReconciler(calendar=calendar, store=store)


@pytest.fixture
def bridge_config(mapping_path) -> BridgeConfig:
    return BridgeConfig(
        google=GoogleConfig(
            client_id="client-id",
            client_secret="client-secret",
            refresh_token="google-refresh",
        ),
        registry=RegistryConfig(refresh_token="registry-refresh"),
        mapping=MappingConfig(path=mapping_path),
    )


@pytest.fixture
def registry() -> AsyncMock:
    client = AsyncMock(spec=RegistryClient)
    client.mark_status.return_value = {}
    client.push_times.return_value = {}
    return client


@pytest.fixture
def service(bridge_config, calendar, registry, store) -> BridgeService:
    return BridgeService(
        config=bridge_config,
        calendar=calendar,
        registry=registry,
        store=store,
    )
