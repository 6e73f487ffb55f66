"""Shared fakes and fixtures for shopflow tests."""

from __future__ import annotations

import asyncio
from typing import Sequence

import pytest
import pytest_asyncio

from shopflow.ai import CampaignContent, CatalogItem, Photo, QuoteSuggestion
from shopflow.config import PoolConfig
from shopflow.db import ShopStore
from shopflow.manager import WorkflowManager
from shopflow.persistence import InMemoryWorkflowJournal
from shopflow.pools import WorkPools
from shopflow.services import ShopServices


class FakeEmailSender:
    def __init__(self, fail_times: int = 0) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_times = fail_times

    async def send(self, to: str, subject: str, body: str) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("smtp unavailable")
        await asyncio.sleep(0)
        self.sent.append((to, subject, body))


class FakeContentGenerator:
    def __init__(
        self,
        content: CampaignContent | None = None,
        suggestion: QuoteSuggestion | None = None,
        error: Exception | None = None,
    ) -> None:
        self.content = content or CampaignContent(
            subject="Spring shine", body="Hi {customer.name}, book a detail today."
        )
        self.suggestion = suggestion or QuoteSuggestion()
        self.error = error
        self.calls = 0

    async def generate_campaign(self, company_name: str, goal: str) -> CampaignContent:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.content

    async def suggest_quote(
        self,
        photos: Sequence[Photo],
        services: Sequence[CatalogItem],
        upcharges: Sequence[CatalogItem],
    ) -> QuoteSuggestion:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.suggestion


class FakePhotoFetcher:
    def __init__(self) -> None:
        self.fetched: list[str] = []

    async def fetch(self, urls: Sequence[str]) -> list[Photo]:
        self.fetched.extend(urls)
        return [Photo(data=b"\xff\xd8fake") for _ in urls]


@pytest_asyncio.fixture
async def store(tmp_path):
    store = ShopStore(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    await store.init_db()
    yield store
    await store.dispose()


@pytest.fixture
def email():
    return FakeEmailSender()


@pytest.fixture
def content():
    return FakeContentGenerator()


@pytest.fixture
def services(store, email, content):
    return ShopServices(store=store, email=email, content=content, photos=FakePhotoFetcher())


@pytest_asyncio.fixture
async def pools():
    pools = WorkPools(PoolConfig(high=10, default=5, low=3))
    yield pools
    await pools.close()


@pytest.fixture
def manager(services, pools):
    return WorkflowManager(InMemoryWorkflowJournal(), pools, services)
