"""Generative-AI collaborator backed by pydantic-ai agents."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field
from pydantic_ai import Agent, BinaryContent

logger = logging.getLogger(__name__)


class CampaignContent(BaseModel):
    """Subject line and body for a marketing email."""

    subject: str
    body: str = Field(description="Email body; paragraphs separated by newlines")


class QuoteSuggestion(BaseModel):
    """Services and upcharges suggested from vehicle photos."""

    suggested_service_ids: list[str] = Field(default_factory=list)
    suggested_upcharge_ids: list[str] = Field(default_factory=list)


class CatalogItem(BaseModel):
    id: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class Photo:
    data: bytes
    media_type: str = "image/jpeg"


class ContentGenerator(Protocol):
    async def generate_campaign(self, company_name: str, goal: str) -> CampaignContent:
        """Write campaign content for ``goal``."""

    async def suggest_quote(
        self,
        photos: Sequence[Photo],
        services: Sequence[CatalogItem],
        upcharges: Sequence[CatalogItem],
    ) -> QuoteSuggestion:
        """Suggest catalog ids that fit the vehicle's visible condition."""


CAMPAIGN_INSTRUCTIONS = (
    "You write email marketing campaigns for small auto detailing businesses. "
    "The tone is professional but friendly."
)

QUOTE_INSTRUCTIONS = (
    "You estimate auto detailing work from photos of a vehicle. Judge the visible "
    "condition (dirt, swirls, stains, pet hair) and only suggest ids taken from "
    "the catalogs you are given."
)


def campaign_prompt(company_name: str, goal: str) -> str:
    return (
        f'I am the owner of an auto detailing business called "{company_name}". '
        f'I want to create an email marketing campaign with the goal: "{goal}". '
        "Please generate a compelling subject line and email body."
    )


def quote_prompt(services: Sequence[CatalogItem], upcharges: Sequence[CatalogItem]) -> str:
    return (
        "Analyze these photos of a vehicle that needs detailing and suggest a quote.\n"
        "- suggested_service_ids: the most appropriate service ids.\n"
        "- suggested_upcharge_ids: upcharge ids for things like excessive pet hair "
        "or heavy stains.\n"
        f"Available services: {json.dumps([s.model_dump() for s in services])}\n"
        f"Available upcharges: {json.dumps([u.model_dump() for u in upcharges])}"
    )


class AgentContentGenerator:
    """``ContentGenerator`` that delegates to pydantic-ai agents."""

    def __init__(self, model: Any) -> None:
        self._campaign_agent = Agent(
            model,
            output_type=CampaignContent,
            system_prompt=CAMPAIGN_INSTRUCTIONS,
            defer_model_check=True,
        )
        self._quote_agent = Agent(
            model,
            output_type=QuoteSuggestion,
            system_prompt=QUOTE_INSTRUCTIONS,
            defer_model_check=True,
        )

    async def generate_campaign(self, company_name: str, goal: str) -> CampaignContent:
        result = await self._campaign_agent.run(campaign_prompt(company_name, goal))
        return result.output

    async def suggest_quote(
        self,
        photos: Sequence[Photo],
        services: Sequence[CatalogItem],
        upcharges: Sequence[CatalogItem],
    ) -> QuoteSuggestion:
        parts: list[Any] = [
            BinaryContent(data=photo.data, media_type=photo.media_type) for photo in photos
        ]
        parts.append(quote_prompt(services, upcharges))
        result = await self._quote_agent.run(parts)
        return result.output


class PhotoFetcher:
    """Downloads job photos with a bounded timeout."""

    def __init__(
        self, timeout_s: float = 10.0, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_s
        self._client = client

    async def _fetch_one(self, client: httpx.AsyncClient, url: str) -> Photo:
        response = await client.get(url)
        response.raise_for_status()
        media_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return Photo(data=response.content, media_type=media_type)

    async def fetch(self, urls: Sequence[str]) -> list[Photo]:
        if self._client is not None:
            return list(await asyncio.gather(*(self._fetch_one(self._client, u) for u in urls)))
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            return list(await asyncio.gather(*(self._fetch_one(client, u) for u in urls)))
