"""Visual quotes: suggest job items from photos of the vehicle."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Optional, Sequence

from pydantic import BaseModel

from ..ai import CatalogItem, QuoteSuggestion
from ..contracts import CompletionEvent, Priority, RetryPolicy, StepContext, action
from ..db import Job, Service, Upcharge
from ..errors import InvalidStateError, ShopflowError
from ..services import ShopServices

if TYPE_CHECKING:
    from ..manager import WorkflowManager

logger = logging.getLogger(__name__)

VISUAL_QUOTE_WORKFLOW = "visual_quote"
VISUAL_QUOTE_COMPLETED = "visual_quote.completed"

QUOTE_RETRY = RetryPolicy(max_attempts=3, initial_backoff_ms=1000, backoff_multiplier=2)
QUOTE_TIMEOUT_S = 120.0


class VisualQuoteArgs(BaseModel):
    job_id: str


async def prepare_and_analyze_photos(ctx: StepContext) -> dict[str, list[str]]:
    services = ctx.services
    if services.content is None or services.photos is None:
        raise ShopflowError("Visual quotes need a content generator and a photo fetcher")

    job = await services.store.require(Job, ctx.args.job_id)
    if not job.visual_quote_photo_urls:
        raise InvalidStateError(f"Job {job.id} has no photos to analyze")

    catalog = [
        CatalogItem(id=str(s.id), name=s.name, description=s.description)
        for s in await services.store.query(Service)
    ]
    upcharges = [
        CatalogItem(id=str(u.id), name=u.name, description=u.description)
        for u in await services.store.query(Upcharge)
    ]
    photos = await services.photos.fetch(job.visual_quote_photo_urls)
    suggestion = await services.content.suggest_quote(photos, catalog, upcharges)
    return suggestion.model_dump()


def build_job_items(
    suggestion: QuoteSuggestion,
    services: Sequence[Service],
    upcharges: Sequence[Upcharge],
) -> list[dict[str, Any]]:
    """Turn suggested ids into priced job items.

    Unknown service ids are dropped. Every suggested upcharge is attached to
    the first item and applied in order, percentages compounding on the
    running total.
    """
    by_service = {str(s.id): s for s in services}
    by_upcharge = {str(u.id): u for u in upcharges}
    stamp = int(time.time() * 1000)

    items: list[dict[str, Any]] = []
    for service_id in suggestion.suggested_service_ids:
        service = by_service.get(service_id)
        if service is None:
            continue
        items.append(
            {
                "id": f"item_{stamp}_{service_id}",
                "service_id": service_id,
                "quantity": 1,
                "unit_price": service.base_price,
                "applied_pricing_rule_ids": [],
                "added_upcharge_ids": [],
                "total": service.base_price,
            }
        )
    if items and suggestion.suggested_upcharge_ids:
        items[0]["added_upcharge_ids"].extend(suggestion.suggested_upcharge_ids)

    for item in items:
        total = item["unit_price"]
        for upcharge_id in item["added_upcharge_ids"]:
            upcharge = by_upcharge.get(upcharge_id)
            if upcharge is None:
                continue
            if upcharge.is_percentage:
                total += total * (upcharge.default_amount / 100)
            else:
                total += upcharge.default_amount
        item["total"] = total
    return items


async def on_visual_quote_completed(services: ShopServices, event: CompletionEvent) -> None:
    job_id = event.context["job_id"]
    result = event.result
    if result.kind != "success":
        if result.kind == "error":
            logger.error(f"Visual quote failed for job {job_id}: {result.error}")
        else:
            logger.info(f"Visual quote canceled for job {job_id}")
        await services.store.patch(Job, job_id, visual_quote_status="failed")
        return

    store = services.store
    if await store.get(Job, job_id) is None:
        return
    items = build_job_items(
        QuoteSuggestion.model_validate(result.return_value),
        await store.query(Service),
        await store.query(Upcharge),
    )
    await store.patch(
        Job,
        job_id,
        job_items=items,
        total_amount=sum(item["total"] for item in items),
        visual_quote_status="complete",
    )


def register(manager: "WorkflowManager") -> None:
    manager.define(
        VISUAL_QUOTE_WORKFLOW,
        [
            action(
                "prepare_and_analyze_photos",
                prepare_and_analyze_photos,
                retry=QUOTE_RETRY,
                timeout_s=QUOTE_TIMEOUT_S,
            )
        ],
        args_model=VisualQuoteArgs,
        pool=Priority.DEFAULT,
    )
    manager.register_completion_handler(VISUAL_QUOTE_COMPLETED, on_visual_quote_completed)


async def request_visual_quote(
    manager: "WorkflowManager", job_id: str, photo_urls: Optional[Sequence[str]] = None
) -> str:
    """Mark the job as analyzing and start the quote workflow.

    ``photo_urls`` replaces the job's stored photo list when given.
    """
    fields: dict[str, Any] = {"visual_quote_status": "analyzing"}
    if photo_urls is not None:
        fields["visual_quote_photo_urls"] = list(photo_urls)
    await manager.services.store.patch(Job, job_id, **fields)
    return await manager.start(
        VISUAL_QUOTE_WORKFLOW,
        VisualQuoteArgs(job_id=job_id),
        on_complete=VISUAL_QUOTE_COMPLETED,
        context={"job_id": job_id},
    )
