"""Marketing campaigns: AI content generation and email fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

from ..auth import CurrentUser, require_admin
from ..contracts import CompletionEvent, Priority, RetryPolicy, StepContext, action, query
from ..db import Campaign, Company, Customer
from ..db.models import utcnow
from ..errors import InvalidStateError, ShopflowError
from ..services import ShopServices

if TYPE_CHECKING:
    from ..manager import WorkflowManager

logger = logging.getLogger(__name__)

GENERATION_WORKFLOW = "campaign_generation"
SEND_WORKFLOW = "campaign_send"
GENERATION_COMPLETED = "campaign_generation.completed"
SEND_COMPLETED = "campaign_send.completed"

GENERATION_RETRY = RetryPolicy(max_attempts=3, initial_backoff_ms=1000, backoff_multiplier=2)
SEND_RETRY = RetryPolicy(max_attempts=2, initial_backoff_ms=1000, backoff_multiplier=2)

GENERATION_FAILED_SUBJECT = "Content Generation Failed"
GENERATION_FAILED_BODY = (
    "There was an error generating the content for this campaign. "
    "Please try creating a new one."
)
NAME_PLACEHOLDER = "{customer.name}"


class GenerationArgs(BaseModel):
    goal: str


class SendArgs(BaseModel):
    campaign_id: str


# ----------------------------------------------------------------------
# Generation
async def generate_campaign_text(ctx: StepContext) -> dict[str, str]:
    content = ctx.services.content
    if content is None:
        raise ShopflowError("No content generator is configured")
    company = await ctx.services.store.first(Company)
    generated = await content.generate_campaign(
        company.name if company else "Detailing Pro", ctx.args.goal
    )
    return {"subject": generated.subject, "body": generated.body}


async def on_generation_completed(services: ShopServices, event: CompletionEvent) -> None:
    campaign_id = event.context["campaign_id"]
    result = event.result
    if result.kind == "error":
        logger.error(f"Campaign generation failed for campaign {campaign_id}: {result.error}")
        await services.store.patch(
            Campaign,
            campaign_id,
            status="failed",
            subject=GENERATION_FAILED_SUBJECT,
            body=GENERATION_FAILED_BODY,
        )
        return
    if result.kind == "canceled":
        logger.info(f"Campaign generation canceled for campaign {campaign_id}")
        await services.store.patch(Campaign, campaign_id, status="failed", subject="Canceled")
        return
    await services.store.patch(
        Campaign,
        campaign_id,
        subject=result.return_value["subject"],
        body=result.return_value["body"],
        status="complete",
    )


# ----------------------------------------------------------------------
# Sending
async def load_campaign(ctx: StepContext) -> dict[str, str]:
    campaign = await ctx.services.store.get(Campaign, ctx.args.campaign_id)
    if campaign is None or not campaign.subject or not campaign.body:
        raise InvalidStateError("Campaign content is missing.")
    return {"subject": campaign.subject, "body": campaign.body}


async def send_emails(ctx: StepContext) -> dict[str, int]:
    campaign = ctx.outputs["load_campaign"]
    customers = await ctx.services.store.query(Customer)
    await asyncio.gather(
        *(
            ctx.services.email.send(
                customer.email,
                campaign["subject"],
                campaign["body"].replace(NAME_PLACEHOLDER, customer.name, 1),
            )
            for customer in customers
        )
    )
    return {"recipients": len(customers)}


async def on_send_completed(services: ShopServices, event: CompletionEvent) -> None:
    campaign_id = event.context["campaign_id"]
    result = event.result
    if result.kind != "success":
        detail = result.error if result.kind == "error" else "Canceled"
        logger.error(f"Sending campaign {campaign_id} failed: {detail}")
        await services.store.patch(Campaign, campaign_id, status="failed")
        return
    await services.store.patch(Campaign, campaign_id, status="sent", sent_at=utcnow())


def register(manager: "WorkflowManager") -> None:
    manager.define(
        GENERATION_WORKFLOW,
        [action("generate_campaign_text", generate_campaign_text, retry=GENERATION_RETRY)],
        args_model=GenerationArgs,
        pool=Priority.LOW,
    )
    manager.define(
        SEND_WORKFLOW,
        [
            query("load_campaign", load_campaign),
            action("send_emails", send_emails, retry=SEND_RETRY),
        ],
        args_model=SendArgs,
        pool=Priority.LOW,
    )
    manager.register_completion_handler(GENERATION_COMPLETED, on_generation_completed)
    manager.register_completion_handler(SEND_COMPLETED, on_send_completed)


# ----------------------------------------------------------------------
# Entry points
async def save_campaign(
    manager: "WorkflowManager",
    user: Optional[CurrentUser],
    goal: str,
    campaign_id: Optional[str] = None,
    subject: Optional[str] = None,
    body: Optional[str] = None,
) -> str:
    """Edit an existing campaign, or create one and start generating it.

    Returns the campaign id.
    """
    require_admin(user)
    store = manager.services.store
    if campaign_id is not None:
        fields: dict[str, Any] = {"goal": goal}
        if subject is not None:
            fields["subject"] = subject
        if body is not None:
            fields["body"] = body
        await store.patch(Campaign, campaign_id, **fields)
        return campaign_id

    campaign = await store.insert(Campaign(goal=goal, status="generating"))
    campaign_id = str(campaign.id)
    try:
        run_id = await manager.start(
            GENERATION_WORKFLOW,
            GenerationArgs(goal=goal),
            on_complete=GENERATION_COMPLETED,
            context={"campaign_id": campaign_id},
        )
    except Exception:
        await store.patch(
            Campaign,
            campaign_id,
            status="failed",
            subject=GENERATION_FAILED_SUBJECT,
            body=GENERATION_FAILED_BODY,
        )
        raise
    logger.info(f"Generating campaign {campaign_id}, run_id={run_id}")
    return campaign_id


async def send_campaign(
    manager: "WorkflowManager", user: Optional[CurrentUser], campaign_id: str
) -> str:
    """Mark a generated campaign as sending and start the fan-out.

    Returns the run id of the send workflow.
    """
    require_admin(user)
    store = manager.services.store
    await store.require(Campaign, campaign_id)
    if not await store.compare_and_set(
        Campaign, campaign_id, {"status": "complete"}, status="sending"
    ):
        raise InvalidStateError("Campaign is not ready to be sent.")
    try:
        return await manager.start(
            SEND_WORKFLOW,
            SendArgs(campaign_id=campaign_id),
            on_complete=SEND_COMPLETED,
            context={"campaign_id": campaign_id},
        )
    except Exception:
        await store.patch(Campaign, campaign_id, status="complete")
        raise
