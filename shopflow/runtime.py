"""Composition root wiring pools, journal, store and manager together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .ai import AgentContentGenerator, PhotoFetcher
from .auth import IdentityProvider, JWTIdentityProvider
from .config import ShopflowConfig, load_config
from .contracts import RetryPolicy
from .db import ShopStore
from .mailer import LoggingEmailSender
from .manager import WorkflowManager
from .persistence import WorkflowJournal, get_journal
from .pools import WorkPools
from .services import ShopServices
from .workflows import register_all

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: ShopflowConfig
    journal: WorkflowJournal
    store: ShopStore
    pools: WorkPools
    services: ShopServices
    manager: WorkflowManager
    identity: Optional[IdentityProvider] = None

    async def start(self) -> list[str]:
        """Create business tables and resume unfinished runs."""
        await self.store.init_db()
        return await self.manager.recover()

    async def close(self) -> None:
        await self.pools.close()
        await self.store.dispose()


def build_runtime(
    config: Optional[ShopflowConfig] = None,
    journal: Optional[WorkflowJournal] = None,
    services: Optional[ShopServices] = None,
) -> Runtime:
    """Build the process-wide runtime with every shop workflow registered."""
    config = config or load_config()
    if journal is None:
        journal = get_journal(config.journal_url) if config.journal_url else get_journal()

    if services is None:
        services = ShopServices(
            store=ShopStore(config.store_url),
            email=LoggingEmailSender(config.email.from_address),
            content=AgentContentGenerator(config.ai.model),
            photos=PhotoFetcher(timeout_s=config.ai.photo_timeout_s),
        )

    pools = WorkPools(config.pools)
    manager = WorkflowManager(
        journal,
        pools,
        services,
        default_retry=RetryPolicy(**config.retry.model_dump()),
    )
    register_all(manager)

    identity = None
    if config.auth.jwt_secret:
        identity = JWTIdentityProvider(config.auth.jwt_secret, config.auth.algorithms)

    logger.debug(
        f"Runtime built with pools high={config.pools.high} "
        f"default={config.pools.default} low={config.pools.low}"
    )
    return Runtime(
        config=config,
        journal=journal,
        store=services.store,
        pools=pools,
        services=services,
        manager=manager,
        identity=identity,
    )
