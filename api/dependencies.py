"""
API依赖项 - 仓储、网关工厂与结账编排服务的装配
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from application.services.payment_service import CheckoutOrchestrator
from infrastructure.database import get_session
from infrastructure.external.payments import ConfiguredGatewayFactory
from infrastructure.repositories.payment_repository import (
    SQLAlchemyCustomerLinkRepository,
    SQLAlchemySettingsRepository,
)


async def get_settings_repository(
    session: AsyncSession = Depends(get_session),
) -> SQLAlchemySettingsRepository:
    return SQLAlchemySettingsRepository(session)


async def get_customer_link_repository(
    session: AsyncSession = Depends(get_session),
) -> SQLAlchemyCustomerLinkRepository:
    return SQLAlchemyCustomerLinkRepository(session)


async def get_checkout_orchestrator(
    settings_repo: SQLAlchemySettingsRepository = Depends(get_settings_repository),
    customer_links: SQLAlchemyCustomerLinkRepository = Depends(get_customer_link_repository),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        settings_repo=settings_repo,
        customer_links=customer_links,
        gateways=ConfiguredGatewayFactory(settings_repo),
    )
