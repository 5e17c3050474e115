"""
API依赖项 - 组合根：把基础设施适配器注入应用服务
"""
from functools import lru_cache

from fastapi import Depends

from application.ports.catalog import CatalogPort
from application.ports.locks import KeyedLock
from application.ports.notifier import Notifier
from application.ports.payment_gateway import PaymentGateway
from application.services.ledger_context import UnitOfWorkFactory
from application.services.payment_service import PaymentService
from core.config import settings
from core.settings import payment_settings
from infrastructure.external.api_clients import CatalogAPIClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.locks import build_keyed_lock
from infrastructure.tasks.utils.dispatcher import TaskDispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# 锁、网关与目录客户端在进程内共享：进程内锁必须是同一实例才能互斥
@lru_cache
def get_keyed_lock() -> KeyedLock:
    return build_keyed_lock()


@lru_cache
def get_gateway() -> PaymentGateway:
    return get_payment_gateway(settings=payment_settings)


@lru_cache
def get_catalog() -> CatalogPort:
    return CatalogAPIClient(settings.catalog)


def get_notifier() -> Notifier:
    return TaskDispatcher()


def get_uow_factory() -> UnitOfWorkFactory:
    return SQLAlchemyUnitOfWork


async def get_payment_service(
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    catalog: CatalogPort = Depends(get_catalog),
    locks: KeyedLock = Depends(get_keyed_lock),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentService:
    return PaymentService(
        uow_factory,
        gateway,
        catalog,
        locks,
        ledger_settings=payment_settings.ledger,
        notifier=notifier,
    )


async def shutdown_dependencies() -> None:
    """关闭已创建的共享客户端"""
    for factory in (get_gateway, get_catalog, get_keyed_lock):
        if factory.cache_info().currsize:
            close = getattr(factory(), "aclose", None)
            if callable(close):
                await close()
        factory.cache_clear()
