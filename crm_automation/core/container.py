"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from crm_automation.core.config import Settings
from crm_automation.core.database import Database
from crm_automation.services.collaborators import HttpAIBackend, HttpCRMGateway, HttpOutboundSender
from crm_automation.services.dispatcher import InboundDispatcher
from crm_automation.services.dry_run import DryRunExecutor
from crm_automation.services.node_executor import NodeExecutor
from crm_automation.services.pending_inputs import PendingInputService
from crm_automation.services.runner import ExecutionRunner
from crm_automation.services.scheduler import SweepScheduler
from crm_automation.services.trigger_matcher import TriggerMatcher


def _http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_seconds)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Shared HTTP client (collaborators and http/email/sms nodes)
    http_client = providers.Singleton(
        _http_client,
        settings=settings
    )

    # Collaborators
    outbound = providers.Singleton(
        HttpOutboundSender,
        client=http_client,
        base_url=settings.provided.messaging_service_url,
        api_key=settings.provided.service_api_key
    )

    ai_backend = providers.Singleton(
        HttpAIBackend,
        client=http_client,
        base_url=settings.provided.ai_service_url,
        api_key=settings.provided.service_api_key
    )

    crm = providers.Singleton(
        HttpCRMGateway,
        client=http_client,
        base_url=settings.provided.crm_service_url,
        api_key=settings.provided.service_api_key
    )

    # Services
    node_executor = providers.Singleton(
        NodeExecutor,
        settings=settings,
        outbound=outbound,
        ai_backend=ai_backend,
        crm=crm,
        http_client=http_client
    )

    pending_inputs = providers.Singleton(
        PendingInputService,
        database=database
    )

    runner = providers.Singleton(
        ExecutionRunner,
        database=database,
        node_executor=node_executor,
        pending_inputs=pending_inputs,
        settings=settings
    )

    trigger_matcher = providers.Singleton(
        TriggerMatcher,
        database=database,
        crm=crm,
        runner=runner,
        settings=settings
    )

    dispatcher = providers.Singleton(
        InboundDispatcher,
        pending_inputs=pending_inputs,
        runner=runner,
        trigger_matcher=trigger_matcher
    )

    dry_run = providers.Factory(
        DryRunExecutor,
        settings=settings
    )

    scheduler = providers.Singleton(
        SweepScheduler,
        runner=runner,
        settings=settings
    )


# Global container instance
container = Container()
