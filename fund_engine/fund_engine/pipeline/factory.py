"""Wire a :class:`SettlementPipeline` and its companions from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from fund_engine.alerting import AlertChannel, LogAlertChannel, WebhookAlertChannel
from fund_engine.config import Settings
from fund_engine.distribution.engine import DistributionEngine
from fund_engine.executor.transaction import TransactionExecutor
from fund_engine.holders import HolderService
from fund_engine.ledger.gateway import GatewayClient
from fund_engine.maintenance import MaintenanceService
from fund_engine.oracle.client import OracleClient
from fund_engine.pipeline.settlement import SettlementPipeline
from fund_engine.retry import RetryConfig
from fund_engine.state.store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineResources:
    """The pipeline plus the clients it owns, closed together."""

    pipeline: SettlementPipeline
    store: SnapshotStore
    gateway: GatewayClient
    oracle: OracleClient
    alerts: AlertChannel
    holders: HolderService
    maintenance: MaintenanceService

    async def aclose(self) -> None:
        await self.gateway.close()
        await self.oracle.close()
        if isinstance(self.alerts, WebhookAlertChannel):
            await self.alerts.close()


def build_alert_channel(settings: Settings) -> AlertChannel:
    if settings.is_alerting_configured():
        return WebhookAlertChannel(
            settings.alert_webhook_url or "",
            token=settings.alert_webhook_token,
            timeout=settings.alert_timeout,
        )
    logger.warning("No alert webhook configured; alerts go to the log only")
    return LogAlertChannel()


def build_store(settings: Settings, engine: AsyncEngine) -> SnapshotStore:
    return SnapshotStore(
        engine,
        RetryConfig(
            max_retries=settings.db_max_retries,
            base_delay=settings.db_retry_base_delay,
            max_delay=settings.db_retry_max_delay,
        ),
    )


def build_gateway(settings: Settings) -> GatewayClient:
    return GatewayClient(
        settings.gateway_url,
        timeout=settings.gateway_timeout,
        application_name=settings.application_name,
        application_version=settings.application_version,
        poll_interval=settings.finality_poll_interval,
        finality_timeout=settings.finality_timeout,
    )


def build_holder_service(settings: Settings, gateway: GatewayClient) -> HolderService:
    return HolderService(
        gateway,
        settings.node_lsu_resource,
        collateral_nft_resource=settings.collateral_nft_resource,
        min_balance=settings.min_holder_balance,
    )


def build_pipeline(settings: Settings, engine: AsyncEngine, signer: Any) -> PipelineResources:
    """Assemble every collaborator of the pipeline.

    *signer* must satisfy both the transaction-signer and the oracle
    request-signer interfaces (see :func:`fund_engine.signing.load_signer`).
    """
    store = build_store(settings, engine)
    gateway = build_gateway(settings)
    oracle = OracleClient(settings.oracle_url, settings.oracle_nft_id, signer, timeout=settings.oracle_timeout)
    alerts = build_alert_channel(settings)
    executor = TransactionExecutor(gateway, signer, retry_delay=settings.tx_retry_delay)
    holders = build_holder_service(settings, gateway)
    distribution = DistributionEngine(
        executor,
        store,
        component_address=settings.fund_manager_component,
        badge_address=settings.fund_bot_badge,
        fee_lock=settings.distribution_fee_lock,
        batch_size=settings.distribution_batch_size,
    )
    pipeline = SettlementPipeline(settings, store, gateway, executor, oracle, holders, distribution, alerts)
    maintenance = MaintenanceService(settings, gateway, executor, alerts)
    return PipelineResources(
        pipeline=pipeline,
        store=store,
        gateway=gateway,
        oracle=oracle,
        alerts=alerts,
        holders=holders,
        maintenance=maintenance,
    )
