"""
Service wiring.

Builds the store, the outbound clients and the core services from one
AppConfig so the API and the scheduler share the same instances.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from backend.api.auth import TokenIdentityVerifier
from backend.core.store import DocumentStore, create_store
from backend.services.scheduler_service import SchedulerService
from charging.actions import CommandDispatcher, FleetClient
from charging.config import AppConfig
from charging.engine import ChargingEngine
from charging.override import OverrideGate
from charging.telemetry import VehicleStateTracker
from pricing.feed import EntsoeClient
from pricing.service import PriceRefresher
from pricing.windows import OptimalWindowPlanner

logger = logging.getLogger("smartcharge.services")


@dataclass
class Services:
    config: AppConfig
    store: DocumentStore
    fleet: FleetClient
    entsoe: EntsoeClient
    tracker: VehicleStateTracker
    engine: ChargingEngine
    planner: OptimalWindowPlanner
    refresher: PriceRefresher
    scheduler: SchedulerService
    verifier: TokenIdentityVerifier

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.fleet.aclose()
        await self.entsoe.aclose()


def build_services(
    config: AppConfig,
    store: Optional[DocumentStore] = None,
    fleet_http: Optional[httpx.AsyncClient] = None,
    entsoe_http: Optional[httpx.AsyncClient] = None,
) -> Services:
    """Wire every service. Pass ``store``/``*_http`` to substitute test doubles."""
    if store is None:
        store = create_store(config.store.backend, config.store.path)

    fleet = FleetClient(
        config.fleet,
        client_id=config.secrets.tesla_client_id,
        client_secret=config.secrets.tesla_client_secret,
        http=fleet_http,
    )
    dispatcher = CommandDispatcher(
        fleet,
        retry_attempts=config.fleet.retry_attempts,
        retry_base_delay_seconds=config.fleet.retry_base_delay_seconds,
        shadow_mode=config.fleet.shadow_mode,
    )
    engine = ChargingEngine(
        store,
        dispatcher,
        override_gate=OverrideGate(store),
        default_zone=config.pricing.default_zone,
    )

    tracker = VehicleStateTracker(store)
    tracker.add_plug_in_listener(engine.handle_plug_in)

    entsoe = EntsoeClient(
        config.secrets.entsoe_api_key,
        api_url=config.pricing.api_url,
        timeout_seconds=config.pricing.timeout_seconds,
        http=entsoe_http,
    )
    planner = OptimalWindowPlanner(store, default_zone=config.pricing.default_zone)
    refresher = PriceRefresher(store, entsoe, planner, config.pricing)
    scheduler = SchedulerService(refresher, engine, config.pricing, config.scheduler)

    if config.fleet.shadow_mode:
        logger.warning("Fleet shadow mode enabled: charge commands are logged, not sent")

    return Services(
        config=config,
        store=store,
        fleet=fleet,
        entsoe=entsoe,
        tracker=tracker,
        engine=engine,
        planner=planner,
        refresher=refresher,
        scheduler=scheduler,
        verifier=TokenIdentityVerifier(config.secrets.api_tokens),
    )
