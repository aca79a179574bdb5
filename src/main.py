"""
Main entry point for the External Secrets Operator.

Connects to the cluster, detects optional capabilities, bootstraps the
default ExternalSecretsManager and runs the controllers alongside the
health probe server.
"""

import asyncio
import logging
import signal
from typing import List, Optional

import click

from capabilities import CapabilityRegistry, detect
from config import Config, get_config
from controller import Controller
from events import EventRecorder
from health import HealthServer
from kube import KubeClient
from reconcilers import (
    ReconcilerContext,
    ReconcilerRegistry,
    register_builtin_reconcilers,
)
from reconcilers.manager import create_default_manager

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controllers and probes."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.kube: Optional[KubeClient] = None
        self.capabilities: Optional[CapabilityRegistry] = None
        self.controller: Optional[Controller] = None
        self.health = HealthServer(
            self.ready,
            host=self.config.health.host,
            port=self.config.health.port,
        )
        self.running = False

    def ready(self) -> bool:
        return (
            self.capabilities is not None
            and self.controller is not None
            and self.controller.started
        )

    async def initialize(self):
        """
        Initialize all components.

        Raises:
            Exception: If the cluster cannot be reached or discovery fails;
                the operator cannot run without knowing its capabilities.
        """
        logger.info("Initializing External Secrets Operator")
        ctrl_config = self.config.controller

        self.kube = KubeClient(
            update_retry_attempts=ctrl_config.update_retry_attempts,
            update_retry_backoff=ctrl_config.update_retry_backoff_seconds,
            request_timeout=ctrl_config.request_timeout_seconds,
        )
        await self.kube.connect(ctrl_config.kubeconfig)

        self.capabilities = await detect(self.kube)
        logger.info(f"Detected capabilities: {list(self.capabilities)}")

        registry = ReconcilerRegistry()
        register_builtin_reconcilers(registry)
        ctx = ReconcilerContext(
            kube=self.kube,
            recorder=EventRecorder(self.kube),
            capabilities=self.capabilities,
            config=self.config,
        )
        self.controller = Controller(
            self.kube,
            registry.create_reconcilers(ctx),
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            requeue_after_seconds=ctrl_config.requeue_after_seconds,
            reconcile_timeout_seconds=ctrl_config.reconcile_timeout_seconds,
        )

        try:
            await create_default_manager(
                self.kube,
                operator_version=self.config.images.operator_version,
                attempts=ctrl_config.update_retry_attempts,
                backoff=ctrl_config.update_retry_backoff_seconds,
            )
        except Exception as e:
            logger.info(
                "could not create default externalsecretsmanagers.operator.openshift.io "
                f"resource, will be created by controller reconciliation: {e}"
            )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting External Secrets Operator")

        tasks: List[asyncio.Task] = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.health.start()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running and self.kube is None:
            return
        logger.info("Stopping External Secrets Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()
        await self.health.stop()

        if self.kube:
            await self.kube.close()
            self.kube = None

        logger.info("External Secrets Operator stopped")


async def run(config: Config):
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


@click.command()
@click.option(
    "--kubeconfig",
    envvar="KUBECONFIG",
    default=None,
    help="Path to a kubeconfig file; in-cluster configuration when unset.",
)
@click.option("--health-probe-port", type=int, default=None, help="Port for /healthz and /readyz.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Operator log level.",
)
def main(kubeconfig: Optional[str], health_probe_port: Optional[int], log_level: Optional[str]):
    """Run the External Secrets Operator."""
    config = get_config()
    if kubeconfig:
        config.controller.kubeconfig = kubeconfig
    if health_probe_port is not None:
        config.health.port = health_probe_port
    if log_level:
        config.health.log_level = log_level.upper()

    logging.basicConfig(
        level=getattr(logging, config.health.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
