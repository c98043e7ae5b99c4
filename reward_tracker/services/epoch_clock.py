"""
Epoch clock - reads the current network epoch.
"""

import structlog


logger = structlog.get_logger(__name__)


class EpochClock:
    """Stateless view of the cluster's current epoch."""

    def __init__(self, network_client):
        self.network_client = network_client

    async def current_epoch(self) -> int:
        epoch = await self.network_client.fetch_latest_epoch()
        logger.debug("Current network epoch", epoch=epoch)
        return epoch
