"""
CLI context for Work Item Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration, connectors, and the field mapping transformer.
"""

from dataclasses import dataclass, field
from pathlib import Path

from workitem_bridge.client.ado_client import AdoTargetClient
from workitem_bridge.client.rally_client import RallySourceClient
from workitem_bridge.config import MigrationConfig, load_config_from_yaml
from workitem_bridge.migration.checkpoint import CheckpointManager
from workitem_bridge.migration.mapping import FieldMappingTransformer
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    This object holds configuration and clients that are shared across CLI
    commands. It is passed via Click's context mechanism. Clients are
    created on first use.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _source_client: RallySourceClient | None = field(default=None, init=False, repr=False)
    _target_client: AdoTargetClient | None = field(default=None, init=False, repr=False)
    _transformer: FieldMappingTransformer | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ValueError(
                    "Configuration file path not provided. "
                    "Use --config option or set WORKITEM_BRIDGE_CONFIG environment variable."
                )

            logger.debug("loading_configuration", config_path=str(self.config_path))
            self._config = load_config_from_yaml(self.config_path)

        return self._config

    @property
    def source_client(self) -> RallySourceClient:
        """Get or create the Rally client."""
        if self._source_client is None:
            perf = self.config.performance
            self._source_client = RallySourceClient(
                config=self.config.source,
                rate_limit=perf.rate_limit,
                page_size=perf.page_size,
                log_payloads=self.config.logging.log_payloads,
                max_payload_size=self.config.logging.max_payload_size,
                max_connections=perf.http_max_connections,
                max_keepalive_connections=perf.http_max_keepalive_connections,
            )
        return self._source_client

    @property
    def target_client(self) -> AdoTargetClient:
        """Get or create the Azure DevOps client."""
        if self._target_client is None:
            perf = self.config.performance
            self._target_client = AdoTargetClient(
                config=self.config.target,
                rate_limit=perf.rate_limit,
                log_payloads=self.config.logging.log_payloads,
                max_payload_size=self.config.logging.max_payload_size,
                max_connections=perf.http_max_connections,
                max_keepalive_connections=perf.http_max_keepalive_connections,
            )
        return self._target_client

    @property
    def transformer(self) -> FieldMappingTransformer:
        """Get or load the field mapping transformer."""
        if self._transformer is None:
            self._transformer = FieldMappingTransformer.from_file(self.config.paths.mapping_file)
        return self._transformer

    @property
    def checkpoint_manager(self) -> CheckpointManager:
        return CheckpointManager(self.config.state.checkpoint_path)

    async def aclose(self) -> None:
        """Close any clients that were created."""
        if self._source_client is not None:
            await self._source_client.close()
            self._source_client = None
        if self._target_client is not None:
            await self._target_client.close()
            self._target_client = None
