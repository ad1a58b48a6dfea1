"""
Main pipeline service.

Builds the state store from configuration, wires the orchestrator and the
HTTP surface, resumes polling for jobs left active by a previous run and
serves requests until shutdown.
"""

import signal
import sys
import logging
from typing import Optional, Dict, Any

from .config import PipelineConfig
from .adapters.base import StateStore
from .adapters.memory_adapter import MemoryStateStore
from .adapters.postgres_adapter import PostgresStateStore
from .orchestrator import PipelineOrchestrator
from .logging_setup import setup_logging, log_exception
from .http_server import PipelineHTTPServer

logger = logging.getLogger("hand_pipeline")


class PipelineService:
    """Service wrapper owning the store, orchestrator and HTTP server"""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig.from_env()
        self.store: Optional[StateStore] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.http_server: Optional[PipelineHTTPServer] = None
        self.running = False

    def initialize(self):
        """Initialize the service based on configuration"""
        try:
            # Setup logging
            setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR, console_level=self.config.LOG_CONSOLE_LEVEL)

            # Validate configuration
            self.config.validate()
            if not self.config.ANALYSIS_SERVICE_URL:
                logger.warning("ANALYSIS_SERVICE_URL is not set; dispatch will be rejected until configured")

            # Initialize state store
            self.store = self._create_state_store()
            self.store.connect()

            self.orchestrator = PipelineOrchestrator(self.config, self.store)
            self.http_server = PipelineHTTPServer(self.orchestrator, self.config)

            logger.info(f"Pipeline service initialized with {self.config.STORAGE_TYPE} storage")

        except Exception as e:
            log_exception(logger, f"Failed to initialize pipeline service: {e}")
            raise

    def _create_state_store(self) -> StateStore:
        """Create state store adapter based on configuration"""

        if self.config.STORAGE_TYPE == "postgres":
            config = self.config.STORAGE_CONFIG
            return PostgresStateStore(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10),
                lock_pool_size=config.get("lock_pool_size")
            )

        elif self.config.STORAGE_TYPE == "memory":
            logger.warning("Using in-memory state store; pipeline state will not survive a restart")
            return MemoryStateStore()

        else:
            raise ValueError(f"Unsupported storage type: {self.config.STORAGE_TYPE}")

    def start(self):
        """Start the service and serve HTTP until stopped (blocks)"""
        if self.running:
            logger.warning("Pipeline service is already running")
            return

        self.running = True
        self.orchestrator.resume_polling()
        logger.info("Pipeline service started")
        self.http_server.serve()

    def stop(self):
        """Stop the service"""
        if not self.running:
            return

        self.running = False

        if self.orchestrator:
            self.orchestrator.shutdown()
        if self.http_server:
            self.http_server.stop()
        if self.store:
            self.store.close()

        logger.info("Pipeline service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get service statistics"""
        stats = {
            'running': self.running,
            'config': {
                'storage_type': self.config.STORAGE_TYPE,
                'polling_enabled': self.config.ENABLE_POLLING,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS,
                'segment_duration_cap_sec': self.config.SEGMENT_DURATION_CAP_SEC,
                'dedup_threshold_sec': self.config.DEDUP_THRESHOLD_SEC
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()

        return stats


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service = PipelineService()

    try:
        service.initialize()
        service.start()
    except Exception as e:
        log_exception(logger, f"Pipeline service failed to start: {str(e)}")
        sys.exit(1)
    finally:
        service.stop()


if __name__ == "__main__":
    main()
