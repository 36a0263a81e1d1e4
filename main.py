import asyncio
import signal
import logging

from config import settings_conf
from database import init_db, close as db_close
from indexer import BlockIndexer
from ledger import LedgerClient

logger = logging.getLogger(__name__)

def configure_logging() -> None:
    logging.basicConfig(
        level=settings_conf()['log_level'],
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

async def main():
    """Main application entry point."""
    settings = settings_conf()
    ledger = LedgerClient()
    indexer = None
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info("Shutdown signal received. Cleaning up...")
        if indexer is not None:
            indexer.stop()
        loop.call_soon_threadsafe(stopped.set)

    try:
        logger.info("Initializing database...")
        await init_db()

        logger.info(f"Connecting to ledger node at {ledger.url}...")
        await ledger.connect()

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        if settings['enable_indexer']:
            indexer = BlockIndexer(ledger)
            indexer_task = asyncio.create_task(indexer.start())
            stop_task = asyncio.create_task(stopped.wait())
            done, _ = await asyncio.wait({indexer_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            stop_task.cancel()
            if indexer_task in done:
                # Only a fatal indexing error ends the indexer without a signal
                indexer_task.result()
            else:
                await indexer_task
        else:
            logger.info("Indexer disabled")
            await stopped.wait()

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        await ledger.close()
        await db_close()

if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
