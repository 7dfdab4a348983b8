import asyncio
import logging
import signal
import sys

from .config import WorkerConfig
from .http_server import ControlServer
from .logging_setup import setup_logging, log_exception
from .service import MediaService

logger = logging.getLogger("media_worker")


async def serve(config: WorkerConfig) -> None:
    """Run the media service until a shutdown signal arrives"""
    service = MediaService(config)
    await service.initialize()
    
    stop = asyncio.Event()
    server = None
    loop = asyncio.get_running_loop()
    
    def request_stop():
        logger.info("Received shutdown signal, shutting down...")
        stop.set()
        if server:
            server.stop()
    
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, request_stop)
    
    try:
        if config.ENABLE_HTTP_SERVER:
            server = ControlServer(service, config.HTTP_PORT)
            await server.serve()
        else:
            logger.info("Media worker running without control server")
            await stop.wait()
    finally:
        await service.shutdown()


def main():
    """Main entry point"""
    config = WorkerConfig.from_env()
    
    try:
        setup_logging(config.LOG_LEVEL, config.LOG_DIR)
        config.validate()
        asyncio.run(serve(config))
    except Exception as e:
        log_exception(logger, f"Media worker failed to start: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
