"""
main.py — Single entry point.

Builds the shared components once (lock manager, product store, analysis
dispatcher, rate limiter), mounts them on the aiohttp app and serves until
SIGINT / SIGTERM.

Architecture:
  asyncio event loop
    └── aiohttp web server
          ├── ProductStore  ── FileLockManager (products JSON file)
          └── AnalysisDispatcher ── QwenProvider × N (DashScope, sequential)
"""
import asyncio
import logging
import signal
import ssl
import sys

import config

# Log file lives in DATA_DIR next to the products file so that a single
# volume mount captures both.
config.DATA_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(config.DATA_DIR / "server.log"), encoding="utf-8"),
    ],
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _ssl_context():
    if not (config.SSL_CERTFILE and config.SSL_KEYFILE):
        return None
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(config.SSL_CERTFILE, config.SSL_KEYFILE)
    return ctx


def build_app():
    from file_lock import FileLockManager
    from product_store import ProductStore
    from providers.manager import AnalysisDispatcher, build_providers
    from rate_limiter import RateLimiter
    from server import build_web_app

    locks = FileLockManager()
    store = ProductStore(config.PRODUCTS_FILE, locks, lock_timeout=config.LOCK_TIMEOUT_SECS)
    dispatcher = AnalysisDispatcher(build_providers(
        config.DASHSCOPE_API_KEY,
        config.QWEN_MODELS,
        config.UPLOADS_DIR,
        api_url=config.QWEN_API_URL,
        timeout=config.ANALYSIS_TIMEOUT_SECS,
    ))
    limiter = RateLimiter(config.RATE_MAX_REQUESTS, config.RATE_WINDOW_SECS)

    return build_web_app(
        store,
        dispatcher,
        limiter,
        config.UPLOADS_DIR,
        version=config.APP_VERSION,
        static_dir=config.STATIC_DIR,
        max_upload_mb=config.MAX_UPLOAD_MB,
        trust_proxy_headers=config.TRUST_PROXY_HEADERS,
    )


async def run() -> None:
    from server import start_server

    app = build_app()
    try:
        runner = await start_server(app, config.HOST, config.PORT, _ssl_context())
    except Exception as exc:
        logger.critical("FATAL: server failed to start: %s", exc, exc_info=True)
        raise

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    logger.info("✅ Product capture service v%s is running. Press Ctrl+C to stop.", config.APP_VERSION)
    logger.info("   products file: %s", config.PRODUCTS_FILE)
    logger.info("   uploads dir:   %s", config.UPLOADS_DIR)

    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    logger.info("Shutting down…")
    await runner.cleanup()
    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
