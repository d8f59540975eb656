"""HTTP application, hourly sale scheduling and the service entry point."""

from __future__ import annotations

import argparse
import json
import logging
import random
import signal
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from flask import Flask, Response, g, request

from flashsale.cache import RedisStore, connect_redis
from flashsale.config import Config, load_config
from flashsale.database import Database, DatabaseError, connect_database
from flashsale.handlers import JSON_CONTENT_TYPE, Handler, Reply
from flashsale.models import FLASH_SALE_SIZE, FlashSale

logger = logging.getLogger(__name__)

_STARTUP_TIMEOUT = 30.0
_CACHE_TIMEOUT = 30.0
_SALE_INTERVAL = 3600.0
_ITEM_TTL = timedelta(hours=1)
_SALE_ATTEMPTS = 3
_SALE_RETRY_DELAY = 0.5
_SIGNAL_POLL = 0.5

CATEGORIES = (
    "Electronics", "Clothing", "Home", "Kitchen", "Sports",
    "Toys", "Books", "Beauty", "Jewelry", "Automotive",
    "Furniture", "Garden", "Outdoor", "Fitness", "Baby",
    "Pet Supplies", "Office", "Art", "Music", "Gaming",
    "Travel", "Health", "Food", "Stationery", "Accessories",
    "Footwear", "Watches", "Appliances", "DIY", "Photography",
    "Camping", "Crafts", "Party", "Seasonal", "Tech Gadgets",
    "Smartphones", "Computers", "Audio", "Lighting", "Bedding",
)

ADJECTIVES = (
    "Premium", "Deluxe", "Essential", "Classic", "Modern",
    "Vintage", "Luxury", "Budget", "Professional", "Compact",
    "Elegant", "Stylish", "Durable", "Portable", "Advanced",
    "Smart", "Eco-Friendly", "Handcrafted", "Innovative", "Sleek",
    "Ergonomic", "Customizable", "Exclusive", "Practical", "Trendy",
    "Minimalist", "Colorful", "Multifunctional", "Lightweight", "Waterproof",
    "Wireless", "Organic", "Adjustable", "Foldable", "High-Performance",
    "Limited Edition", "Rechargeable", "Retro", "Signature", "Ultra-Thin",
)

IMAGE_URL_PREFIX = "https://picsum.photos/200/300?random="
_IMAGE_VARIANTS = 10000

LOGO = r"""
           ##                            ( )_
          #||#            ___      _ //  |  _)   ___    _ //  (_)   ___
         # || #         /  _  \  / _//\  | |   / ___) / _//\  | | /  _  \
        #  ||  #        | ( ) | ( (//  ) | |_ ( (___ ( (//  ) | | | ( ) |
       ##  ||  ##       (_) (_)  \//__/   \__) \____) \//__/  (_) (_) (_)
      ##   ||   ##               //                   //
     ##    ||    ##
    ##     ||     ##    Probably nothing.
   ##################   """


def _to_response(reply: Reply) -> Response:
    if reply.content_type == JSON_CONTENT_TYPE:
        body = json.dumps(reply.body, sort_keys=True, separators=(",", ":")) + "\n"
        return Response(body, status=reply.status, content_type=reply.content_type)
    response = Response(
        f"{reply.body}\n", status=reply.status, content_type=reply.content_type
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def create_app(handler: Any, log_requests: bool = False) -> Flask:
    """Build the WSGI application routing requests to ``handler``."""
    app = Flask(__name__)

    @app.post("/checkout")
    def checkout() -> Response:
        return _to_response(handler.checkout(request.args.to_dict()))

    @app.post("/purchase")
    def purchase() -> Response:
        return _to_response(handler.purchase(request.args.to_dict()))

    @app.get("/health")
    def health() -> Response:
        return _to_response(handler.health())

    if log_requests:

        @app.before_request
        def _start_timer() -> None:
            g.started = time.perf_counter()

        @app.after_request
        def _log_request(response: Response) -> Response:
            elapsed = time.perf_counter() - g.get("started", time.perf_counter())
            logger.info(
                '"%s %s" from %s - %d %dB in %.3fms',
                request.method,
                request.full_path.rstrip("?"),
                request.remote_addr,
                response.status_code,
                response.calculate_content_length() or 0,
                elapsed * 1000,
            )
            return response

    return app


def generate_item_catalog(
    sale_id: int, size: int = FLASH_SALE_SIZE, rng: random.Random | None = None
) -> tuple[list[str], list[str]]:
    """Return random item names and image URLs for a sale of ``size`` items."""
    rng = rng or random.Random()
    names: list[str] = []
    images: list[str] = []
    for number in range(1, size + 1):
        category = CATEGORIES[rng.randrange(len(CATEGORIES))]
        adjective = ADJECTIVES[rng.randrange(len(ADJECTIVES))]
        names.append(f"{adjective} {category} #{number}")
        variant = rng.randrange(_IMAGE_VARIANTS)
        images.append(f"{IMAGE_URL_PREFIX}{sale_id}-{number}-{variant}")
    return names, images


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietRequestHandler(WSGIRequestHandler):
    """Sends the server's access lines to the debug log instead of stderr."""

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class Server:
    """The flash sale service: storage, HTTP routes and the sale schedule."""

    def __init__(self, config: Config, db: Database, cache: RedisStore) -> None:
        self.config = config
        self.db = db
        self.cache = cache
        self.handler = Handler(db, cache)
        self.app = create_app(self.handler, config.enable_request_logger)

    def populate_items_cache(self) -> int:
        """Mark every stored item available in the cache; return how many."""
        deadline = time.monotonic() + _CACHE_TIMEOUT
        try:
            found = self.db.execute_with_retry(self.db.get_all_items, _CACHE_TIMEOUT)
        except Exception as exc:
            raise DatabaseError(f"failed to get items: {exc}") from exc
        remaining = max(deadline - time.monotonic(), 0.0)
        return self.cache.execute_with_retry(
            lambda: self.cache.populate_items_cache(found, _ITEM_TTL), remaining
        )

    def start_new_sale(self, now: datetime | None = None) -> FlashSale:
        """Open the sale of the current hour and stock it if it has no items."""
        logger.info("Starting a new flash sale...")
        sale = self.db.get_current_sale(now)
        if self.db.get_items_for_sale(sale.id) > 0:
            logger.info(
                "Items already exist for sale %d, skipping item generation", sale.id
            )
            return sale
        self.generate_items(sale.id)
        logger.info("New flash sale started successfully with all items generated")
        return sale

    def generate_items(self, sale_id: int, rng: random.Random | None = None) -> None:
        """Create a full catalogue for a sale and mark its items available."""
        names, images = generate_item_catalog(sale_id, FLASH_SALE_SIZE, rng)
        self.db.generate_items(sale_id, names, images)
        try:
            stored = self.db.get_all_items()
        except Exception as exc:
            logger.warning("Warning: failed to get items for caching: %s", exc)
            return
        for item in stored:
            if item.sale_id != sale_id:
                continue
            try:
                self.cache.store_item(sale_id, item.id, _ITEM_TTL)
            except Exception as exc:
                logger.warning("Failed to store item in Redis: %s", exc)

    def start_new_sale_with_retry(
        self, timeout: float | None = _STARTUP_TIMEOUT
    ) -> FlashSale:
        """Start the current sale, retrying failures with backoff."""
        deadline = None if timeout is None else time.monotonic() + timeout
        last_error: BaseException | None = None
        for attempt in range(_SALE_ATTEMPTS):
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("context deadline exceeded")
            try:
                return self.start_new_sale()
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Failed to start new sale, retrying (%d/%d): %s",
                    attempt + 1,
                    _SALE_ATTEMPTS,
                    exc,
                )
            delay = _SALE_RETRY_DELAY * (1 << attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                raise TimeoutError("context deadline exceeded") from last_error
            time.sleep(delay)
        raise DatabaseError(
            f"failed to start new sale after {_SALE_ATTEMPTS} retries: {last_error}"
        ) from last_error

    def run_hourly_sales(self, stop_event: threading.Event) -> None:
        """Start a new sale every hour until ``stop_event`` is set."""
        now = datetime.now(timezone.utc)
        next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        if stop_event.wait((next_hour - now).total_seconds()):
            return
        while not stop_event.wait(_SALE_INTERVAL):
            try:
                self.start_new_sale()
            except Exception as exc:
                logger.error("Error starting new sale: %s", exc)

    def _install_signal_handlers(
        self, shutdown: threading.Event
    ) -> dict[int, Callable[..., Any] | int | None]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def on_signal(signum: int, _frame: Any) -> None:
            logger.info(
                "Received signal %s, initiating graceful shutdown...",
                signal.Signals(signum).name,
            )
            shutdown.set()

        previous: dict[int, Callable[..., Any] | int | None] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, on_signal)
        return previous

    def run(self) -> None:
        """Serve HTTP until interrupted, then shut down gracefully."""
        try:
            self.start_new_sale_with_retry(_STARTUP_TIMEOUT)
        except Exception as exc:
            logger.warning("Warning: failed to start initial sale: %s", exc)

        stop_sales = threading.Event()
        threading.Thread(
            target=self.run_hourly_sales,
            args=(stop_sales,),
            name="hourly-sales",
            daemon=True,
        ).start()

        httpd = make_server(
            "",
            int(self.config.port),
            self.app,
            server_class=_ThreadingWSGIServer,
            handler_class=_QuietRequestHandler,
        )
        shutdown = threading.Event()
        failures: list[BaseException] = []

        def serve() -> None:
            try:
                httpd.serve_forever()
            except Exception as exc:
                failures.append(exc)
            finally:
                shutdown.set()

        previous = self._install_signal_handlers(shutdown)
        serving = threading.Thread(target=serve, name="http-server", daemon=True)
        serving.start()
        logger.info("Server listening on :%s", self.config.port)

        try:
            while not shutdown.wait(_SIGNAL_POLL):
                pass
        finally:
            stop_sales.set()
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        if failures:
            httpd.server_close()
            raise failures[0]

        closer = threading.Thread(target=httpd.shutdown, daemon=True)
        closer.start()
        closer.join(self.config.server_shutdown_timeout.total_seconds())
        if closer.is_alive():
            logger.warning("Graceful shutdown failed, forcing immediate shutdown")
        httpd.server_close()
        logger.info("Server shutdown complete")

    def close(self) -> None:
        """Release the database pool and the Redis client."""
        self.db.close()
        self.cache.close()


def build_server(config: Config) -> Server:
    """Connect to storage, prepare the schema and warm the item cache."""
    db = connect_database(config)
    try:
        db.init_db()
    except DatabaseError as exc:
        db.close()
        raise DatabaseError(f"failed to initialize database: {exc}") from exc
    try:
        cache = connect_redis(config)
    except Exception:
        db.close()
        raise
    server = Server(config, db, cache)
    try:
        server.populate_items_cache()
    except Exception as exc:
        logger.warning("Warning: failed to populate items cache: %s", exc)
    return server


def main(argv: list[str] | None = None) -> int:
    """Run the flash sale service; return the process exit status."""
    parser = argparse.ArgumentParser(
        prog="flashsale",
        description="Run the flash sale HTTP service configured from the environment.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    print(LOGO)

    config = load_config()
    try:
        server = build_server(config)
    except Exception as exc:
        logger.critical("Failed to create server: %s", exc)
        return 1

    try:
        server.run()
    except Exception as exc:
        logger.critical("Failed to run server: %s", exc)
        return 1
    finally:
        try:
            server.close()
        except Exception as exc:
            logger.error("Failed to close server: %s", exc)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())