# safety_module/monitoring.py
import socket
import threading
import time
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

from prometheus_client import Counter, Gauge, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

from safety_module.config import MonitoringConfig
from safety_module.fixed_point import WAD

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the engines."""
    allow_reuse_address = True


class Monitor:
    def __init__(self, host="127.0.0.1", port=9091):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several modules can run in one process
        self.registry = CollectorRegistry()

        self.stakes = Counter('safety_module_stakes_total', 'Underlying staked', ['pool'], registry=self.registry)
        self.redemptions = Counter('safety_module_redemptions_total', 'Underlying redeemed', ['pool'], registry=self.registry)
        self.slashes = Counter('safety_module_slashed_total', 'Underlying slashed', ['pool'], registry=self.registry)
        self.exchange_rate = Gauge('safety_module_exchange_rate', 'Underlying per share', ['pool'], registry=self.registry)
        self.total_staked = Gauge('safety_module_total_staked', 'Underlying held by the pool', ['pool'], registry=self.registry)
        self.lots_sold = Counter('auction_lots_sold_total', 'Auction lots sold', registry=self.registry)
        self.funds_raised = Counter('auction_funds_raised_total', 'Payment tokens raised by auctions', registry=self.registry)
        self.auctions_ended = Counter('auction_ended_total', 'Auctions ended', ['status'], registry=self.registry)
        self.active_auctions = Gauge('auction_active', 'Number of active auctions', registry=self.registry)
        self.rewards_claimed = Counter('rewards_claimed_total', 'Reward tokens paid out', ['token'], registry=self.registry)
        self.proceeds_withdrawn = Counter('safety_module_proceeds_withdrawn_total', 'Auction proceeds sent to the treasury', ['token'], registry=self.registry)
        self.last_event = Gauge('safety_module_last_event_timestamp', 'Wall time of the last recorded event', registry=self.registry)

    @classmethod
    def from_config(cls, config: MonitoringConfig) -> 'Monitor':
        return cls(config.host, config.port)

    def start_server(self):
        """Manually creates and starts the Prometheus HTTP server with retry logic."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            logger.info("Prometheus server stopped.")

    def _touch(self):
        self.last_event.set(time.time())

    def record_stake(self, pool, amount: int):
        self.stakes.labels(pool=str(pool)).inc(amount)
        self._touch()

    def record_redeem(self, pool, amount: int):
        self.redemptions.labels(pool=str(pool)).inc(amount)
        self._touch()

    def record_slash(self, pool, amount: int):
        self.slashes.labels(pool=str(pool)).inc(amount)
        self._touch()

    def set_exchange_rate(self, pool, rate: int):
        self.exchange_rate.labels(pool=str(pool)).set(rate / WAD)

    def set_total_staked(self, pool, amount: int):
        self.total_staked.labels(pool=str(pool)).set(amount)

    def record_lots_sold(self, num_lots: int, payment: int):
        self.lots_sold.inc(num_lots)
        self.funds_raised.inc(payment)
        self._touch()

    def record_auction_ended(self, status: str):
        self.auctions_ended.labels(status=status).inc()
        self._touch()

    def set_active_auctions(self, count: int):
        self.active_auctions.set(count)

    def record_rewards_claimed(self, token, amount: int):
        self.rewards_claimed.labels(token=str(token)).inc(amount)
        self._touch()

    def record_proceeds_withdrawn(self, token, amount: int):
        self.proceeds_withdrawn.labels(token=str(token)).inc(amount)
        self._touch()
