"""Broadcast hub that relays channel messages between transport clients."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections import defaultdict

from aiohttp import web
from zeroconf import InterfaceChoice, IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiovoicechat.models.hub import TopicDeliveryMessage
from aiovoicechat.util import get_local_ip

from .connection import HubConnection

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8929
DEFAULT_HOST = "0.0.0.0"
MDNS_SERVICE_TYPE = "_voicechat-hub._tcp.local."


class BroadcastHub:
    """
    WebSocket server implementing named broadcast topics.

    The hub keeps no history and does not look into relayed messages: every
    topic/broadcast is delivered to all connections subscribed to the topic at
    that moment, the publisher included.
    """

    API_PATH = "/broadcast"

    _connections: set[HubConnection]
    """All open client connections."""
    _subscribers: defaultdict[str, set[HubConnection]]
    """Connections subscribed to each topic."""
    _loop: asyncio.AbstractEventLoop
    _app: web.Application | None
    _app_runner: web.AppRunner | None
    _tcp_site: web.TCPSite | None
    _zc: AsyncZeroconf | None
    """AsyncZeroconf instance, only set while advertising."""
    _mdns_service: AsyncServiceInfo | None
    """Registered mDNS service."""

    def __init__(self, loop: asyncio.AbstractEventLoop, hub_name: str = "voicechat-hub") -> None:
        """
        Initialize a new hub.

        Args:
            loop: The asyncio event loop to use for asynchronous operations.
            hub_name: Instance name used when advertising via mDNS.
        """
        self._loop = loop
        self._name = hub_name
        self._connections = set()
        self._subscribers = defaultdict(set)
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        self._port: int | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this hub."""
        return self._loop

    @property
    def port(self) -> int | None:
        """Return the bound TCP port while the hub is running."""
        return self._port

    @property
    def connections(self) -> set[HubConnection]:
        """Get the set of all open connections."""
        return self._connections

    def subscriber_count(self, topic: str) -> int:
        """Return the number of connections subscribed to topic."""
        return len(self._subscribers.get(topic, ()))

    def _create_web_application(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.API_PATH, self.on_client_connect)
        return app

    async def on_client_connect(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection from a transport client."""
        logger.debug("Incoming client connection from %s", request.remote)
        connection = HubConnection(self, request)
        self._connections.add(connection)
        await connection._handle_client()  # noqa: SLF001
        return connection.websocket_connection

    def publish(self, message: TopicDeliveryMessage) -> None:
        """Deliver a message to every subscriber of its topic."""
        subscribers = self._subscribers.get(message.payload.topic)
        if not subscribers:
            logger.debug("Dropping message for topic without subscribers: %s", message.payload.topic)
            return
        for connection in list(subscribers):
            connection.send_message(message)

    def _subscribe(self, connection: HubConnection, topic: str) -> None:
        self._subscribers[topic].add(connection)

    def _unsubscribe(self, connection: HubConnection, topic: str) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return
        subscribers.discard(connection)
        if not subscribers:
            del self._subscribers[topic]

    def _remove_connection(self, connection: HubConnection) -> None:
        for topic in connection.topics:
            self._unsubscribe(connection, topic)
        self._connections.discard(connection)

    async def start_server(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        *,
        advertise_mdns: bool = False,
    ) -> None:
        """
        Start accepting connections.

        :param port: The TCP port to bind to, 0 picks a free port.
        :param host: The IP address to listen on (e.g., "0.0.0.0" for all interfaces).
        :param advertise_mdns: Announce the hub as _voicechat-hub._tcp on the local network.
        """
        if self._app is not None:
            logger.warning("Hub is already running")
            return

        logger.info("Starting broadcast hub on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()
        self._tcp_site = web.TCPSite(
            self._app_runner,
            host=host if host != DEFAULT_HOST else None,
            port=port,
        )
        await self._tcp_site.start()
        self._port = self._bound_port() or port
        logger.info("Broadcast hub listening on %s:%d%s", host, self._port, self.API_PATH)

        if advertise_mdns:
            await self._start_mdns_advertising(host)

    def _bound_port(self) -> int | None:
        server = self._tcp_site._server if self._tcp_site else None  # noqa: SLF001
        sockets = getattr(server, "sockets", None)
        if not sockets:
            return None
        for sock in sockets:
            if sock.family in (socket.AF_INET, socket.AF_INET6):
                port: int = sock.getsockname()[1]
                return port
        return None

    async def _start_mdns_advertising(self, host: str) -> None:
        address = host if host != DEFAULT_HOST else get_local_ip()
        if address is None:
            logger.warning("No IP address available for mDNS advertising")
            return
        assert self._port is not None
        self._zc = AsyncZeroconf(
            ip_version=IPVersion.V4Only,
            interfaces=[host] if host != DEFAULT_HOST else InterfaceChoice.Default,
        )
        self._mdns_service = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{self._name}.{MDNS_SERVICE_TYPE}",
            server=f"{self._name}.local.",
            parsed_addresses=[address],
            port=self._port,
            properties={"path": self.API_PATH},
        )
        try:
            await self._zc.async_register_service(self._mdns_service)
            logger.info("mDNS advertising hub '%s' on %s:%d", self._name, address, self._port)
        except NonUniqueNameException:
            logger.error("Broadcast hub with identical name present in the local network!")

    async def _stop_mdns(self) -> None:
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None

    async def close(self) -> None:
        """Disconnect all clients and stop the server."""
        await self._stop_mdns()
        for connection in list(self._connections):
            await connection.disconnect()
        if self._tcp_site is not None:
            await self._tcp_site.stop()
            self._tcp_site = None
        if self._app_runner is not None:
            await self._app_runner.cleanup()
            self._app_runner = None
        self._app = None
        self._port = None
        logger.info("Broadcast hub stopped")
