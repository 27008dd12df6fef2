import logging
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityChannel:
    """Fan-out of online/offline events to whoever subscribed."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, online: bool):
        for listener in list(self._listeners):
            listener(online)


class NetworkState:
    """
    Online/offline flag.

    Only the connectivity handlers below change it; everything else reads
    ``online``.
    """

    def __init__(self, online: bool = True, channel: Optional[ConnectivityChannel] = None):
        self._online = online
        self._unsubscribe: Optional[Callable[[], None]] = None
        if channel is not None:
            self.attach(channel)

    @property
    def online(self) -> bool:
        return self._online

    def attach(self, channel: ConnectivityChannel):
        self.detach()
        self._unsubscribe = channel.subscribe(self.handle_event)

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_event(self, online: bool):
        if online:
            self.handle_online()
        else:
            self.handle_offline()

    def handle_online(self):
        if not self._online:
            logger.info("Network: Online")
        self._online = True

    def handle_offline(self):
        if self._online:
            logger.info("Network: Offline")
        self._online = False


class ConnectivityProbe:
    """Checks whether the API host answers at all and publishes the result."""

    def __init__(self, channel: ConnectivityChannel, url: str,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.channel = channel
        self.url = url
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.timeout = timeout

    async def check(self) -> bool:
        try:
            await self.client.head(self.url, timeout=self.timeout)
            online = True
        except httpx.RequestError as e:
            logger.warning(f"Connectivity check failed for {self.url}: {e}")
            online = False
        self.channel.publish(online)
        return online

    async def close(self):
        await self.client.aclose()
