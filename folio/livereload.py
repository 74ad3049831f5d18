"""Server-Sent-Events fan-out used by the dev server to reload browsers."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

RELOAD = "reload"
KEEPALIVE_SECONDS = 15.0

# sentinel that ends a stream
_CLOSED = None


class Broker:
    def __init__(self, keepalive: float = KEEPALIVE_SECONDS):
        self.keepalive = keepalive
        self._clients: set[queue.Queue] = set()
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def subscribe(self) -> queue.Queue:
        client: queue.Queue = queue.Queue()
        with self._lock:
            if self._closed:
                client.put(_CLOSED)
            else:
                self._clients.add(client)
        return client

    def unsubscribe(self, client: queue.Queue) -> None:
        with self._lock:
            self._clients.discard(client)

    def publish(self, event: str = RELOAD) -> int:
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            client.put(event)
        if clients:
            logger.info("Notified %d browser(s) to reload", len(clients))
        return len(clients)

    def close(self) -> None:
        """End every open stream so request threads can finish."""
        with self._lock:
            self._closed = True
            clients = list(self._clients)
            self._clients.clear()
        for client in clients:
            client.put(_CLOSED)

    def stream(self, client: queue.Queue) -> Iterator[bytes]:
        """SSE frames for one client; comment frames keep idle proxies open."""
        yield b": connected\n\n"
        while True:
            try:
                event: Optional[str] = client.get(timeout=self.keepalive)
            except queue.Empty:
                yield b": ping\n\n"
                continue
            if event is _CLOSED:
                return
            yield f"data: {event}\n\n".encode("utf-8")

