from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import websocket

log = logging.getLogger("stockfighter_ws")


def redact(url: str) -> str:
    head, sep, _ = url.partition("?")
    return f"{head}{sep}apikey=***" if sep else head


def with_api_key(url: str, api_key: str) -> str:
    if not api_key:
        return url
    return f"{url}?{urlencode({'apikey': api_key})}"


class StreamClient(threading.Thread):
    """One push-notification subscription.

    Decodes each text frame as JSON and hands the object to ``on_message``;
    anything that isn't JSON is dropped with a warning. Reconnects until
    ``stop()`` is called.
    """

    def __init__(
        self,
        *,
        url: str,
        on_message: Callable[[Any], None],
        name: str = "StreamClient",
        headers: Optional[Dict[str, str]] = None,
        reconnect_delay: float = 2.0,
        ping_interval: float = 20.0,
    ):
        super().__init__(daemon=True, name=name)
        self.url = url
        self.on_message_cb = on_message
        self.headers = dict(headers or {})
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self._ws: websocket.WebSocketApp | None = None
        self._stop_event = threading.Event()
        self.connected = threading.Event()

    def run(self) -> None:
        log.info("[%s] connecting -> %s", self.name, redact(self.url))

        def _on_open(_ws):
            self.connected.set()
            log.info("[%s] WS CONNECTED", self.name)

        def _on_close(_ws, *_a):
            self.connected.clear()
            log.warning("[%s] WS CLOSED", self.name)

        def _on_error(_ws, err):
            log.error("[%s] WS ERROR: %s", self.name, err)

        while not self._stop_event.is_set():
            try:
                self._ws = websocket.WebSocketApp(
                    self.url,
                    header=[f"{k}: {v}" for k, v in self.headers.items()],
                    on_open=_on_open,
                    on_message=lambda ws, msg: self._handle(msg),
                    on_error=_on_error,
                    on_close=_on_close,
                )
                self._ws.run_forever(ping_interval=self.ping_interval, ping_timeout=10)
            except Exception as exc:
                self.connected.clear()
                log.exception("[%s] WS exception: %s", self.name, exc)

            # wait() returns early once stop() is called
            if self._stop_event.wait(self.reconnect_delay):
                break
            log.info("[%s] reconnecting", self.name)

    def stop(self) -> None:
        self._stop_event.set()
        self.connected.clear()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception:
                log.exception("[%s] error while closing socket", self.name)

    close = stop

    def _handle(self, msg: Any) -> None:
        if not isinstance(msg, (str, bytes)):
            log.warning("[%s] ignoring unexpected frame type %s", self.name, type(msg).__name__)
            return
        try:
            data = json.loads(msg)
        except ValueError as exc:
            log.warning("[%s] dropping non-JSON frame: %s", self.name, exc)
            return
        try:
            self.on_message_cb(data)
        except Exception:
            log.exception("[%s] message handler failed", self.name)
