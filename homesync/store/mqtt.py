"""
MQTT-backed remote store.

The tree lives on the broker as retained JSON messages, one per document.
A document is the subtree two levels below the root ("devices/<id>",
"logs/deviceCreationAttempts", ...); writes above that level fan out to
every document underneath. Deleting a document publishes an empty retained
payload, which clears it on the broker.

Subscribes to:
- <root_topic>/# (retained snapshot on connect, then live changes)
"""

import asyncio
import copy
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

import paho.mqtt.client as mqtt

from homesync.errors import StoreError
from homesync.store.base import RemoteStore
from homesync.store.tree import Tree, get_at, set_at, split_path
from homesync.sync_logging import get_logger

logger = logging.getLogger(__name__)
log = get_logger("HOMESYNC.Store")

DOCUMENT_DEPTH = 2


def _iter_documents(node: Any, prefix: List[str]) -> Iterator[Tuple[str, ...]]:
    if node is None:
        return
    if len(prefix) >= DOCUMENT_DEPTH or not isinstance(node, dict):
        yield tuple(prefix)
        return
    for key, child in node.items():
        yield from _iter_documents(child, prefix + [key])


class MqttRemoteStore(RemoteStore):
    """
    RemoteStore over an MQTT broker using retained messages.

    Changes published by other clients arrive on paho's network thread and
    are handed to the asyncio loop, so watch callbacks always run on the
    loop that called start().
    """

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)

        self.host = config.get("host", "localhost")
        self.port = config.get("port", 1883)
        self.username = config.get("username")
        self.password = config.get("password")
        self.root_topic = str(config.get("root_topic", "homesync")).strip("/")
        self.qos = config.get("qos", 1)
        self.connect_timeout_s = float(config.get("connect_timeout_s", 10.0))
        self.publish_timeout_s = float(config.get("publish_timeout_s", 5.0))
        # Retained messages have no end marker; wait this long after SUBACK.
        self.sync_grace_s = float(config.get("sync_grace_s", 0.5))

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._subscribed: Optional[asyncio.Event] = None
        # topic -> payloads we published and expect to see echoed back
        self._pending: Dict[str, Deque[bytes]] = {}

    async def start(self) -> None:
        """Connect, subscribe to the root topic and load retained documents."""
        logger.info(f"Starting MQTT store: {self.host}:{self.port} (root '{self.root_topic}')")
        log.info("HOMESYNC.Store.Connecting", extra={"fields": {"host": self.host, "port": self.port}})

        self._loop = asyncio.get_running_loop()
        self._subscribed = asyncio.Event()

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"homesync-{self.name}-{uuid4().hex[:8]}",
        )
        if self.username:
            self._client.username_pw_set(self.username, self.password)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

        try:
            await self._loop.run_in_executor(None, self._client.connect, self.host, self.port, 60)
            self._client.loop_start()
        except Exception as e:
            log.error("HOMESYNC.Store.ConnectionFailed", extra={"fields": {
                "host": self.host,
                "port": self.port,
                "error": str(e)
            }})
            raise StoreError("connect", self.root_topic, str(e)) from e

        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout=self.connect_timeout_s)
        except asyncio.TimeoutError as e:
            await self.stop()
            raise StoreError("subscribe", self.root_topic, f"no SUBACK within {self.connect_timeout_s}s") from e

        await asyncio.sleep(self.sync_grace_s)
        logger.info(f"MQTT store started with {sum(1 for _ in _iter_documents(self._tree, []))} documents")

    async def stop(self) -> None:
        logger.info("Stopping MQTT store")

        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None

        self._connected = False
        self._pending.clear()
        logger.info("MQTT store stopped")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def topic_for(self, parts: Tuple[str, ...] | List[str]) -> str:
        return "/".join([self.root_topic, *parts])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, parts: List[str], before: Tree, after: Tree) -> None:
        if self._client is None or not self._connected:
            raise StoreError("publish", "/".join(parts), "MQTT store is not connected")

        if len(parts) >= DOCUMENT_DEPTH:
            documents = [tuple(parts[:DOCUMENT_DEPTH])]
        else:
            found = set(_iter_documents(get_at(before, parts), list(parts)))
            found.update(_iter_documents(get_at(after, parts), list(parts)))
            documents = sorted(found)

        for doc in documents:
            await self._publish_document(doc, get_at(after, list(doc)))

    async def _publish_document(self, doc: Tuple[str, ...], value: Any) -> None:
        topic = self.topic_for(doc)
        payload = b"" if value is None else json.dumps(value, separators=(",", ":")).encode("utf-8")

        self._pending.setdefault(topic, deque()).append(payload)
        info = self._client.publish(topic, payload, qos=self.qos, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._forget_pending(topic, payload)
            log.error("HOMESYNC.Store.PublishFailed", extra={"fields": {"topic": topic, "rc": info.rc}})
            raise StoreError("publish", "/".join(doc), mqtt.error_string(info.rc))

        if self.qos > 0:
            await self._loop.run_in_executor(None, info.wait_for_publish, self.publish_timeout_s)
            if not info.is_published():
                self._forget_pending(topic, payload)
                raise StoreError("publish", "/".join(doc), f"not acknowledged within {self.publish_timeout_s}s")

        logger.debug(f"Published {topic} ({len(payload)} bytes)")

    def _forget_pending(self, topic: str, payload: bytes) -> None:
        queue = self._pending.get(topic)
        if queue and payload in queue:
            queue.remove(payload)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Handle MQTT connection."""
        if not reason_code.is_failure:
            logger.info("Connected to MQTT broker")
            log.info("HOMESYNC.Store.Connected", extra={"fields": {"host": self.host, "port": self.port}})
            self._connected = True

            topic = f"{self.root_topic}/#"
            client.subscribe(topic, qos=self.qos)
            log.info("HOMESYNC.Store.Subscribed", extra={"fields": {"topic": topic}})
        else:
            log.error("HOMESYNC.Store.ConnectionFailed", extra={"fields": {
                "host": self.host,
                "port": self.port,
                "reason": str(reason_code)
            }})
            self._connected = False

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Handle MQTT disconnection."""
        self._connected = False
        if reason_code.is_failure:
            log.warning("HOMESYNC.Store.UnexpectedDisconnection", extra={"fields": {
                "reason": str(reason_code)
            }})
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        if self._loop is not None and self._subscribed is not None:
            self._loop.call_soon_threadsafe(self._subscribed.set)

    def _on_message(self, client, userdata, msg):
        """Handle incoming MQTT message."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._apply_message, msg.topic, bytes(msg.payload))

    # ------------------------------------------------------------------
    # Loop thread
    # ------------------------------------------------------------------

    def _apply_message(self, topic: str, payload: bytes) -> None:
        prefix = f"{self.root_topic}/"
        if not topic.startswith(prefix):
            logger.debug(f"Ignoring topic outside root: {topic}")
            return

        queue = self._pending.get(topic)
        if queue and queue[0] == payload:
            # Echo of our own publish; already in the mirror.
            queue.popleft()
            return

        try:
            parts = split_path(topic[len(prefix):])
            value = json.loads(payload.decode("utf-8")) if payload else None
        except (ValueError, UnicodeDecodeError) as e:
            log.error("HOMESYNC.Store.InvalidPayload", extra={"fields": {
                "topic": topic,
                "error": str(e)
            }})
            return

        if not parts:
            return

        after = copy.deepcopy(self._tree)
        set_at(after, parts, value)
        logger.debug(f"Remote change on {topic}")
        self._commit(parts, after)
