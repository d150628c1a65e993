# infrastructure/rabbitmq_client.py
import asyncio
import json
from typing import Any, Optional

import aio_pika

from config.settings import settings
from core.logger import logger


class AsyncRabbitMQClient:
    """
    Publisher on a robust aio-pika connection.

    The channel is opened with publisher confirms, so publish() returns only once the
    broker has taken the message; that is what lets a sink report a batch as durable.
    """

    def __init__(self, host: str = settings.RABBITMQ_HOST, port: int = settings.RABBITMQ_PORT,
                 vhost: str = settings.RABBITMQ_VHOST, user: str = settings.RABBITMQ_USER,
                 password: str = settings.RABBITMQ_PASSWORD):
        self.host = host
        self.port = port
        self.vhost = vhost
        self.user = user
        self.password = password
        self.connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self.channel: Optional[aio_pika.abc.AbstractChannel] = None
        self._lock = asyncio.Lock()
        self._queues = set()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> None:
        async with self._lock:
            if self.connected:
                return
            try:
                self.connection = await aio_pika.connect_robust(
                    host=self.host,
                    port=self.port,
                    virtualhost=self.vhost,
                    login=self.user,
                    password=self.password,
                    heartbeat=600,
                )
                self.channel = await self.connection.channel(publisher_confirms=True)
                self._queues.clear()
                logger.info(f"Connected to RabbitMQ at {self.host}:{self.port}{self.vhost}")
            except Exception as e:
                logger.error(f"Failed to connect to RabbitMQ at {self.host}: {e}")
                raise

    async def _ready_channel(self) -> aio_pika.abc.AbstractChannel:
        if self.channel is None or not self.connected:
            await self.connect()
        return self.channel

    async def declare_queue(self, queue_name: str, durable: bool = True) -> None:
        if queue_name in self._queues:
            return
        channel = await self._ready_channel()
        await channel.declare_queue(queue_name, durable=durable)
        self._queues.add(queue_name)

    async def publish(self, routing_key: str, message: Any, message_id: Optional[str] = None,
                      headers: Optional[dict] = None) -> None:
        """Persistent JSON message on the default exchange, confirmed by the broker."""
        if not isinstance(message, bytes):
            message = (message if isinstance(message, str) else json.dumps(message, default=str)).encode()

        channel = await self._ready_channel()
        try:
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=message,
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    message_id=message_id,
                    headers=headers or {},
                ),
                routing_key=routing_key,
            )
        except Exception as e:
            logger.error(f"Failed to publish to {routing_key}: {e}")
            raise

    async def close(self) -> None:
        if self.connected:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")
        self.connection = None
        self.channel = None
