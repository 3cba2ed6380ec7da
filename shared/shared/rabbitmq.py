import logging

import aio_pika

logger = logging.getLogger(__name__)


class RabbitPublisher:
    """
    Topic-exchange publisher shared by the services.
    Disabled (publish is a no-op) when no broker URL is configured.
    """

    def __init__(self, url: str | None, exchange_name: str, service_name: str):
        self.url = url
        self.exchange_name = exchange_name
        self.service_name = service_name
        self.enabled = bool(url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception:
            logger.exception("[%s] RabbitMQ connect failed", self.service_name)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception:
            logger.exception("[%s] RabbitMQ publish failed (%s)", self.service_name, routing_key)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
