import aio_pika

from shared.rabbitmq import RabbitPublisher

from .config import EXCHANGE_NAME, RABBIT_URL, SERVICE_NAME


async def connect():
    return await aio_pika.connect_robust(RABBIT_URL)


async def declare_exchange(channel):
    return await channel.declare_exchange(EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True)


publisher = RabbitPublisher(RABBIT_URL, EXCHANGE_NAME, SERVICE_NAME)
