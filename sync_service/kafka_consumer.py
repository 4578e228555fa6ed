import asyncio
import json
import logging
import os

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaConnectionError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .client import EventBus, Function, FunctionContext, topic_for
from .models import FailedRun
from .schemas import BatchConfig, EventEnvelope

KAFKA_BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
CONNECT_RETRY_SECONDS = 5
logger= logging.getLogger(__name__)


def decode_envelope(raw: bytes):
    """Decode a message value into an envelope, or None if it is not one."""
    try:
        return EventEnvelope.model_validate_json(raw)
    except ValidationError as e:
        logger.error(f"Dropping message that is not an event envelope: {e}")
        return None


async def collect_batch(consumer, batch: BatchConfig) -> list:
    """Wait for one message, then keep collecting until the batch is full or its window closes.

    :param consumer: started consumer exposing getone() and getmany()
    :type consumer: AIOKafkaConsumer
    :param batch: maximum size and window length in seconds
    :type batch: BatchConfig
    :return: between 1 and batch.max_size messages
    :rtype: list
    """
    loop= asyncio.get_running_loop()
    messages= [await consumer.getone()]
    deadline= loop.time() + batch.timeout
    while len(messages) < batch.max_size:
        remaining= deadline - loop.time()
        if remaining <= 0:
            break
        fetched= await consumer.getmany(
            timeout_ms=int(remaining * 1000),
            max_records=batch.max_size - len(messages),
        )
        for partition_messages in fetched.values():
            messages.extend(partition_messages)
    return messages


class EventDispatcher:
    """Delivers events from Kafka to the functions registered on an EventBus.

    Each function gets its own consumer group so every function sees every
    event of its trigger. Offsets are committed once an invocation either
    succeeded or was recorded as a failed run.
    """

    def __init__(self, bus: EventBus, session_factory: sessionmaker, bootstrap_servers: str = KAFKA_BOOTSTRAP, retry_delay: float = 1.0, reconnect_delay: float = CONNECT_RETRY_SECONDS):
        self.bus= bus
        self.session_factory= session_factory
        self.bootstrap_servers= bootstrap_servers
        self.retry_delay= retry_delay
        self.reconnect_delay= reconnect_delay

    async def run(self):
        tasks= [asyncio.create_task(self.consume(function)) for function in self.bus.functions]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

    async def connect(self, function: Function) -> AIOKafkaConsumer:
        while True:
            consumer = AIOKafkaConsumer(
                topic_for(function.trigger.event),
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.bus.id}-{function.id}",
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            try:
                await consumer.start()
                return consumer
            except KafkaConnectionError as e:
                logger.error(f"[{function.id}] Kafka connection error: {e}. Retrying in {CONNECT_RETRY_SECONDS} seconds...")
                await consumer.stop()
                await asyncio.sleep(CONNECT_RETRY_SECONDS)

    async def consume(self, function: Function):
        """Feed one function until cancelled, reconnecting whenever its consumer loop fails.
        """
        while True:
            consumer= await self.connect(function)
            try:
                logger.info(f"[{function.id}] Kafka consumer started for '{function.trigger.event}'")
                await self.poll(function, consumer)
                return
            except asyncio.CancelledError:
                logger.info(f"[{function.id}] Consumer task fully cancelled during shutdown")
                raise
            except Exception as e:
                logger.exception(f"[{function.id}] Consumer loop failed: {e!r}. Reconnecting in {self.reconnect_delay} seconds...")
            finally:
                await consumer.stop()
            await asyncio.sleep(self.reconnect_delay)

    async def poll(self, function: Function, consumer: AIOKafkaConsumer):
        if function.batched:
            while True:
                messages= await collect_batch(consumer, function.trigger.batch)
                envelopes= [e for e in (decode_envelope(m.value) for m in messages) if e is not None]
                if envelopes:
                    await self.invoke(function, envelopes)
                await consumer.commit()
        else:
            async for msg in consumer:
                envelope= decode_envelope(msg.value)
                if envelope is not None:
                    await self.invoke(function, [envelope])
                await consumer.commit()

    async def invoke(self, function: Function, envelopes: list[EventEnvelope]):
        """Run a function on delivered envelopes, retrying the whole delivery on failure.

        :return: the handler's result, or None if every attempt failed
        """
        attempts= function.retries + 1
        for attempt in range(attempts):
            ctx= FunctionContext(
                bus=self.bus,
                session_factory=self.session_factory,
                event=None if function.batched else envelopes[0],
                events=list(envelopes),
                attempt=attempt,
            )
            try:
                result= await function.handler(ctx)
            except Exception as e:
                logger.warning(f"[{function.id}] Attempt {attempt + 1}/{attempts} failed: {e!r}")
                if attempt + 1 < attempts:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                    continue
                self.record_failure(function, envelopes, e, attempts)
                return None
            logger.info(f"[{function.id}] Completed with result: {result}")
            return result

    def record_failure(self, function: Function, envelopes: list[EventEnvelope], error: Exception, attempts: int):
        logger.error(f"[{function.id}] Run failed after {attempts} attempts: {error!r}")
        try:
            with self.session_factory() as session:
                with session.begin():
                    session.add(FailedRun(
                        function_id=function.id,
                        event_name=function.trigger.event,
                        events=[json.loads(e.model_dump_json()) for e in envelopes],
                        error=repr(error),
                        attempts=attempts,
                    ))
        except SQLAlchemyError as e:
            logger.exception(f"[{function.id}] Could not record failed run: {e}")
