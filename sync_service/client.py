from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
import os
import time
from typing import Any, Awaitable, Callable, Optional
import uuid

from aiokafka import AIOKafkaProducer
from sqlalchemy.orm import sessionmaker

from .schemas import EventEnvelope, FunctionOut, Trigger

KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
EVENT_BUS_ID = os.getenv("EVENT_BUS_ID", "quickcart-next")
DEFAULT_RETRIES = 4
logger = logging.getLogger(__name__)


class CustomJSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj,Decimal):
            return float(obj)
        return super().default(obj)


def topic_for(event_name: str) -> str:
    """Kafka topic carrying an event, e.g. 'clerk/user.created' -> 'clerk.user.created'.
    """
    return event_name.replace("/", ".")


@dataclass
class FunctionContext:
    """What a handler receives for one invocation.

    Single-event functions get `event`; batched functions get `events`.
    """
    bus: "EventBus"
    session_factory: sessionmaker
    event: Optional[EventEnvelope] = None
    events: list[EventEnvelope] = field(default_factory=list)
    attempt: int = 0


Handler = Callable[[FunctionContext], Awaitable[Any]]


@dataclass
class Function:
    id: str
    trigger: Trigger
    handler: Handler
    retries: int = DEFAULT_RETRIES

    @property
    def batched(self) -> bool:
        return self.trigger.batch is not None

    def describe(self) -> FunctionOut:
        return FunctionOut(id=self.id, trigger=self.trigger, retries=self.retries)


class EventBus:
    """Client for the event platform: owns the function registry and publishes events.

    Constructed once at process start and handed to the dispatcher and to every
    handler invocation through FunctionContext.
    """

    def __init__(self, id: str = EVENT_BUS_ID, bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS):
        self.id = id
        self.bootstrap_servers = bootstrap_servers
        self._functions: dict[str, Function] = {}
        self._producer = None

    @property
    def functions(self) -> list[Function]:
        return list(self._functions.values())

    def get_function(self, function_id: str) -> Function:
        return self._functions[function_id]

    def create_function(self, id: str, trigger: Trigger, handler: Handler, retries: int = DEFAULT_RETRIES) -> Function:
        """Register a handler under a unique id.

        :param id: function identifier, unique within this bus
        :type id: str
        :param trigger: event name and optional batch configuration
        :type trigger: Trigger
        :param handler: coroutine function receiving a FunctionContext
        :type handler: Handler
        :param retries: attempts after the first one before the run is recorded as failed
        :type retries: int
        :raises ValueError: if the id is already registered
        :return: the registered function
        :rtype: Function
        """
        if id in self._functions:
            raise ValueError(f"Function id already registered: {id}")
        if retries < 0:
            raise ValueError("retries must not be negative")
        function = Function(id=id, trigger=trigger, handler=handler, retries=retries)
        self._functions[id] = function
        logger.info(f"[{self.id}] Registered function {id} on {trigger.event}")
        return function

    async def get_producer(self):
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def send(self, name: str, data: dict) -> EventEnvelope:
        """Publish one event envelope to the topic of its event name.
        """
        envelope = EventEnvelope(
            id=str(uuid.uuid4()),
            name=name,
            data=data,
            ts=int(time.time() * 1000),
        )
        producer = await self.get_producer()
        try:
            event_bytes = json.dumps(envelope.model_dump(), cls= CustomJSONEncoder).encode('utf-8')
        except TypeError as e:
            logger.exception(e)
            raise
        await producer.send_and_wait(topic_for(name), event_bytes)
        logger.info(f"Produced event to topic {topic_for(name)}: {envelope.id}")
        return envelope

    async def close(self):
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
