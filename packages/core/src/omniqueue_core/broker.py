"""BaseBroker — contract enforcement shared by every adapter."""

from __future__ import annotations

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, ClassVar

from .envelope import MessageEnvelope
from .options import ConsumeOptions, SendOptions
from .ports.broker import BrokerCapabilities, IBroker, PriorityStrategy
from .primitives.exceptions import (
    AckError,
    BrokerClosedError,
    BrokerCloseError,
    ConsumeLoopError,
    InvalidOptionsError,
    MessagingError,
    OmniQueueError,
    PublishError,
)
from .redelivery import RedeliveryPolicy
from .subscription import Subscription

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

    from .delivery import BrokerMessage
    from .ports.broker import MessageHandler

    ErrorListener = Callable[[BaseException], Any]

logger = logging.getLogger(__name__)


class BrokerState(str, enum.Enum):
    CREATED = "created"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


async def release_all(
    *operations: Callable[[], Awaitable[Any]] | None,
) -> list[BaseException]:
    """Await every release operation, collecting failures instead of stopping."""
    errors: list[BaseException] = []
    for operation in operations:
        if operation is None:
            continue
        try:
            await operation()
        except Exception as e:  # noqa: BLE001
            logger.warning("Release step %r failed: %s", operation, e)
            errors.append(e)
    return errors


class BaseBroker(IBroker, ABC):
    """Base implementation of the broker contract.

    Subclasses implement the backend mapping (``_publish``, ``_subscribe``,
    ``_connect``, ``_disconnect``) and declare ``capabilities``. This class owns
    the behaviour every provider must share:

    1. Option coercion; ``GroupRequiredError`` before any backend I/O
    2. Handler dispatch: unsettled failures are nacked with requeue until the
       redelivery policy gives up, then dead-lettered
    3. Consume-loop supervision and the asynchronous error channel
    4. Best-effort ``close()`` that lets in-flight handlers finish
    """

    provider_name: ClassVar[str] = "base"
    capabilities: ClassVar[BrokerCapabilities] = BrokerCapabilities()

    def __init__(
        self,
        config: Any = None,
        *,
        provider: str | None = None,
        redelivery: RedeliveryPolicy | None = None,
    ) -> None:
        self._provider = provider or self.provider_name
        self._config = config
        self._redelivery = redelivery or RedeliveryPolicy()
        self._state = BrokerState.CREATED
        self._subscriptions: list[Subscription] = []
        self._error_listeners: list[ErrorListener] = []
        self._errors: list[BaseException] = []

    # ── Read-only surface ────────────────────────────────────────

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def config(self) -> Any:
        return self._config

    @property
    def redelivery(self) -> RedeliveryPolicy:
        return self._redelivery

    @property
    def state(self) -> BrokerState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state in (BrokerState.CLOSING, BrokerState.CLOSED)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    @property
    def errors(self) -> list[BaseException]:
        """Errors reported asynchronously (consume loops, failed settlements)."""
        return list(self._errors)

    def add_error_listener(self, listener: ErrorListener) -> None:
        """Register a sync or async callable receiving asynchronous errors."""
        self._error_listeners.append(listener)

    # ── Lifecycle ────────────────────────────────────────────────

    async def init(self) -> None:
        if self._state is BrokerState.READY:
            return
        self._check_open()
        await self._connect()
        self._state = BrokerState.READY
        logger.info("Broker %s initialized", self._provider)

    async def close(self) -> None:
        """Stop every subscription, then release backend resources.

        Idempotent. Every release is attempted; failures are raised together as
        ``BrokerCloseError`` once all of them have run.
        """
        if self.closed:
            return
        self._state = BrokerState.CLOSING
        errors: list[BaseException] = []
        for subscription in reversed(self._subscriptions):
            errors.extend(await subscription.shutdown())
        self._subscriptions.clear()
        try:
            errors.extend(await self._disconnect())
        except Exception as e:  # noqa: BLE001
            errors.append(e)
        self._state = BrokerState.CLOSED
        logger.info("Broker %s closed", self._provider)
        if errors:
            raise BrokerCloseError(self._provider, errors)

    async def __aenter__(self) -> BaseBroker:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Producer side ────────────────────────────────────────────

    async def publish(self, topic: str, message: Any, options: Any = None) -> None:
        """Publish *message* to every group of *topic*."""
        opts = SendOptions.coerce(options)
        self._check_open()
        self._check_topic(topic)
        envelope = MessageEnvelope.coerce(message)
        self._check_send_capabilities(topic, opts)
        try:
            await self._publish(topic, envelope, opts)
        except OmniQueueError:
            raise
        except Exception as e:
            raise PublishError(str(e), topic=topic, message_id=envelope.id) from e

    async def send(self, queue: str, message: Any, options: Any = None) -> None:
        """Point-to-point send.

        A queue is a topic consumed by a single group, so this maps exactly like
        ``publish``.
        """
        await self.publish(queue, message, options)

    # ── Consumer side ────────────────────────────────────────────

    async def subscribe(
        self, topic: str, handler: MessageHandler, options: Any
    ) -> Subscription:
        """Start consuming *topic* as a member of ``options['group']``."""
        opts = ConsumeOptions.coerce(options, "subscribe")
        return await self._start(topic, handler, opts)

    async def receive(
        self, queue: str, handler: MessageHandler, options: Any
    ) -> Subscription:
        """Point-to-point receive; all receivers sharing a group share the work."""
        opts = ConsumeOptions.coerce(options, "receive")
        return await self._start(queue, handler, opts)

    async def _start(
        self, topic: str, handler: MessageHandler, opts: ConsumeOptions
    ) -> Subscription:
        self._check_open()
        self._check_topic(topic)
        if not callable(handler):
            raise InvalidOptionsError("handler must be an async callable")
        subscription = Subscription(topic, opts.group)
        self._subscriptions.append(subscription)
        try:
            await self._subscribe(subscription, handler, opts)
        except BaseException as e:
            self._subscriptions.remove(subscription)
            await subscription.shutdown()
            if isinstance(e, OmniQueueError) or not isinstance(e, Exception):
                raise
            raise MessagingError(
                f"Subscribing to {topic!r} as group {opts.group!r} failed: {e}"
            ) from e
        logger.debug(
            "Subscribed to %s as group %s on %s", topic, opts.group, self._provider
        )
        return subscription

    def _spawn(
        self,
        subscription: Subscription,
        loop: Coroutine[Any, Any, None],
    ) -> asyncio.Task[None]:
        """Run *loop* as a supervised consumption task of *subscription*."""
        name = f"omniqueue:{self._provider}:{subscription.topic}:{subscription.group}"
        task = asyncio.create_task(self._supervise(subscription, loop), name=name)
        subscription.add_task(task)
        return task

    async def _supervise(
        self, subscription: Subscription, loop: Coroutine[Any, Any, None]
    ) -> None:
        try:
            await loop
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            error = (
                e
                if isinstance(e, ConsumeLoopError)
                else ConsumeLoopError(str(e), subscription.topic, subscription.group)
            )
            if error is not e:
                error.__cause__ = e
            subscription.set_error(error)
            await self.report_error(error)

    async def dispatch(
        self,
        subscription: Subscription,
        message: BrokerMessage,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        """Invoke *handler* for one delivery and enforce the settlement policy."""
        with subscription.in_flight():
            try:
                try:
                    await handler(message)
                except Exception as exc:  # noqa: BLE001
                    await self._handle_failure(message, exc)
                    return
                if message.settled:
                    return
                if opts.auto_ack:
                    await message.ack()
                else:
                    logger.warning(
                        "Handler for %s/%s returned without settling message %s",
                        subscription.topic,
                        subscription.group,
                        message.id,
                    )
            except AckError as e:
                await self.report_error(e)

    async def _handle_failure(self, message: BrokerMessage, exc: Exception) -> None:
        if message.settled:
            logger.warning(
                "Handler raised after settling message %s: %r", message.id, exc
            )
            return
        if self._redelivery.should_requeue(message.attempt):
            logger.warning(
                "Handler failed for message %s (attempt %d): %r; requeueing",
                message.id,
                message.attempt,
                exc,
            )
            await self._redelivery.wait_before_requeue(message.attempt)
            await message.nack(requeue=True)
        else:
            logger.error(
                "Handler failed for message %s after %d attempt(s): %r; "
                "dead-lettering",
                message.id,
                message.attempt,
                exc,
            )
            await message.nack(requeue=False)

    async def report_error(self, error: BaseException) -> None:
        """Surface an asynchronous error to the application."""
        self._errors.append(error)
        if not self._error_listeners:
            logger.error("Unhandled broker error on %s: %s", self._provider, error)
            return
        for listener in list(self._error_listeners):
            try:
                result = listener(error)
                if isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error listener %r failed", listener)

    # ── Checks ───────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self.closed:
            raise BrokerClosedError(self._provider)

    @staticmethod
    def _check_topic(topic: str) -> None:
        if not isinstance(topic, str) or not topic:
            raise InvalidOptionsError("topic must be a non-empty string")

    def _check_send_capabilities(self, topic: str, opts: SendOptions) -> None:
        caps = self.capabilities
        if opts.delay and not caps.delay:
            raise PublishError(
                f"Provider {self._provider!r} does not support delayed delivery",
                topic=topic,
            )
        if (
            opts.priority is not None
            and caps.priority_strategy is PriorityStrategy.IGNORED
        ):
            logger.debug(
                "Priority hint %s for %s ignored by %s",
                opts.priority,
                topic,
                self._provider,
            )
        if opts.ensure and not caps.retains_for_late_groups:
            if not opts.create_options.get("groups"):
                logger.debug(
                    "%s keeps messages only for groups that exist at publish time; "
                    "pass create_options['groups'] to pre-provision them",
                    self._provider,
                )

    # ── Backend mapping (implemented by adapters) ────────────────

    async def _connect(self) -> None:
        """Open backend connections. Default: nothing to open."""

    async def _disconnect(self) -> list[BaseException]:
        """Release backend connections; return failures instead of raising."""
        return []

    @abstractmethod
    async def _publish(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None: ...

    @abstractmethod
    async def _subscribe(
        self,
        subscription: Subscription,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        """Provision, then start delivering to *handler* via :meth:`dispatch`.

        Long-running loops must be started with :meth:`_spawn`; push-style
        consumers register their cancellation with
        ``subscription.add_releaser``.
        """

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(provider={self._provider!r}, "
            f"state={self._state.value})"
        )
