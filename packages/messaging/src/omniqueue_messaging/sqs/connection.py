"""SNS and SQS client management and error-code helpers."""

from __future__ import annotations

import contextlib
from typing import Any

from aiobotocore.session import AioSession

from omniqueue_core.primitives.exceptions import BrokerConnectionError

NON_EXISTENT_QUEUE = frozenset(
    {"AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist"}
)
QUEUE_ALREADY_EXISTS = frozenset(
    {"QueueAlreadyExists", "AWS.SimpleQueueService.QueueAlreadyExists"}
)


def error_code(exc: BaseException) -> str | None:
    """Return the AWS error code of a botocore ``ClientError``, if any."""
    response = getattr(exc, "response", None) or {}
    return response.get("Error", {}).get("Code")


class SnsSqsConnectionManager:
    """Owns the aiobotocore SNS and SQS clients.

    Both clients are entered on :meth:`connect` and exited together on
    :meth:`close`.
    """

    def __init__(
        self,
        region_name: str = "us-east-1",
        *,
        session: AioSession | None = None,
        **client_kwargs: Any,
    ) -> None:
        self._region = region_name
        self._session = session or AioSession()
        self._client_kwargs = client_kwargs
        self._stack: contextlib.AsyncExitStack | None = None
        self._sns: Any = None
        self._sqs: Any = None

    async def connect(self) -> None:
        if self._stack is not None:
            return
        stack = contextlib.AsyncExitStack()
        try:
            self._sns = await stack.enter_async_context(
                self._session.create_client(
                    "sns", region_name=self._region, **self._client_kwargs
                )
            )
            self._sqs = await stack.enter_async_context(
                self._session.create_client(
                    "sqs", region_name=self._region, **self._client_kwargs
                )
            )
        except Exception as e:
            await stack.aclose()
            self._sns = self._sqs = None
            raise BrokerConnectionError(str(e)) from e
        self._stack = stack

    @property
    def sns(self) -> Any:
        if self._sns is None:
            raise BrokerConnectionError("Not connected; call connect() first")
        return self._sns

    @property
    def sqs(self) -> Any:
        if self._sqs is None:
            raise BrokerConnectionError("Not connected; call connect() first")
        return self._sqs

    async def close(self) -> None:
        """Close both clients if open."""
        stack, self._stack = self._stack, None
        self._sns = self._sqs = None
        if stack is not None:
            await stack.aclose()

    async def health_check(self) -> bool:
        """Return True if we can list queues (lightweight check)."""
        try:
            await self.sqs.list_queues(MaxResults=1)
            return True
        except Exception:  # noqa: BLE001
            return False
