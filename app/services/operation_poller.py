from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from app.services.gcp_client import GcpServiceError


logger = logging.getLogger(__name__)


class OperationTimeoutError(GcpServiceError):
    pass


class OperationFailedError(GcpServiceError):
    pass


class SupportsGetOperation(Protocol):
    async def get_operation(self, operation_name: str) -> dict[str, Any]: ...


async def poll_operation(
    client: SupportsGetOperation,
    operation_name: str,
    *,
    max_retries: int = 20,
    delay_seconds: float = 5.0,
) -> dict[str, Any]:
    """Wait for a long-running operation to report `done`.

    Sleeps before every fetch, at a fixed interval, and fetches at most
    `max_retries` times.

    Returns:
        The final operation document (its `response` holds the created resource).

    Raises:
        OperationFailedError: the operation finished with an embedded error;
            the exception message is the embedded error message.
        OperationTimeoutError: the operation was still running after `max_retries` polls.
    """

    for attempt in range(1, max_retries + 1):
        await asyncio.sleep(delay_seconds)
        operation = await client.get_operation(operation_name)
        if operation.get("done"):
            error = operation.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                logger.error("gcp.operation.polling.error name=%s error=%s", operation_name, error)
                raise OperationFailedError(message or f"Operation {operation_name} failed")
            logger.info("gcp.operation.polling.success name=%s attempt=%d", operation_name, attempt)
            return operation
        logger.info("gcp.operation.polling.in_progress name=%s attempt=%d", operation_name, attempt)

    logger.error("gcp.operation.polling.timeout_error name=%s", operation_name)
    raise OperationTimeoutError(f"Operation {operation_name} timed out after {max_retries} polls.")
