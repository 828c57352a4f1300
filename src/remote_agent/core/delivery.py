"""Surface delivery capability and retrying delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from remote_agent.core.errors import TransientDeliveryError
from remote_agent.core.streaming import StreamingMode

logger = logging.getLogger(__name__)


@runtime_checkable
class Surface(Protocol):
    """What the core needs from a chat or issue-tracker connector."""

    platform_type: str

    def get_streaming_mode(self, conversation_id: str) -> StreamingMode:
        ...

    async def send_message(self, conversation_id: str, message: str) -> None:
        """Post ``message``; raise TransientDeliveryError for retryable failures."""
        ...


async def deliver(
    surface: Surface,
    conversation_id: str,
    message: str,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
) -> bool:
    """Send a message, retrying transient failures with linear backoff.

    Never raises: exhausted retries and non-transient failures are logged
    and reported as ``False``.
    """
    if not message.strip():
        return True

    for attempt in range(1, retry_attempts + 1):
        try:
            await surface.send_message(conversation_id, message)
            return True
        except TransientDeliveryError as e:
            if attempt == retry_attempts:
                logger.error(
                    "Giving up delivering to %s after %d attempts: %s",
                    conversation_id,
                    attempt,
                    e,
                )
                return False
            delay = retry_delay * attempt
            logger.warning(
                "Delivery to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                conversation_id,
                attempt,
                retry_attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)
        except Exception:
            logger.exception("Delivery to %s failed", conversation_id)
            return False
    return False
