"""
Channel Dispatcher - per-channel delivery with bounded retries.

Each channel is sent independently and concurrently; one channel failing never
blocks or aborts the others. Failures are returned as NotificationRecords, not
raised.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_fixed

from pipewatch.core.domain.alert import ChannelConfig, NotificationRecord, RetryPolicy
from pipewatch.core.domain.errors import DeliveryFailed
from pipewatch.core.ports.notifier import AlertPayload, NotificationChannel

logger = logging.getLogger(__name__)


def channel_accepts(channel: ChannelConfig, alert_type: str, severity: str, pipeline_id: str | None) -> bool:
    """Apply the channel's own filters on top of the configuration match."""
    if not channel.enabled:
        return False
    f = channel.filters
    if f.severities is not None and severity not in f.severities:
        return False
    if f.types is not None and alert_type not in f.types:
        return False
    if f.pipeline_ids is not None and pipeline_id not in f.pipeline_ids:
        return False
    return True


def _wait_strategy(policy: RetryPolicy):
    if policy.backoff == "fixed":
        return wait_fixed(policy.initial_delay_seconds)
    return wait_exponential(multiplier=policy.initial_delay_seconds, max=policy.max_delay_seconds)


class ChannelDispatcher:
    """
    Routes payloads to the transport registered for each channel type.
    """

    def __init__(
        self,
        transports: dict[str, NotificationChannel] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            transports: Channel type -> transport
            sleep: Awaitable used between retry attempts
        """
        self.transports = dict(transports or {})
        self._sleep = sleep

    def register(self, channel_type: str, transport: NotificationChannel) -> None:
        self.transports[channel_type] = transport

    async def dispatch(self, channels: list[ChannelConfig], payload: AlertPayload) -> list[NotificationRecord]:
        """Send to every channel concurrently and return one record per channel."""
        if not channels:
            return []
        return list(await asyncio.gather(*(self.deliver(c, payload) for c in channels)))

    async def deliver(self, channel: ChannelConfig, payload: AlertPayload) -> NotificationRecord:
        transport = self.transports.get(channel.type)
        if transport is None:
            error = DeliveryFailed(
                f"No transport registered for channel type '{channel.type}'",
                channel=channel.id, alert=payload.alert_id,
            )
            logger.warning(str(error))
            return NotificationRecord(
                channel_id=channel.id, channel_type=channel.type, stage=payload.stage,
                delivered=False, attempts=0, error=str(error),
            )

        policy = channel.retry_policy
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=_wait_strategy(policy),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    receipt = await asyncio.wait_for(transport.send(channel, payload), timeout=policy.timeout_seconds)
                    if not receipt.delivered:
                        raise DeliveryFailed(receipt.error or "channel reported failure", channel=channel.id)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"timed out after {policy.timeout_seconds}s"
            else:
                reason = str(e) or type(e).__name__
            error = DeliveryFailed(
                f"Delivery exhausted {attempts} attempt(s): {reason}",
                channel=channel.id, alert=payload.alert_id, metric=payload.metric,
                configuration=payload.configuration_id,
            )
            logger.warning(str(error))
            return NotificationRecord(
                channel_id=channel.id, channel_type=channel.type, stage=payload.stage,
                delivered=False, attempts=attempts, error=str(error),
            )

        logger.info(f"Delivered alert {payload.alert_id} via '{channel.id}' ({channel.type}) after {attempts} attempt(s)")
        return NotificationRecord(
            channel_id=channel.id, channel_type=channel.type, stage=payload.stage,
            delivered=True, attempts=attempts,
        )
