"""
Notification Gateway - the push capability used by users, offices and the
settlement flow.

ChannelLayerNotificationGateway delivers over the Django Channels layer:
every push endpoint listens on its own device group (see DeviceConsumer) and
topic membership is kept in TopicSubscription rows. Sending never raises;
callers inspect the returned DeliveryResult.
"""
from dataclasses import dataclass
from hashlib import sha1
from typing import Iterable, Optional
import logging

from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

DEVICE_GROUP_PREFIX = "device."
NOTIFICATION_EVENT_TYPE = "notification.message"


@dataclass
class DeliveryResult:
    """Outcome of a gateway call."""
    success: bool
    delivered: int = 0
    error: str = ""


class NotificationGateway:
    """Interface the services depend on. Implementations must not raise on delivery failure."""

    async def send_to_device(self, endpoint_id: str, payload: dict) -> DeliveryResult:
        raise NotImplementedError

    async def send_to_topic(self, topic: str, payload: dict) -> DeliveryResult:
        raise NotImplementedError

    async def subscribe(self, endpoint_ids: Iterable[str], topic: str) -> DeliveryResult:
        raise NotImplementedError

    async def unsubscribe(self, endpoint_ids: Iterable[str], topic: str) -> DeliveryResult:
        raise NotImplementedError


def device_group(endpoint_id: str) -> str:
    """Channel group name for a push endpoint. Hashed because group names only allow a small charset."""
    return f"{DEVICE_GROUP_PREFIX}{sha1(endpoint_id.encode('utf-8')).hexdigest()}"


def _clean_endpoints(endpoint_ids) -> list:
    if isinstance(endpoint_ids, str):
        endpoint_ids = [endpoint_ids]

    return [endpoint for endpoint in (endpoint_ids or []) if endpoint]


class ChannelLayerNotificationGateway(NotificationGateway):
    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        return self._channel_layer or get_channel_layer()

    async def _group_send(self, endpoint_id: str, payload: dict):
        layer = self.channel_layer
        if layer is None:
            raise RuntimeError("Channel layer not available.")

        await layer.group_send(
            device_group(endpoint_id),
            {"type": NOTIFICATION_EVENT_TYPE, "data": payload},
        )

    async def send_to_device(self, endpoint_id: str, payload: dict) -> DeliveryResult:
        if not endpoint_id:
            return DeliveryResult(False, 0, "Missing endpoint id.")

        try:
            await self._group_send(endpoint_id, payload)
        except Exception as e:
            logger.error(f"Failed sending notification to endpoint {endpoint_id}: {e}")
            return DeliveryResult(False, 0, str(e))

        logger.debug(f"Notification of type {payload.get('type')} sent to endpoint {endpoint_id}")
        return DeliveryResult(True, 1)

    async def send_to_topic(self, topic: str, payload: dict) -> DeliveryResult:
        from .models import TopicSubscription

        if not topic:
            return DeliveryResult(False, 0, "Missing topic.")

        try:
            endpoints = [
                endpoint
                async for endpoint in TopicSubscription.objects.filter(topic=topic)
                .values_list("endpoint_id", flat=True)
            ]
            for endpoint in endpoints:
                await self._group_send(endpoint, payload)
        except Exception as e:
            logger.error(f"Failed sending notification to topic {topic}: {e}")
            return DeliveryResult(False, 0, str(e))

        logger.debug(f"Notification of type {payload.get('type')} sent to {len(endpoints)} endpoints of topic {topic}")
        return DeliveryResult(True, len(endpoints))

    async def subscribe(self, endpoint_ids: Iterable[str], topic: str) -> DeliveryResult:
        from .models import TopicSubscription

        endpoints = _clean_endpoints(endpoint_ids)
        if not endpoints or not topic:
            return DeliveryResult(False, 0, "Missing endpoint ids or topic.")

        try:
            for endpoint in endpoints:
                await TopicSubscription.objects.aget_or_create(endpoint_id=endpoint, topic=topic)
        except Exception as e:
            logger.error(f"Failed subscribing {endpoints} to topic {topic}: {e}")
            return DeliveryResult(False, 0, str(e))

        return DeliveryResult(True, len(endpoints))

    async def unsubscribe(self, endpoint_ids: Iterable[str], topic: str) -> DeliveryResult:
        from .models import TopicSubscription

        endpoints = _clean_endpoints(endpoint_ids)
        if not endpoints or not topic:
            return DeliveryResult(False, 0, "Missing endpoint ids or topic.")

        try:
            removed, _ = await TopicSubscription.objects.filter(
                endpoint_id__in=endpoints, topic=topic
            ).adelete()
        except Exception as e:
            logger.error(f"Failed unsubscribing {endpoints} from topic {topic}: {e}")
            return DeliveryResult(False, 0, str(e))

        return DeliveryResult(True, removed)


_default_gateway: Optional[NotificationGateway] = None


def get_gateway() -> NotificationGateway:
    """Process-wide default gateway used when a service is built without one."""
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = ChannelLayerNotificationGateway()
    return _default_gateway
