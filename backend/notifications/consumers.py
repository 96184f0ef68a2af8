import json
import logging

from channels.generic.websocket import AsyncWebsocketConsumer

from core_backend.exceptions import GroupeatError, InvalidInputError
from .gateway import device_group

logger = logging.getLogger(__name__)


class DeviceConsumer(AsyncWebsocketConsumer):
    """
    WebSocket consumer for one push endpoint (a user's browser client).

    Push messages sent through ChannelLayerNotificationGateway arrive on the
    endpoint's device group and are forwarded as JSON. The client answers
    liveness pings with {"type": "ping_back", "userToken": ...} (or
    "testUserId"), which stamps the user's last ping time.
    """

    async def connect(self):
        self.endpoint_id = self.scope["url_route"]["kwargs"].get("endpoint")

        if not self.endpoint_id:
            logger.warning("DeviceConsumer: connection rejected, no endpoint id")
            await self.close(code=4000)
            return

        self.device_group = device_group(self.endpoint_id)
        await self.channel_layer.group_add(self.device_group, self.channel_name)
        await self.accept()

        logger.info(f"Device {self.endpoint_id} connected")

    async def disconnect(self, close_code):
        if hasattr(self, "device_group"):
            await self.channel_layer.group_discard(self.device_group, self.channel_name)
            logger.info(f"Device {self.endpoint_id} disconnected")

    async def receive(self, text_data=None, bytes_data=None):
        try:
            data = json.loads(text_data or "")
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON received from device {self.endpoint_id}")
            await self.send_json({"type": "error", "errorId": InvalidInputError.error_id})
            return

        message_type = data.get("type") if isinstance(data, dict) else None

        if message_type == "ping_back":
            await self.handle_ping_back(data)
        else:
            logger.warning(f"Unknown message type from device {self.endpoint_id}: {message_type}")

    async def handle_ping_back(self, data):
        from users.services import user_service

        try:
            user = await user_service.get_user(
                user_token=data.get("userToken"),
                test_user_id=data.get("testUserId"),
            )
            ping_time = await user_service.update_ping_time(user)
        except GroupeatError as e:
            await self.send_json({"type": "error", "errorId": e.get_error_id()})
            return

        await self.send_json({"type": "ping_ack", "timestamp": ping_time.isoformat()})

    # Channel layer event handlers

    async def notification_message(self, event):
        """Forward a push message from the gateway to the client."""
        await self.send_json(event["data"])
        logger.debug(f"Notification of type {event['data'].get('type')} forwarded to device {self.endpoint_id}")

    async def send_json(self, content):
        await self.send(text_data=json.dumps(content))
