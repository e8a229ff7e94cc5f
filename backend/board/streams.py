"""
Live update delivery over Server-Sent Events.

GET /api/events/<kind>/  e.g. /api/events/post-liked/

One stream per event kind. Frames:

    event: ready            sent once, when the subscription is live
    event: PostLiked        one per published payload, data is JSON
    :                       keepalive comment after a quiet period

Delivery is NOT filtered by post or comment: a post_id/comment_id query
argument is accepted for client convenience but every payload of the kind
is sent. Clients discard what they don't need.

Needs an ASGI server (uvicorn threadboard.asgi:application); under WSGI the
stream would be buffered. When the client disconnects Django cancels the
response iterator, and event_source's finally block closes the subscription.
"""

import asyncio
import json
import logging

from django.conf import settings
from django.http import Http404, StreamingHttpResponse
from rest_framework.utils.encoders import JSONEncoder

from .apps import get_broker
from .broker import EventKind, Subscription

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ':\n\n'


def format_event(event: str, data) -> str:
    payload = json.dumps(data, cls=JSONEncoder, separators=(',', ':'))
    return f"event: {event}\ndata: {payload}\n\n"


async def event_source(subscription: Subscription, keepalive: float):
    """Render a subscription as SSE frames until it closes."""
    try:
        yield format_event('ready', {'kind': subscription.kind.value})
        while True:
            try:
                payload = await subscription.next(timeout=keepalive)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            except StopAsyncIteration:
                break
            yield format_event(subscription.kind.value, payload)
    finally:
        subscription.close()
        logger.debug(f"{subscription.kind.value} stream closed")


async def event_stream(request, kind):
    try:
        event_kind = EventKind.from_slug(kind)
    except ValueError:
        raise Http404(f"Unknown event stream: {kind}")

    subscription = get_broker().subscribe(event_kind)
    logger.info(f"{event_kind.value} stream opened")

    keepalive = getattr(settings, 'BOARD_STREAM_KEEPALIVE_SECONDS', 15)
    response = StreamingHttpResponse(
        event_source(subscription, keepalive),
        content_type='text/event-stream',
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response
